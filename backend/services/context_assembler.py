"""Context assembly for inference prompts."""
import logging
from typing import List, Optional, Sequence

from config import DEFAULT_PROMPT_ORDER, PROMPT_PARTS
from models.turn import HistoryEntry

logger = logging.getLogger(__name__)

HISTORY_HEADER = "Previous conversation:"
RETRIEVED_CONTEXT_HEADER = "Relevant information from documents:"
PART_SEPARATOR = "\n\n"


class ContextAssembler:
    """
    Builds the exact text sent to inference.

    The instruction text and the order of the prompt pieces are fixed at
    construction time and stay stable for the life of the deployment.
    """

    def __init__(self, instructions: str = "", prompt_order: Sequence[str] = DEFAULT_PROMPT_ORDER):
        """
        Initialize the assembler.

        Args:
            instructions: Fixed instruction text prepended/appended per prompt_order
            prompt_order: Permutation of instructions, retrieved_context, history, user_prompt

        Raises:
            ValueError: If prompt_order is not a permutation of the known pieces
        """
        if sorted(prompt_order) != sorted(PROMPT_PARTS):
            raise ValueError(f"prompt_order must be a permutation of {list(PROMPT_PARTS)}")

        self.instructions = instructions
        self.prompt_order = tuple(prompt_order)

    def assemble(
        self,
        user_prompt: str,
        history: Optional[List[HistoryEntry]] = None,
        retrieved_context: Optional[str] = None
    ) -> str:
        """
        Concatenate the non-empty prompt pieces in the configured order.

        Args:
            user_prompt: Raw user input for this turn
            history: Prior turns, ascending by turn index
            retrieved_context: Text returned by the retrieval collaborator

        Returns:
            The full prompt
        """
        pieces = {
            "instructions": self.instructions.strip() if self.instructions else "",
            "retrieved_context": self.format_retrieved_context(retrieved_context),
            "history": self.format_history(history),
            "user_prompt": user_prompt,
        }

        parts = [pieces[name] for name in self.prompt_order if pieces[name]]
        full_prompt = PART_SEPARATOR.join(parts)

        logger.debug(f"Assembled prompt with {len(parts)} parts, total length: {len(full_prompt)}")
        return full_prompt

    @staticmethod
    def format_history(history: Optional[List[HistoryEntry]]) -> str:
        """Render prior turns as labeled user/assistant pairs."""
        if not history:
            return ""

        rendered = [
            f"Turn {entry.turn_index}:\nUser: {entry.user_prompt}\nAssistant: {entry.response}"
            for entry in sorted(history, key=lambda e: e.turn_index)
        ]
        return f"{HISTORY_HEADER}\n" + "\n\n".join(rendered)

    @staticmethod
    def format_retrieved_context(retrieved_context: Optional[str]) -> str:
        if not retrieved_context or not retrieved_context.strip():
            return ""
        return f"{RETRIEVED_CONTEXT_HEADER}\n{retrieved_context.strip()}"
