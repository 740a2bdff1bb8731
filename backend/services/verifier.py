"""Replay stored turns and recompute their hashes."""
import logging
from typing import Dict, Optional

from models.verification import InvalidTurn, VerificationResult
from services.hashing import hash_turn_content, link_chain_hash
from services.turn_store import TurnStore

logger = logging.getLogger(__name__)


class ChainVerifier:
    """Detects tampering or corruption in the turn store. Read-only."""

    def __init__(self, store: TurnStore):
        self.store = store

    def verify(self, conversation_id: Optional[str] = None) -> VerificationResult:
        """
        Verify every stored turn, or those of one conversation.

        Each chain hash is recomputed from the turn's stored content hash and
        the previous turn's stored chain hash, so one corrupted turn is
        reported once instead of invalidating every later turn.

        Args:
            conversation_id: Conversation to verify, or None for the whole ledger

        Returns:
            VerificationResult; mismatches are reported, never raised
        """
        turns = self.store.all_turns_ordered(conversation_id)
        if not turns:
            return VerificationResult(
                valid=True,
                total_turns=0,
                invalid_turns=0,
                conversations_verified=0,
                message="No turns to verify",
            )

        previous_chain: Dict[str, str] = {}
        invalid = []

        for turn in turns:
            content_valid = hash_turn_content(
                turn.turn_index, turn.user_prompt, turn.response, turn.machine_state
            ) == turn.content_hash
            chain_valid = link_chain_hash(
                turn.content_hash, previous_chain.get(turn.conversation_id)
            ) == turn.chain_hash

            if not (content_valid and chain_valid):
                invalid.append(InvalidTurn(
                    conversation_id=turn.conversation_id,
                    turn_index=turn.turn_index,
                    content_valid=content_valid,
                    chain_valid=chain_valid,
                ))
                logger.warning(
                    f"Turn {turn.turn_index} of {turn.conversation_id} failed verification "
                    f"(content_valid={content_valid}, chain_valid={chain_valid})",
                    extra={"conversation_id": turn.conversation_id, "turn_index": turn.turn_index},
                )

            previous_chain[turn.conversation_id] = turn.chain_hash

        total = len(turns)
        if invalid:
            message = f"{len(invalid)} of {total} turns failed verification"
        else:
            message = f"All {total} turns verified"

        logger.info(f"Verification finished: {message}")
        return VerificationResult(
            valid=not invalid,
            total_turns=total,
            invalid_turns=len(invalid),
            conversations_verified=len(previous_chain),
            message=message,
            invalid=invalid,
        )
