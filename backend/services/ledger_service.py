"""Ledger service: the single writer of conversation turns."""
import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional

from models.turn import HistoryEntry, TimingTrace, Turn, TurnResult
from services.context_assembler import ContextAssembler
from services.hashing import hash_turn_content, link_chain_hash
from services.llm_client import InferenceProvider, LLMClientError, LLMResponse
from services.response_parser import InvalidResponseError, parse_structured_response, serialize_machine_state
from services.retrieval_engine import RetrievalProvider
from services.turn_store import ConstraintViolation, TurnStore

logger = logging.getLogger(__name__)


def _printable(text: str) -> str:
    """Replace characters that cannot be written out as UTF-8."""
    return text.encode("utf-8", "replace").decode("utf-8")


class LedgerError(Exception):
    """Base class for submission failures; no turn is written when raised."""

    code = "LEDGER_ERROR"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class InferenceFailedError(LedgerError):
    """The inference provider failed or timed out."""

    code = "INFERENCE_FAILED"
    status_code = 503


class InvalidModelResponseError(LedgerError):
    """The model answered with something that is not a JSON object."""

    code = "INVALID_RESPONSE"
    status_code = 502


class TurnConflictError(LedgerError):
    """The declared turn index is stale or another writer won the race."""

    code = "TURN_CONFLICT"
    status_code = 409


class TurnNotFoundError(LedgerError):
    """A requested turn does not exist in the ledger."""

    code = "TURN_NOT_FOUND"
    status_code = 404


class ConversationLocks:
    """
    One exclusive lock per conversation id.

    Entries are reference counted and dropped once no thread holds or waits
    on them, so the table only grows with the number of active conversations.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, List[Any]] = {}

    @contextmanager
    def hold(self, conversation_id: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(conversation_id, [threading.Lock(), 0])
            entry[1] += 1

        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[conversation_id]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class LedgerService:
    """
    Orchestrates assembly, inference, hashing and append for one turn.

    Reading the conversation head and appending the new turn happen under a
    per-conversation lock, so concurrent submissions to the same conversation
    produce consecutive turns that chain onto each other. Submissions to
    different conversations do not contend.
    """

    def __init__(
        self,
        store: TurnStore,
        provider: InferenceProvider,
        assembler: ContextAssembler,
        retriever: Optional[RetrievalProvider] = None,
        retrieval_timeout: float = 5.0,
        history_max_turns: Optional[int] = None,
        store_full_prompt: bool = True,
        token_counter: Optional[Callable[[str], int]] = None
    ):
        """
        Initialize the ledger service.

        Args:
            store: Turn store to append to
            provider: Inference backend selected at startup
            assembler: Context assembler holding the instructions
            retriever: Optional retrieval collaborator
            retrieval_timeout: Seconds to wait for retrieval before giving up
            history_max_turns: Most recent turns to include as history (None = all)
            store_full_prompt: Persist the assembled prompt with each turn
            token_counter: Optional callable counting prompt tokens
        """
        self.store = store
        self.provider = provider
        self.assembler = assembler
        self.retriever = retriever
        self.retrieval_timeout = retrieval_timeout
        self.history_max_turns = history_max_turns
        self.store_full_prompt = store_full_prompt
        self.token_counter = token_counter
        self.locks = ConversationLocks()
        self._retrieval_pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="retrieval")

    def submit_turn(
        self,
        user_prompt: str,
        conversation_id: Optional[str] = None,
        turn_index: Optional[int] = None,
        include_history: bool = True
    ) -> TurnResult:
        """
        Run one full submission and record it as a new turn.

        Args:
            user_prompt: Raw user input
            conversation_id: Existing conversation, or None to start a new one
            turn_index: Caller-declared previous turn number; None appends
                after whatever the store currently holds
            include_history: Render prior turns into the prompt

        Returns:
            TurnResult for the recorded turn

        Raises:
            InferenceFailedError: Provider failure or timeout
            InvalidModelResponseError: Model output is not a JSON object
            TurnConflictError: Declared index is stale or the append lost a race
        """
        start_time = time.time()
        conversation_id = conversation_id or str(uuid.uuid4())
        log_context = {"conversation_id": conversation_id}

        logger.info(f"Processing submission for conversation {conversation_id}", extra=log_context)

        # Fail fast before paying for inference; rechecked under the lock
        if turn_index is not None:
            self._check_declared_index(conversation_id, turn_index, self._current_index(conversation_id))

        history: List[HistoryEntry] = []
        if include_history:
            history = self.store.history(conversation_id, limit=self.history_max_turns)
            logger.debug(f"Loaded {len(history)} history turns", extra=log_context)

        retrieved_context = self._retrieve(user_prompt, conversation_id)

        full_prompt = self.assembler.assemble(user_prompt, history=history, retrieved_context=retrieved_context)
        prompt_tokens = self.token_counter(full_prompt) if self.token_counter else None

        llm_response = self._generate(full_prompt, conversation_id)
        structured = self._parse(llm_response.text, conversation_id)

        with self.locks.hold(conversation_id):
            head = self.store.last_turn(conversation_id)
            last_index = head.turn_index if head else 0
            if turn_index is not None:
                self._check_declared_index(conversation_id, turn_index, last_index)

            next_index = last_index + 1
            structured["turn"] = next_index
            machine_state = serialize_machine_state(structured)

            content_hash = hash_turn_content(next_index, user_prompt, llm_response.text, machine_state)
            chain_hash = link_chain_hash(content_hash, head.chain_hash if head else None)

            turn = Turn(
                conversation_id=conversation_id,
                turn_index=next_index,
                user_prompt=user_prompt,
                response=llm_response.text,
                machine_state=machine_state,
                content_hash=content_hash,
                chain_hash=chain_hash,
                full_prompt=full_prompt if self.store_full_prompt else None,
                retrieved_context=retrieved_context or None,
                created_at=datetime.now(timezone.utc),
            )

            try:
                self.store.append(turn)
            except ConstraintViolation as e:
                logger.warning(
                    f"Append rejected: {e}",
                    extra={**log_context, "turn_index": next_index, "error_code": TurnConflictError.code},
                )
                raise TurnConflictError(
                    str(e),
                    details={
                        "conversation_id": conversation_id,
                        "turn_index": next_index,
                        "current_turn_index": self._current_index(conversation_id),
                    },
                ) from e

        latency_ms = int((time.time() - start_time) * 1000)
        logger.info(
            f"Recorded turn {next_index} in {latency_ms}ms",
            extra={**log_context, "turn_index": next_index, "chain_hash": chain_hash, "duration_ms": latency_ms},
        )

        return TurnResult(
            conversation_id=conversation_id,
            turn_index=next_index,
            structured_response=structured,
            chain_hash=chain_hash,
            content_hash=content_hash,
            trace=llm_response.trace or self._fallback_trace(llm_response),
            latency_ms=latency_ms,
            prompt_tokens=prompt_tokens,
            retrieved_context=retrieved_context or None,
            metadata={
                "model": llm_response.model_used,
                "tokens_input": llm_response.tokens_input,
                "tokens_output": llm_response.tokens_output,
                "history_turns": len(history),
            },
        )

    def close(self) -> None:
        self._retrieval_pool.shutdown(wait=False)

    def _current_index(self, conversation_id: str) -> int:
        head = self.store.last_turn(conversation_id)
        return head.turn_index if head else 0

    @staticmethod
    def _check_declared_index(conversation_id: str, declared: int, current: int) -> None:
        if declared != current:
            raise TurnConflictError(
                f"Conversation {conversation_id} is at turn {current}, not {declared}",
                details={
                    "conversation_id": conversation_id,
                    "declared_turn_index": declared,
                    "current_turn_index": current,
                },
            )

    def _retrieve(self, query: str, conversation_id: str) -> str:
        """Fetch retrieved context, substituting "" on failure or timeout."""
        if self.retriever is None:
            return ""

        log_context = {"conversation_id": conversation_id}
        future = self._retrieval_pool.submit(self.retriever.search, query)
        try:
            context = future.result(timeout=self.retrieval_timeout) or ""
        except FuturesTimeoutError:
            future.cancel()
            logger.warning(
                f"Retrieval timed out after {self.retrieval_timeout}s, continuing without context",
                extra=log_context,
            )
            return ""
        except Exception as e:
            logger.warning(f"Retrieval failed, continuing without context: {e}", extra=log_context)
            return ""

        logger.info(f"Retrieved {len(context)} chars of context", extra=log_context)
        return context

    def _generate(self, full_prompt: str, conversation_id: str) -> LLMResponse:
        try:
            return self.provider.generate(full_prompt)
        except LLMClientError as e:
            logger.error(
                f"Inference failed: {e.error.message}",
                extra={"conversation_id": conversation_id, "error_code": e.error.code},
            )
            raise InferenceFailedError(
                e.error.message,
                details={"provider_code": e.error.code, **e.error.details},
            ) from e

    @staticmethod
    def _parse(text: str, conversation_id: str) -> Dict[str, Any]:
        try:
            return parse_structured_response(text)
        except InvalidResponseError as e:
            logger.error(
                f"Rejecting model output: {e}",
                extra={"conversation_id": conversation_id, "error_code": InvalidModelResponseError.code},
            )
            raise InvalidModelResponseError(
                str(e),
                details={"raw_response": _printable(e.raw_response[:500] if e.raw_response else "")},
            ) from e

    def _fallback_trace(self, llm_response: LLMResponse) -> TimingTrace:
        now = datetime.now(timezone.utc).isoformat()
        return TimingTrace(
            request_timestamp=now,
            response_timestamp=now,
            duration_ms=llm_response.latency_ms,
            model=llm_response.model_used,
            url=self.provider.url,
        )
