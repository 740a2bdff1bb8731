"""Unit tests for LedgerService."""
import sys
sys.path.insert(0, 'backend')

import json
import threading
import time

import pytest
from unittest.mock import patch

from models.turn import TimingTrace
from services.context_assembler import ContextAssembler
from services.hashing import hash_turn_content, link_chain_hash
from services.ledger_service import (
    ConversationLocks,
    InferenceFailedError,
    InvalidModelResponseError,
    LedgerService,
    TurnConflictError,
)
from services.llm_client import InferenceProvider, LLMClientError, LLMError, LLMResponse
from services.retrieval_engine import RetrievalProvider
from services.turn_store import ConstraintViolation, SQLTurnStore
from services.verifier import ChainVerifier


class FakeProvider(InferenceProvider):
    """Inference provider returning canned responses."""

    name = "fake"

    def __init__(self, responses=None, error=None, barrier=None):
        super().__init__(model="fake-model", timeout=5)
        self.responses = list(responses or [])
        self.error = error
        self.barrier = barrier
        self.prompts = []

    def generate(self, prompt):
        self.prompts.append(prompt)
        if self.barrier is not None:
            self.barrier.wait(timeout=5)
        if self.error is not None:
            raise self.error
        text = self.responses.pop(0) if self.responses else '{"answer": "ok"}'
        return LLMResponse(
            text=text,
            tokens_input=10,
            tokens_output=5,
            latency_ms=3,
            model_used=self.model,
            trace=TimingTrace(
                request_timestamp="2024-05-01T12:00:00+00:00",
                response_timestamp="2024-05-01T12:00:01+00:00",
                duration_ms=1000,
                model=self.model,
                url="http://fake/generate",
            ),
        )


class StaticRetriever(RetrievalProvider):
    def __init__(self, context="", error=None, release=None):
        self.context = context
        self.error = error
        self.release = release

    def search(self, query):
        if self.release is not None:
            self.release.wait(timeout=5)
        if self.error is not None:
            raise self.error
        return self.context


@pytest.fixture
def store(tmp_path):
    turn_store = SQLTurnStore(f"sqlite:///{tmp_path / 'ledger.db'}")
    yield turn_store
    turn_store.close()


def make_service(store, provider=None, **kwargs):
    return LedgerService(
        store=store,
        provider=provider or FakeProvider(),
        assembler=ContextAssembler(instructions="Reply in JSON."),
        **kwargs
    )


class TestSubmitTurn:
    """Test suite for LedgerService.submit_turn."""

    def test_first_turn_hashes(self, store):
        service = make_service(store, FakeProvider(['{"answer":"Hi"}']))

        result = service.submit_turn("Hello", conversation_id="c1")

        machine_state = '{"answer":"Hi","turn":1}'
        expected_content = hash_turn_content(1, "Hello", '{"answer":"Hi"}', machine_state)
        assert result.turn_index == 1
        assert result.content_hash == expected_content
        assert result.chain_hash == link_chain_hash(expected_content, "0")
        assert result.structured_response == {"answer": "Hi", "turn": 1}

        stored = store.all_turns_ordered("c1")[0]
        assert stored.response == '{"answer":"Hi"}'
        assert stored.machine_state == machine_state
        assert stored.chain_hash == result.chain_hash

    def test_second_turn_chains_onto_first(self, store):
        service = make_service(store, FakeProvider(['{"answer":"Hi"}', '{"answer":"Fine"}']))

        first = service.submit_turn("Hello", conversation_id="c1")
        second = service.submit_turn("How are you?", conversation_id="c1", turn_index=1)

        assert second.turn_index == 2
        assert second.chain_hash == link_chain_hash(second.content_hash, first.chain_hash)
        assert ChainVerifier(store).verify("c1").valid is True

    def test_generates_conversation_id(self, store):
        result = make_service(store).submit_turn("Hello")

        assert result.conversation_id
        assert store.last_turn(result.conversation_id).turn_index == 1

    def test_history_included_in_prompt(self, store):
        provider = FakeProvider(['{"answer":"Blue"}', '{"answer":"Red"}'])
        service = make_service(store, provider)

        service.submit_turn("Colour of the sky?", conversation_id="c1")
        service.submit_turn("And Mars?", conversation_id="c1")

        assert "Previous conversation:" not in provider.prompts[0]
        assert "Turn 1:\nUser: Colour of the sky?" in provider.prompts[1]
        assert provider.prompts[1].startswith("Reply in JSON.")
        assert provider.prompts[1].endswith("And Mars?")

    def test_history_excluded(self, store):
        provider = FakeProvider()
        service = make_service(store, provider)

        service.submit_turn("one", conversation_id="c1")
        service.submit_turn("two", conversation_id="c1", include_history=False)

        assert "Previous conversation:" not in provider.prompts[1]

    def test_history_max_turns(self, store):
        provider = FakeProvider()
        service = make_service(store, provider, history_max_turns=1)

        for prompt in ("first question", "second question", "third question"):
            service.submit_turn(prompt, conversation_id="c1")

        assert "first question" not in provider.prompts[2]
        assert "Turn 2:\nUser: second question" in provider.prompts[2]

    def test_full_prompt_stored_or_withheld(self, store):
        make_service(store).submit_turn("Hello", conversation_id="kept")
        make_service(store, store_full_prompt=False).submit_turn("Hello", conversation_id="withheld")

        assert store.all_turns_ordered("kept")[0].full_prompt == "Reply in JSON.\n\nHello"
        assert store.all_turns_ordered("withheld")[0].full_prompt is None

    def test_token_counter_used(self, store):
        service = make_service(store, token_counter=lambda text: len(text.split()))

        result = service.submit_turn("Hello there", conversation_id="c1")

        assert result.prompt_tokens == 5

    def test_result_carries_trace(self, store):
        result = make_service(store).submit_turn("Hello", conversation_id="c1")

        assert result.trace.duration_ms == 1000
        assert result.trace.url == "http://fake/generate"
        assert result.metadata["model"] == "fake-model"
        assert result.latency_ms >= 0

    def test_code_fenced_response_accepted(self, store):
        service = make_service(store, FakeProvider(['```json\n{"answer": "Hi"}\n```']))

        result = service.submit_turn("Hello", conversation_id="c1")

        assert result.structured_response["answer"] == "Hi"
        assert store.all_turns_ordered("c1")[0].response == '```json\n{"answer": "Hi"}\n```'


class TestRetrieval:
    """Retrieval is optional and never fatal."""

    def test_context_injected_and_stored(self, store):
        provider = FakeProvider()
        service = make_service(store, provider, retriever=StaticRetriever("[From a.md]:\nFacts."))

        result = service.submit_turn("Tell me facts", conversation_id="c1")

        assert "Relevant information from documents:\n[From a.md]:\nFacts." in provider.prompts[0]
        assert result.retrieved_context == "[From a.md]:\nFacts."
        assert store.all_turns_ordered("c1")[0].retrieved_context == "[From a.md]:\nFacts."

    def test_retrieval_failure_continues(self, store):
        provider = FakeProvider()
        service = make_service(store, provider, retriever=StaticRetriever(error=RuntimeError("index gone")))

        result = service.submit_turn("Hello", conversation_id="c1")

        assert result.turn_index == 1
        assert "Relevant information" not in provider.prompts[0]
        assert store.all_turns_ordered("c1")[0].retrieved_context is None

    def test_retrieval_timeout_continues(self, store):
        release = threading.Event()
        provider = FakeProvider()
        service = make_service(
            store, provider,
            retriever=StaticRetriever("late context", release=release),
            retrieval_timeout=0.05,
        )

        try:
            result = service.submit_turn("Hello", conversation_id="c1")
        finally:
            release.set()
            service.close()

        assert result.turn_index == 1
        assert "late context" not in provider.prompts[0]


class TestFailures:
    """No turn is written when a submission fails."""

    def test_inference_failure(self, store):
        error = LLMClientError(LLMError(code="TIMEOUT_ERROR", message="Request timed out.", details={}))
        service = make_service(store, FakeProvider(error=error))

        with pytest.raises(InferenceFailedError) as exc_info:
            service.submit_turn("Hello", conversation_id="c1")

        assert exc_info.value.code == "INFERENCE_FAILED"
        assert exc_info.value.status_code == 503
        assert exc_info.value.details["provider_code"] == "TIMEOUT_ERROR"
        assert store.count() == 0

    def test_invalid_model_response(self, store):
        service = make_service(store, FakeProvider(["Sure, here you go!"]))

        with pytest.raises(InvalidModelResponseError) as exc_info:
            service.submit_turn("Hello", conversation_id="c1")

        assert exc_info.value.status_code == 502
        assert exc_info.value.details["raw_response"] == "Sure, here you go!"
        assert store.count() == 0

    @pytest.mark.parametrize("text", ['{"answer": "\\ud83d"}', '{"answer": "\ud83d"}'])
    def test_unencodable_model_response(self, store, text):
        service = make_service(store, FakeProvider([text]))

        with pytest.raises(InvalidModelResponseError) as exc_info:
            service.submit_turn("Hello", conversation_id="c1")

        # The raw response is reported in a form that can be written out
        exc_info.value.details["raw_response"].encode("utf-8")
        assert store.count() == 0

    def test_stale_declared_index_rejected_before_inference(self, store):
        provider = FakeProvider()
        service = make_service(store, provider)
        service.submit_turn("one", conversation_id="c1", turn_index=0)

        with pytest.raises(TurnConflictError) as exc_info:
            service.submit_turn("two", conversation_id="c1", turn_index=0)

        assert exc_info.value.status_code == 409
        assert exc_info.value.details["current_turn_index"] == 1
        assert len(provider.prompts) == 1
        assert store.count() == 1

    def test_store_constraint_violation_becomes_conflict(self, store):
        service = make_service(store)
        violation = ConstraintViolation("c1", 1, "duplicate turn index")

        with patch.object(store, "append", side_effect=violation):
            with pytest.raises(TurnConflictError, match="duplicate turn index"):
                service.submit_turn("Hello", conversation_id="c1")


class TestConcurrency:
    """Concurrent submissions to one conversation."""

    def _run_concurrently(self, service, count, **kwargs):
        results, errors = [], []

        def submit(i):
            try:
                results.append(service.submit_turn(f"prompt {i}", conversation_id="c1", **kwargs))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=submit, args=(i,)) for i in range(count)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)
        return results, errors

    def test_simultaneous_submissions_form_one_chain(self, store):
        service = make_service(store, FakeProvider(barrier=threading.Barrier(2)))

        results, errors = self._run_concurrently(service, 2)

        assert errors == []
        by_index = {r.turn_index: r for r in results}
        assert sorted(by_index) == [1, 2]
        assert by_index[2].chain_hash == link_chain_hash(by_index[2].content_hash, by_index[1].chain_hash)
        assert ChainVerifier(store).verify("c1").valid is True
        assert len(service.locks) == 0

    def test_many_writers_stay_gapless(self, store):
        service = make_service(store)

        results, errors = self._run_concurrently(service, 8)

        assert errors == []
        stored = store.all_turns_ordered("c1")
        assert [t.turn_index for t in stored] == list(range(1, 9))
        assert ChainVerifier(store).verify().valid is True

    def test_same_declared_index_one_loser(self, store):
        service = make_service(store, FakeProvider(barrier=threading.Barrier(2)))

        results, errors = self._run_concurrently(service, 2, turn_index=0)

        assert len(results) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], TurnConflictError)
        assert store.count() == 1

    def test_machine_state_records_assigned_index(self, store):
        service = make_service(store, FakeProvider(barrier=threading.Barrier(2)))

        self._run_concurrently(service, 2)

        for turn in store.all_turns_ordered("c1"):
            assert json.loads(turn.machine_state)["turn"] == turn.turn_index


class TestConversationLocks:
    """Test suite for ConversationLocks."""

    def test_entries_released(self):
        locks = ConversationLocks()
        with locks.hold("a"):
            with locks.hold("b"):
                assert len(locks) == 2
        assert len(locks) == 0

    def test_same_conversation_is_exclusive(self):
        locks = ConversationLocks()
        acquired = []

        def contender():
            with locks.hold("a"):
                acquired.append(True)

        with locks.hold("a"):
            thread = threading.Thread(target=contender)
            thread.start()
            time.sleep(0.05)
            assert acquired == []
        thread.join(timeout=5)
        assert acquired == [True]
