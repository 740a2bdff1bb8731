"""Unit tests for SupabaseTurnStore with a mocked Supabase client."""
import sys
sys.path.insert(0, 'backend')

import pytest
from unittest.mock import Mock, patch

from models.turn import Turn
from services.supabase_turn_store import PAGE_SIZE, SupabaseTurnStore
from services.turn_store import ConstraintViolation


def fluent_query():
    """Query builder mock whose filter methods all return itself."""
    query = Mock()
    for method in ("select", "eq", "order", "limit", "range", "insert"):
        getattr(query, method).return_value = query
    return query


@pytest.fixture
def query():
    return fluent_query()


@pytest.fixture
def store(query):
    with patch('services.supabase_turn_store.create_client') as mock_create:
        mock_client = Mock()
        mock_client.table.return_value = query
        mock_create.return_value = mock_client
        yield SupabaseTurnStore(supabase_url="https://example.supabase.co", supabase_key="key")


def row(conversation_id, turn_index, **overrides):
    data = {
        "conversation_id": conversation_id,
        "turn_index": turn_index,
        "created_at": "2024-05-01T12:00:00.12345+00:00",
        "user_prompt": f"q{turn_index}",
        "full_prompt": None,
        "response": f"r{turn_index}",
        "machine_state": "{}",
        "retrieved_context": None,
        "content_hash": f"content{turn_index}",
        "chain_hash": f"chain{turn_index}",
    }
    data.update(overrides)
    return data


def make_turn(turn_index):
    return Turn(
        conversation_id="c1",
        turn_index=turn_index,
        user_prompt="q",
        response="r",
        machine_state="{}",
        content_hash="h",
        chain_hash="c",
    )


class TestSupabaseTurnStore:
    """Test suite for SupabaseTurnStore."""

    def test_missing_credentials_raise(self):
        with pytest.raises(ValueError, match="SUPABASE_URL and SUPABASE_KEY must be set"):
            SupabaseTurnStore(supabase_url=None, supabase_key=None)

    def test_last_turn(self, store, query):
        query.execute.return_value = Mock(data=[{"turn_index": 4, "chain_hash": "abc"}])

        head = store.last_turn("c1")

        assert head.turn_index == 4
        assert head.chain_hash == "abc"
        query.eq.assert_called_with("conversation_id", "c1")
        query.order.assert_called_with("turn_index", desc=True)
        query.limit.assert_called_with(1)

    def test_last_turn_none(self, store, query):
        query.execute.return_value = Mock(data=[])
        assert store.last_turn("c1") is None
        assert store.last_chain_hash("c1") is None

    def test_append_inserts_next_index(self, store, query):
        query.execute.side_effect = [
            Mock(data=[{"turn_index": 1, "chain_hash": "prev"}]),
            Mock(data=[{}]),
        ]

        store.append(make_turn(2))

        record = query.insert.call_args[0][0]
        assert record["conversation_id"] == "c1"
        assert record["turn_index"] == 2
        assert record["chain_hash"] == "c"
        assert "created_at" in record

    def test_append_rejects_out_of_sequence(self, store, query):
        query.execute.return_value = Mock(data=[{"turn_index": 1, "chain_hash": "prev"}])

        with pytest.raises(ConstraintViolation, match="out of sequence"):
            store.append(make_turn(3))
        query.insert.assert_not_called()

    def test_append_maps_unique_violation(self, store, query):
        unique_violation = Exception("duplicate key value violates unique constraint")
        unique_violation.code = "23505"
        query.execute.side_effect = [Mock(data=[]), unique_violation]

        with pytest.raises(ConstraintViolation, match="duplicate turn index"):
            store.append(make_turn(1))

    def test_append_propagates_other_errors(self, store, query):
        query.execute.side_effect = [Mock(data=[]), RuntimeError("network down")]

        with pytest.raises(RuntimeError, match="network down"):
            store.append(make_turn(1))

    def test_history_is_ascending(self, store, query):
        query.execute.return_value = Mock(data=[
            {"turn_index": 3, "user_prompt": "q3", "response": "r3"},
            {"turn_index": 2, "user_prompt": "q2", "response": "r2"},
        ])

        history = store.history("c1", limit=2)

        assert [h.turn_index for h in history] == [2, 3]
        query.limit.assert_called_with(2)

    def test_all_turns_paginates(self, store, query):
        first_page = [row("c1", i + 1) for i in range(PAGE_SIZE)]
        second_page = [row("c2", 1)]
        query.execute.side_effect = [Mock(data=first_page), Mock(data=second_page)]

        turns = store.all_turns_ordered()

        assert len(turns) == PAGE_SIZE + 1
        assert turns[-1].conversation_id == "c2"
        query.range.assert_any_call(0, PAGE_SIZE - 1)
        query.range.assert_any_call(PAGE_SIZE, 2 * PAGE_SIZE - 1)

    def test_all_turns_parses_timestamps(self, store, query):
        query.execute.return_value = Mock(data=[row("c1", 1, created_at="2024-05-01T12:00:00.1Z")])

        turns = store.all_turns_ordered("c1")

        assert turns[0].created_at.year == 2024
        assert turns[0].created_at.microsecond == 100000

    def test_count(self, store, query):
        query.execute.return_value = Mock(count=7)
        assert store.count() == 7
