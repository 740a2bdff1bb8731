"""Unit tests for ChainVerifier."""
import sys
sys.path.insert(0, 'backend')

import threading

import pytest
from sqlalchemy import text

from models.turn import Turn
from services.hashing import hash_turn_content, link_chain_hash
from services.turn_store import SQLTurnStore
from services.verifier import ChainVerifier


@pytest.fixture
def store(tmp_path):
    turn_store = SQLTurnStore(f"sqlite:///{tmp_path / 'ledger.db'}")
    yield turn_store
    turn_store.close()


def record(store, conversation_id, exchanges):
    """Append (user_prompt, response) pairs as a properly chained conversation."""
    previous = None
    for index, (user_prompt, response) in enumerate(exchanges, 1):
        machine_state = response[:-1] + f',"turn":{index}}}'
        content_hash = hash_turn_content(index, user_prompt, response, machine_state)
        chain_hash = link_chain_hash(content_hash, previous)
        store.append(Turn(
            conversation_id=conversation_id,
            turn_index=index,
            user_prompt=user_prompt,
            response=response,
            machine_state=machine_state,
            content_hash=content_hash,
            chain_hash=chain_hash,
        ))
        previous = chain_hash


def tamper(store, sql, **params):
    with store.engine.begin() as connection:
        connection.execute(text(sql), params)


class TestChainVerifier:
    """Test suite for ChainVerifier."""

    def test_empty_store_is_valid(self, store):
        result = ChainVerifier(store).verify()

        assert result.valid is True
        assert result.total_turns == 0
        assert result.invalid_turns == 0
        assert result.conversations_verified == 0
        assert result.message == "No turns to verify"

    def test_single_turn_verifies_against_genesis(self, store):
        record(store, "c1", [("Hello", '{"answer":"Hi"}')])

        result = ChainVerifier(store).verify("c1")

        assert result.valid is True
        assert result.total_turns == 1
        assert result.conversations_verified == 1

    def test_intact_ledger(self, store):
        record(store, "c1", [("Hello", '{"answer":"Hi"}'), ("Again", '{"answer":"Yes"}')])
        record(store, "c2", [("Other", '{"answer":"Sure"}')])

        result = ChainVerifier(store).verify()

        assert result.valid is True
        assert result.total_turns == 3
        assert result.conversations_verified == 2
        assert result.message == "All 3 turns verified"

    def test_flipped_response_character_detected(self, store):
        record(store, "c1", [("Hello", '{"answer":"Hi"}'), ("How are you?", '{"answer":"Fine"}')])
        tamper(
            store,
            "UPDATE turns SET response = :response WHERE conversation_id = 'c1' AND turn_index = 1",
            response='{"answer":"Ho"}',
        )

        result = ChainVerifier(store).verify("c1")

        assert result.valid is False
        assert result.total_turns == 2
        assert result.invalid_turns == 1
        assert result.invalid[0].turn_index == 1
        assert result.invalid[0].content_valid is False
        assert result.invalid[0].chain_valid is True

    def test_tampered_chain_hash_reported_once(self, store):
        record(store, "c1", [("a", '{"x":1}'), ("b", '{"x":2}'), ("c", '{"x":3}')])
        tamper(
            store,
            "UPDATE turns SET chain_hash = :chain WHERE conversation_id = 'c1' AND turn_index = 2",
            chain="f" * 64,
        )

        result = ChainVerifier(store).verify("c1")

        # Turn 3 is checked against the stored chain hash of turn 2 as well
        assert result.valid is False
        assert sorted(t.turn_index for t in result.invalid) == [2, 3]
        assert result.invalid[0].content_valid is True

    def test_other_conversations_unaffected(self, store):
        record(store, "c1", [("Hello", '{"answer":"Hi"}')])
        record(store, "c2", [("Hello", '{"answer":"Hi"}')])
        tamper(store, "UPDATE turns SET user_prompt = 'Hellp' WHERE conversation_id = 'c2'")

        assert ChainVerifier(store).verify("c1").valid is True
        whole = ChainVerifier(store).verify()
        assert whole.invalid_turns == 1
        assert whole.invalid[0].conversation_id == "c2"

    def test_machine_state_tamper_detected(self, store):
        record(store, "c1", [("Hello", '{"answer":"Hi"}')])
        tamper(store, "UPDATE turns SET machine_state = :state", state='{"answer":"Hi","turn":2}')

        assert ChainVerifier(store).verify().valid is False

    def test_verification_is_idempotent(self, store):
        record(store, "c1", [("Hello", '{"answer":"Hi"}'), ("Again", '{"answer":"Yes"}')])
        tamper(store, "UPDATE turns SET response = 'changed' WHERE turn_index = 2")

        verifier = ChainVerifier(store)
        assert verifier.verify() == verifier.verify()

    def test_verify_while_turns_are_appended(self, store):
        exchanges = [(f"Question {i}", f'{{"answer":"Reply {i}"}}') for i in range(40)]
        writer = threading.Thread(target=record, args=(store, "c1", exchanges))
        verifier = ChainVerifier(store)

        reports = []
        writer.start()
        while writer.is_alive():
            reports.append(verifier.verify())
        writer.join()
        reports.append(verifier.verify())

        assert all(report.valid for report in reports)
        totals = [report.total_turns for report in reports]
        assert totals == sorted(totals)
        assert totals[-1] == 40
