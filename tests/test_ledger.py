"""Tests for the session ledger over the in-memory store."""

import threading
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from chatharbor.service.errors import PersistenceError, ValidationError
from chatharbor.service.ledger import MAX_SESSION_ID_LENGTH, SessionLedger
from chatharbor.storage.errors import StorageError
from chatharbor.storage.memory import MemoryStore
from chatharbor.storage.models import ChatMessage


class StepClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def ledger(store, clock):
    return SessionLedger(store, clock=clock)


def _msg(role, content):
    return {"role": role, "content": content}


class TestAppendTurn:
    def test_first_contact_creates_session(self, ledger, clock):
        record = ledger.append_turn("bot-1", "s1", [_msg("user", "hi")])
        assert record.session_id == "s1"
        assert record.started_at == clock.now
        assert record.last_updated_at == clock.now
        assert [m.content for m in record.messages] == ["hi"]
        assert record.messages[0].timestamp == clock.now

    def test_appends_preserve_order(self, ledger, clock):
        ledger.append_turn("bot-1", "s1", [_msg("user", "m1")])
        clock.advance(5)
        record = ledger.append_turn("bot-1", "s1", [_msg("assistant", "m2")])
        assert [m.content for m in record.messages] == ["m1", "m2"]
        assert record.started_at == clock.now - timedelta(seconds=5)
        assert record.last_updated_at == clock.now

    def test_batch_order_is_kept(self, ledger):
        record = ledger.append_turn(
            "bot-1",
            "s1",
            [_msg("user", "question"), _msg("assistant", "answer")],
        )
        assert [m.role for m in record.messages] == ["user", "assistant"]

    def test_accepts_chat_message_instances(self, ledger):
        stamp = datetime(2023, 5, 1)
        record = ledger.append_turn(
            "bot-1", "s1", [ChatMessage(role="system", content="ctx", timestamp=stamp)]
        )
        assert record.messages[0].timestamp == stamp

    def test_empty_batch_creates_empty_session(self, ledger):
        record = ledger.append_turn("bot-1", "s1", [])
        assert record.messages == []
        assert ledger.get_session("bot-1", "s1") is not None

    def test_sessions_are_scoped_per_bot(self, ledger):
        ledger.append_turn("bot-1", "shared", [_msg("user", "a")])
        record = ledger.append_turn("bot-2", "shared", [_msg("user", "b")])
        assert [m.content for m in record.messages] == ["b"]

    def test_user_id_backfilled_once(self, ledger):
        ledger.append_turn("bot-1", "s1", [_msg("user", "a")])
        record = ledger.append_turn("bot-1", "s1", [_msg("user", "b")], user_id="u1")
        assert record.user_id == "u1"
        record = ledger.append_turn("bot-1", "s1", [_msg("user", "c")], user_id="u2")
        assert record.user_id == "u1"

    @pytest.mark.parametrize("session_id", ["", "   ", "x" * (MAX_SESSION_ID_LENGTH + 1)])
    def test_rejects_bad_session_ids(self, ledger, session_id):
        with pytest.raises(ValidationError):
            ledger.append_turn("bot-1", session_id, [_msg("user", "hi")])

    def test_rejects_unknown_role(self, ledger):
        with pytest.raises(ValidationError):
            ledger.append_turn("bot-1", "s1", [_msg("tool", "hi")])
        assert ledger.get_session("bot-1", "s1") is None

    def test_returned_record_is_a_snapshot(self, ledger):
        record = ledger.append_turn("bot-1", "s1", [_msg("user", "hi")])
        record.messages.append(ChatMessage(role="user", content="injected"))
        assert len(ledger.get_session("bot-1", "s1").messages) == 1

    def test_concurrent_appends_keep_every_message(self, ledger):
        barrier = threading.Barrier(8)

        def worker(n):
            barrier.wait()
            for i in range(25):
                ledger.append_turn("bot-1", "busy", [_msg("user", f"{n}-{i}")])

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        record = ledger.get_session("bot-1", "busy")
        assert len(record.messages) == 200
        for n in range(8):
            mine = [m.content for m in record.messages if m.content.startswith(f"{n}-")]
            assert mine == [f"{n}-{i}" for i in range(25)]


class TestDeleteAndList:
    def test_delete_existing_then_missing(self, ledger):
        ledger.append_turn("bot-1", "s1", [_msg("user", "hi")])
        assert ledger.delete_session("bot-1", "s1") is True
        assert ledger.get_session("bot-1", "s1") is None
        assert ledger.delete_session("bot-1", "s1") is False

    def test_delete_missing_has_no_side_effect(self, ledger):
        ledger.append_turn("bot-1", "keep", [_msg("user", "hi")])
        assert ledger.delete_session("bot-1", "other") is False
        assert ledger.get_session("bot-1", "keep") is not None

    def test_list_newest_first_with_paging(self, ledger, clock):
        for sid in ("a", "b", "c"):
            ledger.append_turn("bot-1", sid, [_msg("user", sid)])
            clock.advance(1)
        ids = [s.session_id for s in ledger.list_sessions("bot-1", limit=2)]
        assert ids == ["c", "b"]
        ids = [s.session_id for s in ledger.list_sessions("bot-1", limit=2, offset=2)]
        assert ids == ["a"]

    def test_list_rejects_bad_paging(self, ledger):
        with pytest.raises(ValidationError):
            ledger.list_sessions("bot-1", limit=0)


class TestStoreFailures:
    def test_storage_error_becomes_persistence_error(self):
        store = MagicMock()
        store.upsert_append_session.side_effect = StorageError("upsert_append_session")
        ledger = SessionLedger(store)
        with pytest.raises(PersistenceError) as excinfo:
            ledger.append_turn("bot-1", "s1", [_msg("user", "hi")])
        assert excinfo.value.status_code == 500
        assert excinfo.value.error_code == "server_error"
        store.upsert_append_session.assert_called_once()

    def test_delete_failure_surfaces(self):
        store = MagicMock()
        store.delete_chat_session.side_effect = StorageError("delete_chat_session")
        with pytest.raises(PersistenceError):
            SessionLedger(store).delete_session("bot-1", "s1")
