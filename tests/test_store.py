"""Tests for companion/store.py — atomic snapshot storage."""

from datetime import datetime, timezone

import orjson
import pytest

from companion.errors import PersistenceError
from companion.store import SessionRecord, SessionStore, Snapshot, message_from_dict, message_to_dict
from companion.types import ContentBlock, Message, MessageStatus, PermissionMode, Role, SessionConfig


def _record(session_id="s1", **kwargs):
    history = [
        Message.plain(Role.USER, "hello"),
        Message(
            role=Role.ASSISTANT,
            message_id="m1",
            blocks=[
                ContentBlock(type="thinking", text="hmm"),
                ContentBlock(type="text", text="Hi ünïcode"),
                ContentBlock(type="tool_use", tool_use_id="t1", tool_name="Bash", tool_input={"command": "ls"}, status="resolved"),
                ContentBlock(type="tool_result", tool_use_id="t1", output="a.txt", is_error=True),
            ],
            truncated=True,
        ),
    ]
    defaults = dict(
        id=session_id,
        name=f"name-{session_id}",
        config=SessionConfig(cwd="/work", model="opus", permission_mode=PermissionMode.PLAN, env_profile="dev"),
        created_at=datetime(2026, 1, 2, 3, 4, 5, 678901, tzinfo=timezone.utc),
        archived=True,
        pinned=True,
        history=history,
        remote_session_id="remote-1",
        previous_permission_mode=PermissionMode.ACCEPT_EDITS,
        cost=1.25,
        turns=4,
    )
    defaults.update(kwargs)
    return SessionRecord(**defaults)


@pytest.fixture
def store(tmp_path):
    return SessionStore(tmp_path / "state")


class TestRoundTrip:
    def test_missing_file_is_empty(self, store):
        snapshot = store.load()
        assert snapshot.sessions == []
        assert snapshot.active_id is None

    def test_zero_sessions(self, store):
        store.save(Snapshot())
        assert store.path.is_file()
        assert store.load() == Snapshot()

    def test_full_record(self, store):
        original = Snapshot(sessions=[_record("s1"), _record("s2", archived=False)], active_id="s2")
        store.save(original)
        assert store.load() == original

    def test_document_layout(self, store):
        store.save(Snapshot(sessions=[_record()], active_id="s1"))
        doc = orjson.loads(store.path.read_bytes())
        assert doc["version"] == 1
        assert doc["active_id"] == "s1"
        assert doc["sessions"][0]["config"]["permission_mode"] == "plan"

    def test_streaming_message_loads_truncated(self):
        data = message_to_dict(Message(role=Role.ASSISTANT, message_id="m", status=MessageStatus.STREAMING))
        loaded = message_from_dict(data)
        assert loaded.status is MessageStatus.COMPLETE
        assert loaded.truncated


class TestFailures:
    def test_corrupt_file(self, store):
        store.path.parent.mkdir(parents=True)
        store.path.write_bytes(b"{not json")
        with pytest.raises(PersistenceError):
            store.load()

    def test_wrong_shape(self, store):
        store.path.parent.mkdir(parents=True)
        store.path.write_bytes(b"[]")
        with pytest.raises(PersistenceError):
            store.load()

    def test_unknown_version(self, store):
        store.path.parent.mkdir(parents=True)
        store.path.write_bytes(b'{"version": 99, "sessions": []}')
        with pytest.raises(PersistenceError, match="version"):
            store.load()

    def test_bad_record_skipped(self, store):
        store.save(Snapshot(sessions=[_record("good")], active_id="bad"))
        doc = orjson.loads(store.path.read_bytes())
        doc["sessions"].append({"id": "bad", "name": "x"})
        doc["sessions"].append(doc["sessions"][0])
        store.path.write_bytes(orjson.dumps(doc))

        snapshot = store.load()
        assert [r.id for r in snapshot.sessions] == ["good"]
        assert snapshot.active_id is None

    def test_failed_write_keeps_previous_snapshot(self, store, monkeypatch):
        store.save(Snapshot(sessions=[_record("keep")]))
        before = store.path.read_bytes()

        def boom(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr("companion.store.os.replace", boom)
        with pytest.raises(PersistenceError, match="disk full"):
            store.save(Snapshot())
        assert store.path.read_bytes() == before
        assert [p.name for p in store.path.parent.iterdir()] == ["sessions.json"]

    def test_unwritable_directory(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x")
        store = SessionStore(blocker)
        with pytest.raises(PersistenceError):
            store.save(Snapshot())
