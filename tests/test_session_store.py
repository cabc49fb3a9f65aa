"""Tests for the on-disk session index and message logs."""

from __future__ import annotations

import json

from agentdock.agent.session_store import SessionMetadata, SessionStore


def _meta(session_id: str = "s-1") -> SessionMetadata:
    return SessionMetadata(session_id=session_id, canonical_id=session_id, working_directory="/w")


class TestMetadata:
    def test_put_survives_reload(self, tmp_path):
        store = SessionStore(tmp_path)
        store.put(_meta("s-1"))
        store.put(_meta("s-2"))

        reloaded = SessionStore(tmp_path)
        assert {m.session_id for m in reloaded.list_all()} == {"s-1", "s-2"}
        assert reloaded.get("s-1").working_directory == "/w"

    def test_touch_updates_activity(self, tmp_path):
        store = SessionStore(tmp_path)
        meta = _meta()
        meta.last_activity = "2000-01-01T00:00:00+00:00"
        store.put(meta)
        store.touch("s-1")
        assert store.get("s-1").last_activity != "2000-01-01T00:00:00+00:00"
        store.touch("missing")

    def test_unreadable_index_starts_empty(self, tmp_path):
        (tmp_path / "sessions.json").write_text("{not json")
        assert SessionStore(tmp_path).list_all() == []

    def test_unknown_fields_ignored(self, tmp_path):
        raw = {"s-1": {**json.loads(json.dumps(_meta().__dict__)), "legacy": True}}
        (tmp_path / "sessions.json").write_text(json.dumps(raw))
        assert SessionStore(tmp_path).get("s-1").canonical_id == "s-1"

    def test_malformed_entry_skipped(self, tmp_path):
        raw = {"s-1": {"session_id": "s-1"}, "s-2": _meta("s-2").__dict__}
        (tmp_path / "sessions.json").write_text(json.dumps(raw))
        assert [m.session_id for m in SessionStore(tmp_path).list_all()] == ["s-2"]


class TestMessages:
    def test_append_and_read(self, tmp_path):
        store = SessionStore(tmp_path)
        store.append_message("s-1", {"type": "user", "n": 1})
        store.append_message("s-1", {"type": "result", "n": 2})
        assert [m["n"] for m in store.read_messages("s-1")] == [1, 2]
        assert store.read_messages("other") == []

    def test_remove_drops_metadata_and_log(self, tmp_path):
        store = SessionStore(tmp_path)
        store.put(_meta())
        store.append_message("s-1", {"type": "user"})

        assert store.remove("s-1") is True
        assert store.get("s-1") is None
        assert not store.log_path("s-1").exists()
        assert store.remove("s-1") is False

    def test_remove_log_only(self, tmp_path):
        store = SessionStore(tmp_path)
        store.append_message("orphan", {"type": "user"})
        assert store.remove("orphan") is True
