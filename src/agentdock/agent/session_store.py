"""On-disk session state: metadata index plus one JSONL log per session.

Layout under the data dir::

    sessions.json            {session_id: metadata}
    sessions/<id>.jsonl      every stream event, one per line

The metadata index is rewritten atomically on every change. Logs are
append-only; a torn final line is skipped on read.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from agentdock.logger import logger
from agentdock.utils import append_jsonl, read_jsonl_file, write_json_atomic


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class SessionMetadata:
    session_id: str
    canonical_id: str
    working_directory: str
    created_at: str = field(default_factory=_now_iso)
    last_activity: str = field(default_factory=_now_iso)
    system_prompt: str | None = None
    available_env_vars: list[str] = field(default_factory=list)
    model: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionMetadata:
        known = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in data.items() if k in known})


class SessionStore:
    def __init__(self, data_dir: Path) -> None:
        self.data_dir = data_dir
        self.index_path = data_dir / "sessions.json"
        self.logs_dir = data_dir / "sessions"
        self._index: dict[str, SessionMetadata] | None = None

    # -- metadata ------------------------------------------------------------

    def _load(self) -> dict[str, SessionMetadata]:
        if self._index is not None:
            return self._index
        index: dict[str, SessionMetadata] = {}
        if self.index_path.exists():
            try:
                raw = json.loads(self.index_path.read_text())
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("Session index unreadable, starting empty", err=str(exc))
                raw = {}
            for session_id, data in raw.items():
                try:
                    index[session_id] = SessionMetadata.from_dict(data)
                except TypeError:
                    logger.warning("Skipping malformed session metadata", session_id=session_id)
        self._index = index
        return index

    def _flush(self) -> None:
        index = self._load()
        write_json_atomic(
            self.index_path,
            {sid: asdict(meta) for sid, meta in index.items()},
            indent=2,
        )

    def get(self, session_id: str) -> SessionMetadata | None:
        return self._load().get(session_id)

    def put(self, meta: SessionMetadata) -> None:
        self._load()[meta.session_id] = meta
        self._flush()

    def touch(self, session_id: str) -> None:
        meta = self.get(session_id)
        if meta is None:
            return
        meta.last_activity = _now_iso()
        self._flush()

    def remove(self, session_id: str) -> bool:
        existed = self._load().pop(session_id, None) is not None
        if existed:
            self._flush()
        log = self.log_path(session_id)
        if log.exists():
            log.unlink()
            existed = True
        return existed

    def list_all(self) -> list[SessionMetadata]:
        return list(self._load().values())

    # -- message log -----------------------------------------------------------

    def log_path(self, session_id: str) -> Path:
        return self.logs_dir / f"{session_id}.jsonl"

    def append_message(self, session_id: str, message: dict[str, Any]) -> None:
        append_jsonl(self.log_path(session_id), message)

    def read_messages(self, session_id: str) -> list[dict[str, Any]]:
        return read_jsonl_file(self.log_path(session_id))
