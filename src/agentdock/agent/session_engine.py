"""Session engine: one long-lived agent process per conversation.

Lifecycle of a session::

    uncreated -> starting -> active -> dormant -> active (resumed) -> deleted

``create_session`` spawns under a temporary id and re-keys the session once
the agent reports its canonical id. A session with no live process
(container restart, process exit) is resumed transparently from persisted
metadata the next time someone talks to it. Resume for a given id is
serialised by a per-session lock, so two concurrent callers never spawn two
processes for the same conversation.

Every stream event is appended to the session's JSONL log and fanned out to
subscribers in arrival order.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from agentdock.agent.config_store import ConfigStore
from agentdock.agent.process_runner import ProcessRunner
from agentdock.agent.session_store import SessionMetadata, SessionStore
from agentdock.config import Settings
from agentdock.errors import ProcessStartError, SessionNotFoundError, SessionStartTimeoutError
from agentdock.event_bus import NoticeCallback, SessionChannel
from agentdock.logger import logger
from agentdock.types import SessionInfo, SessionOptions, SessionState

RunnerFactory = Callable[..., ProcessRunner]


@dataclass
class _LiveSession:
    info: SessionInfo
    runner: ProcessRunner
    # Events that arrived before the canonical id was known
    backlog: list[dict[str, Any]] = field(default_factory=list)
    unsubscribes: list[Callable[[], None]] = field(default_factory=list)

    def detach(self) -> None:
        for unsub in self.unsubscribes:
            unsub()
        self.unsubscribes.clear()


class AgentSessionEngine:
    """Owns every agent process inside one container."""

    def __init__(
        self,
        settings: Settings,
        *,
        store: SessionStore | None = None,
        config_store: ConfigStore | None = None,
        channel: SessionChannel | None = None,
        runner_factory: RunnerFactory = ProcessRunner,
    ) -> None:
        self._settings = settings
        self.store = store or SessionStore(settings.data_dir)
        self.config_store = config_store
        self.channel = channel or SessionChannel()
        self._runner_factory = runner_factory
        self._sessions: dict[str, _LiveSession] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Runner wiring
    # ------------------------------------------------------------------

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    def _build_env(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        env = dict(os.environ)
        if self.config_store is not None:
            env.update(self.config_store.as_env())
        if extra:
            env.update(extra)
        return env

    def _make_runner(
        self,
        session_id: str,
        working_directory: str,
        *,
        canonical_session_id: str | None = None,
        system_prompt: str | None = None,
        model: str | None = None,
        max_turns: int | None = None,
        env: dict[str, str] | None = None,
    ) -> ProcessRunner:
        s = self._settings.session
        return self._runner_factory(
            session_id,
            working_directory,
            command=s.agent_command,
            canonical_session_id=canonical_session_id,
            env=self._build_env(env),
            system_prompt=system_prompt,
            model=model,
            max_turns=max_turns,
            ready_window=s.ready_window,
            stop_grace=s.stop_grace,
        )

    def _attach(self, live: _LiveSession) -> None:
        runner = live.runner

        def on_message(message: dict[str, Any]) -> None:
            live.info.last_activity = datetime.now(UTC)
            if live.info.canonical_id is None:
                live.backlog.append(message)
                return
            self._record(live.info.id, message)

        def on_exit(code: int | None) -> None:
            if live.info.state is not SessionState.DELETED:
                live.info.state = SessionState.DORMANT
            self.channel.publish(live.info.id, {"type": "process_exit", "code": code})

        live.unsubscribes += [
            runner.on_session_id(lambda canonical: self._on_canonical_id(live, canonical)),
            runner.on_message(on_message),
            runner.on_exit(on_exit),
        ]

    def _record(self, session_id: str, message: dict[str, Any]) -> None:
        try:
            self.store.append_message(session_id, message)
        except OSError as exc:
            logger.error("Failed to persist session event", session_id=session_id, err=str(exc))
        self.channel.publish(session_id, message)

    def _on_canonical_id(self, live: _LiveSession, canonical: str) -> None:
        info = live.info
        if info.resumed_from is not None:
            # Resumed sessions keep their key; only the agent's own id may move
            info.canonical_id = canonical
            meta = self.store.get(info.id)
            if meta is not None and meta.canonical_id != canonical:
                meta.canonical_id = canonical
                self.store.put(meta)
            return

        temp_id = info.id
        info.id = canonical
        info.canonical_id = canonical
        self._sessions.pop(temp_id, None)
        self._sessions[canonical] = live
        logger.info("Session re-keyed", temp_id=temp_id, session_id=canonical)
        for message in live.backlog:
            self._record(canonical, message)
        live.backlog.clear()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def create_session(
        self, initial_message: str, options: SessionOptions | None = None
    ) -> SessionInfo:
        options = options or SessionOptions()
        temp_id = str(uuid.uuid4())
        working_directory = options.working_directory or self._settings.session.base_working_dir
        info = SessionInfo(id=temp_id, working_directory=working_directory)
        info.state = SessionState.STARTING

        runner = self._make_runner(
            temp_id,
            working_directory,
            system_prompt=options.system_prompt,
            model=options.model,
            max_turns=options.max_turns,
            env=options.env,
        )
        live = _LiveSession(info=info, runner=runner)
        canonical: asyncio.Future[str] = asyncio.get_running_loop().create_future()

        def _capture(session_id: str) -> None:
            if not canonical.done():
                canonical.set_result(session_id)

        self._attach(live)
        live.unsubscribes.append(runner.on_session_id(_capture))
        self._sessions[temp_id] = live

        try:
            await runner.start()
            live.backlog.append(_user_record(initial_message))
            await runner.send(initial_message)
            session_id = await asyncio.wait_for(
                canonical, timeout=self._settings.session.session_id_timeout
            )
        except TimeoutError:
            self._discard(live, temp_id)
            await runner.stop()
            raise SessionStartTimeoutError(
                f"Agent did not report a session id within "
                f"{self._settings.session.session_id_timeout}s"
            ) from None
        except Exception:
            self._discard(live, temp_id)
            await runner.stop()
            raise

        info.state = SessionState.ACTIVE
        self.store.put(
            SessionMetadata(
                session_id=session_id,
                canonical_id=session_id,
                working_directory=working_directory,
                created_at=info.created_at.isoformat(),
                system_prompt=options.system_prompt,
                available_env_vars=list(options.available_env_vars),
                model=options.model,
            )
        )
        logger.info("Session created", session_id=session_id, cwd=working_directory)
        return info

    def _discard(self, live: _LiveSession, temp_id: str) -> None:
        live.detach()
        self._sessions.pop(temp_id, None)
        self._sessions.pop(live.info.id, None)

    async def _ensure_live(self, session_id: str) -> _LiveSession:
        async with self._lock_for(session_id):
            live = self._sessions.get(session_id)
            if live is not None and live.runner.is_running:
                return live

            meta = self.store.get(session_id)
            if meta is None:
                raise SessionNotFoundError(session_id)

            if live is not None:
                live.detach()
                # Not ready no longer means exited (a broken stdin pipe leaves it alive)
                await live.runner.stop()

            canonical = meta.canonical_id or session_id
            logger.info("Resuming session", session_id=session_id, canonical_id=canonical)
            runner = self._make_runner(
                session_id,
                meta.working_directory,
                canonical_session_id=canonical,
                system_prompt=meta.system_prompt,
                model=meta.model,
            )
            info = SessionInfo(
                id=session_id,
                working_directory=meta.working_directory,
                created_at=_parse_ts(meta.created_at),
                canonical_id=canonical,
                resumed_from=canonical,
                state=SessionState.STARTING,
            )
            live = _LiveSession(info=info, runner=runner)
            self._attach(live)
            self._sessions[session_id] = live
            try:
                await runner.start()
            except ProcessStartError:
                live.detach()
                self._sessions.pop(session_id, None)
                raise
            info.state = SessionState.ACTIVE
            return live

    async def send_message(self, session_id: str, text: str) -> None:
        live = await self._ensure_live(session_id)
        live.info.last_activity = datetime.now(UTC)
        self._record(session_id, _user_record(text))
        await live.runner.send(text)
        self.store.touch(session_id)

    async def get_session(self, session_id: str) -> SessionInfo:
        live = await self._ensure_live(session_id)
        return live.info

    async def interrupt(self, session_id: str) -> bool:
        live = self._sessions.get(session_id)
        if live is None or not live.runner.is_running:
            return False
        return await live.runner.interrupt()

    def is_running(self, session_id: str) -> bool:
        live = self._sessions.get(session_id)
        return live is not None and live.runner.is_running

    def get_messages(self, session_id: str) -> list[dict[str, Any]]:
        if session_id not in self._sessions and self.store.get(session_id) is None:
            raise SessionNotFoundError(session_id)
        return self.store.read_messages(session_id)

    def subscribe(self, session_id: str, callback: NoticeCallback) -> Callable[[], None]:
        return self.channel.add(session_id, callback)

    def list_sessions(self) -> list[SessionInfo]:
        sessions = {sid: live.info for sid, live in self._sessions.items() if live.info.canonical_id}
        for meta in self.store.list_all():
            if meta.session_id in sessions:
                continue
            sessions[meta.session_id] = SessionInfo(
                id=meta.session_id,
                working_directory=meta.working_directory,
                created_at=_parse_ts(meta.created_at),
                last_activity=_parse_ts(meta.last_activity),
                canonical_id=meta.canonical_id,
                state=SessionState.DORMANT,
            )
        return list(sessions.values())

    async def delete_session(self, session_id: str) -> bool:
        async with self._lock_for(session_id):
            live = self._sessions.pop(session_id, None)
            if live is not None:
                live.info.state = SessionState.DELETED
                live.detach()
                await live.runner.stop()
            removed = self.store.remove(session_id)
        self._locks.pop(session_id, None)
        if live is None and not removed:
            return False
        logger.info("Session deleted", session_id=session_id)
        return True

    async def stop_all(self) -> None:
        """Stop every tracked process concurrently; failures are logged, not raised."""
        sessions = list(self._sessions.items())
        self._sessions.clear()
        for _, live in sessions:
            live.detach()
            live.info.state = SessionState.DORMANT
        results = await asyncio.gather(
            *(live.runner.stop() for _, live in sessions), return_exceptions=True
        )
        for (session_id, _), result in zip(sessions, results, strict=True):
            if isinstance(result, BaseException):
                logger.error("Failed to stop session", session_id=session_id, err=str(result))
        self._locks.clear()
        logger.info("All sessions stopped", count=len(sessions))


def _user_record(text: str) -> dict[str, Any]:
    return {
        "type": "user",
        "message": {"role": "user", "content": [{"type": "text", "text": text}]},
        "timestamp": datetime.now(UTC).isoformat(),
    }


def _parse_ts(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return datetime.now(UTC)
