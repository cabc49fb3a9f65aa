"""Pending input registry. Suspends a tool call until a human answers.

    tool handler calls create_pending(tool_use_id, kind)
        -> host surfaces the request to the user
        -> user answers: POST /inputs/{id}/resolve  (or /reject)
        -> resolve() pops the entry and settles its future
        -> tool handler wakes up with the value (or an exception)

Entries are popped before their future is settled, so a second resolve or
reject for the same id finds nothing and returns False. Everything runs on
one event loop; there is no await between pop and settle.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from dataclasses import dataclass, field
from typing import Any

from agentdock.errors import DuplicatePendingError, InputRejectedError, InputTimeoutError
from agentdock.logger import logger
from agentdock.types import InputKind


@dataclass
class PendingInput:
    tool_use_id: str
    kind: InputKind
    future: asyncio.Future[Any]
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.monotonic)

    def summary(self) -> dict[str, Any]:
        return {
            "toolUseId": self.tool_use_id,
            "kind": self.kind,
            "payload": self.payload,
            "ageSeconds": round(time.monotonic() - self.created_at, 1),
        }


class InputBridge:
    def __init__(self, *, timeout: float = 300.0, sweep_interval: float = 30.0) -> None:
        self.timeout = timeout
        self.sweep_interval = sweep_interval
        self._pending: dict[str, PendingInput] = {}
        self._current_tool_use_id: str | None = None
        self._sweeper: asyncio.Task[None] | None = None

    # -- registration --------------------------------------------------------

    def create_pending(
        self,
        tool_use_id: str,
        kind: InputKind,
        payload: dict[str, Any] | None = None,
    ) -> asyncio.Future[Any]:
        """Register a pending request and return the future the tool awaits."""
        if tool_use_id in self._pending:
            raise DuplicatePendingError(f"Input request {tool_use_id} is already pending")
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[tool_use_id] = PendingInput(
            tool_use_id=tool_use_id,
            kind=kind,
            future=future,
            payload=payload or {},
        )
        logger.info("Pending input created", tool_use_id=tool_use_id, kind=kind)
        return future

    def resolve(self, tool_use_id: str, value: Any) -> bool:
        entry = self._pending.pop(tool_use_id, None)
        if entry is None:
            logger.warning("No pending input to resolve", tool_use_id=tool_use_id)
            return False
        if not entry.future.done():
            entry.future.set_result(value)
        logger.info("Pending input resolved", tool_use_id=tool_use_id, kind=entry.kind)
        return True

    def reject(self, tool_use_id: str, reason: str | BaseException) -> bool:
        entry = self._pending.pop(tool_use_id, None)
        if entry is None:
            logger.warning("No pending input to reject", tool_use_id=tool_use_id)
            return False
        exc = reason if isinstance(reason, BaseException) else InputRejectedError(reason)
        if not entry.future.done():
            entry.future.set_exception(exc)
        logger.info(
            "Pending input rejected",
            tool_use_id=tool_use_id,
            kind=entry.kind,
            reason=str(exc),
        )
        return True

    def has_pending(self, tool_use_id: str) -> bool:
        return tool_use_id in self._pending

    def list_pending(self) -> list[PendingInput]:
        return list(self._pending.values())

    # -- tool-use id hand-off ------------------------------------------------
    # A pre-tool hook sees the tool_use_id before the handler runs; the
    # handler itself only gets its arguments.

    def set_current_tool_use_id(self, tool_use_id: str) -> None:
        self._current_tool_use_id = tool_use_id

    def consume_current_tool_use_id(self) -> str | None:
        tool_use_id, self._current_tool_use_id = self._current_tool_use_id, None
        return tool_use_id

    # -- expiry ----------------------------------------------------------------

    def sweep_stale(self, max_age: float | None = None) -> list[str]:
        """Reject every entry older than ``max_age`` seconds. Returns their ids."""
        max_age = self.timeout if max_age is None else max_age
        now = time.monotonic()
        stale = [
            tool_use_id
            for tool_use_id, entry in self._pending.items()
            if now - entry.created_at > max_age
        ]
        for tool_use_id in stale:
            self.reject(tool_use_id, InputTimeoutError("Input request timed out"))
        if stale:
            logger.info("Swept stale input requests", count=len(stale))
        return stale

    def start_sweeper(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="input-sweeper")

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._sweeper
        self._sweeper = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                self.sweep_stale()
            except Exception:
                logger.exception("Input sweep failed")

    def reject_all(self, reason: str) -> None:
        for tool_use_id in list(self._pending):
            self.reject(tool_use_id, reason)
