"""Lightweight asyncio event bus for intra-process pub/sub.

Carries the host-wide channels consumed by the UI boundary: container
status changes, image readiness, and health warnings. Per-session stream
notices go through :class:`SessionChannel` so a listener only sees the
sessions it asked for.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections import defaultdict
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any

from agentdock.logger import logger
from agentdock.types import ContainerStatus, HealthCheckResult, RuntimeReadiness

# --- Event types ---


@dataclass
class AgentStatusChanged:
    """A container transitioned between running and stopped."""

    agent_slug: str
    status: ContainerStatus


@dataclass
class ReadinessChanged:
    """The image readiness pipeline moved to a new phase or reported progress."""

    readiness: RuntimeReadiness


@dataclass
class HealthWarnings:
    """The set of non-ok health results for an agent changed."""

    agent_slug: str
    warnings: list[HealthCheckResult] = field(default_factory=list)


type Event = AgentStatusChanged | ReadinessChanged | HealthWarnings
type Listener = Callable[[Any], Coroutine[Any, Any, None]]


class EventBus:
    """Fire-and-forget async event dispatcher."""

    def __init__(self) -> None:
        self._listeners: defaultdict[type, list[Listener]] = defaultdict(list)

    def subscribe(self, event_type: type, listener: Listener) -> Callable[[], None]:
        """Subscribe to an event type. Returns an unsubscribe function."""
        self._listeners[event_type].append(listener)

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners[event_type].remove(listener)

        return _unsubscribe

    def emit(self, event: Event) -> None:
        """Emit an event to all subscribers. Non-blocking, fire-and-forget."""
        for listener in list(self._listeners[type(event)]):
            asyncio.ensure_future(_safe_call(listener, event))


async def _safe_call(listener: Listener, event: Any) -> None:
    try:
        await listener(event)
    except Exception as exc:
        logger.warning("EventBus listener error", err=str(exc))


# --- Per-session channel ---

type Notice = dict[str, Any]
type NoticeCallback = Callable[[Notice], None]


class SessionChannel:
    """Keyed fan-out of session notices: session id -> set of callbacks.

    Delivery is synchronous and in order, so a listener observes notices in
    exactly the order the stream produced them. A failing listener is logged
    and skipped; it never stops delivery to the others.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[NoticeCallback]] = {}

    def add(self, session_id: str, callback: NoticeCallback) -> Callable[[], None]:
        listeners = self._listeners.setdefault(session_id, [])
        listeners.append(callback)
        logger.debug("Session listener added", session_id=session_id, total=len(listeners))

        def _remove() -> None:
            current = self._listeners.get(session_id)
            if current is None:
                return
            with contextlib.suppress(ValueError):
                current.remove(callback)
            if not current:
                self._listeners.pop(session_id, None)

        return _remove

    def publish(self, session_id: str, notice: Notice) -> None:
        for callback in list(self._listeners.get(session_id, ())):
            try:
                callback(notice)
            except Exception as exc:
                logger.warning(
                    "Session listener failed",
                    session_id=session_id,
                    notice=notice.get("type"),
                    err=str(exc),
                )

    def listener_count(self, session_id: str) -> int:
        return len(self._listeners.get(session_id, ()))
