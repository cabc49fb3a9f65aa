"""Turns a container's raw session stream into application notices.

One ``StreamingState`` per subscribed session tracks partial text, the tool
call being streamed, and whether the agent is busy. Frames arrive from
``ContainerClient.subscribe_to_stream`` in order and are handled
synchronously, so listeners see notices in stream order.

Notices published on the session channel (``type`` field):

- ``stream_start`` / ``stream_delta`` / ``messages_updated``
- ``tool_use_start`` / ``tool_use_streaming`` / ``tool_use_ready`` / ``tool_result``
- ``secret_request`` and the other typed requests from ``pending_requests``
- ``usage_updated`` / ``compact_start`` / ``compact_complete``
- ``session_active`` / ``session_idle`` / ``session_error``

Partial state is never persisted; the container's JSONL log stays the
source of truth for complete messages.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import Any, Protocol

from agentdock.event_bus import Notice, NoticeCallback, SessionChannel
from agentdock.host.context_usage import usage_from_event, usage_to_dict
from agentdock.host.pending_requests import build_request_notice, is_blocking_tool
from agentdock.logger import logger
from agentdock.protocol import (
    SYSTEM_COMPACT_BOUNDARY,
    SYSTEM_INIT,
    SYSTEM_STATUS,
    AssistantEvent,
    ConnectionClosedEvent,
    ResultEvent,
    StreamDeltaEvent,
    SystemEvent,
    UserEvent,
    parse_stream_event,
)
from agentdock.types import SessionUsage
from agentdock.utils import create_background_task

type FatalHandler = Callable[[str], Coroutine[Any, Any, Any]]


class StreamSource(Protocol):
    """The slice of ContainerClient the reconciler needs."""

    def subscribe_to_stream(
        self, session_id: str, callback: Callable[[dict[str, Any]], None]
    ) -> Callable[[], None]: ...

    async def is_session_running(self, session_id: str) -> bool: ...


@dataclass
class ToolUseRef:
    id: str
    name: str


@dataclass
class StreamingState:
    agent_slug: str | None = None
    current_text: str = ""
    is_streaming: bool = False
    current_tool_use: ToolUseRef | None = None
    current_tool_input: str = ""
    is_active: bool = False  # from the user's message until the result
    is_interrupted: bool = False
    is_compacting: bool = False
    awaiting_compact_summary: bool = False
    usage: SessionUsage | None = None

    def clear_partial(self) -> None:
        self.current_text = ""
        self.is_streaming = False
        self.current_tool_use = None
        self.current_tool_input = ""


@dataclass
class _Subscription:
    source: StreamSource
    container_session_id: str
    unsubscribe: Callable[[], None]


class StreamReconciler:
    def __init__(
        self,
        channel: SessionChannel | None = None,
        *,
        default_context_window: int = 200_000,
        on_fatal: FatalHandler | None = None,
        reconnect_delay: float = 1.0,
    ) -> None:
        self.channel = channel or SessionChannel()
        self.default_context_window = default_context_window
        self.on_fatal = on_fatal
        self.reconnect_delay = reconnect_delay
        self._states: dict[str, StreamingState] = {}
        self._subscriptions: dict[str, _Subscription] = {}

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe_to_session(
        self,
        session_id: str,
        client: StreamSource,
        container_session_id: str,
        agent_slug: str | None = None,
    ) -> None:
        self.unsubscribe_from_session(session_id)
        self._states[session_id] = StreamingState(agent_slug=agent_slug)
        self._attach(session_id, client, container_session_id)

    def _attach(self, session_id: str, client: StreamSource, container_session_id: str) -> None:
        unsubscribe = client.subscribe_to_stream(
            container_session_id, lambda frame: self._handle_frame(session_id, frame)
        )
        self._subscriptions[session_id] = _Subscription(client, container_session_id, unsubscribe)

    def unsubscribe_from_session(self, session_id: str) -> None:
        sub = self._subscriptions.pop(session_id, None)
        if sub is not None:
            sub.unsubscribe()
        self._states.pop(session_id, None)

    def unsubscribe_all(self) -> None:
        for session_id in list(self._subscriptions):
            self.unsubscribe_from_session(session_id)

    def add_listener(self, session_id: str, callback: NoticeCallback) -> Callable[[], None]:
        return self.channel.add(session_id, callback)

    def is_session_active(self, session_id: str) -> bool:
        state = self._states.get(session_id)
        return state.is_active if state else False

    def is_subscribed(self, session_id: str) -> bool:
        return session_id in self._subscriptions

    def get_state(self, session_id: str) -> StreamingState | None:
        return self._states.get(session_id)

    def get_usage(self, session_id: str) -> SessionUsage | None:
        state = self._states.get(session_id)
        return state.usage if state else None

    # ------------------------------------------------------------------
    # User-driven transitions
    # ------------------------------------------------------------------

    def mark_session_interrupted(self, session_id: str) -> None:
        state = self._states.get(session_id)
        # Set before anything else so in-flight events are dropped
        if state is not None:
            state.is_interrupted = True
            state.is_active = False
            state.clear_partial()
        self._publish(session_id, {"type": "session_idle", "isActive": False})

    def mark_session_active(self, session_id: str, agent_slug: str | None = None) -> None:
        state = self._states.setdefault(session_id, StreamingState(agent_slug=agent_slug))
        state.is_active = True
        state.is_interrupted = False
        if agent_slug:
            state.agent_slug = agent_slug
        self._publish(session_id, {"type": "session_active", "isActive": True})

    def broadcast_session_update(self, session_id: str) -> None:
        self._publish(session_id, {"type": "session_updated"})

    # ------------------------------------------------------------------
    # Frame handling
    # ------------------------------------------------------------------

    def _publish(self, session_id: str, notice: Notice) -> None:
        self.channel.publish(session_id, notice)

    def _handle_frame(self, session_id: str, frame: dict[str, Any]) -> None:
        state = self._states.get(session_id)
        if state is None:
            return
        content = frame.get("content")
        if not isinstance(content, dict):
            return
        # A result still means the agent actually stopped, and a closed socket
        # is about the transport rather than the cancelled turn
        if state.is_interrupted and content.get("type") not in ("result", "connection_closed"):
            return

        match parse_stream_event(content):
            case AssistantEvent() as event:
                self._on_assistant(session_id, state, event)
            case UserEvent() as event:
                self._on_user(session_id, state, event)
            case SystemEvent() as event:
                self._on_system(session_id, state, event)
            case ResultEvent() as event:
                self._on_result(session_id, state, event)
            case StreamDeltaEvent() as event:
                self._on_delta(session_id, state, event)
            case ConnectionClosedEvent() as event:
                logger.info("Session stream closed", session_id=session_id, reason=event.reason)
                create_background_task(
                    self._recover_stream(session_id), name=f"recover-{session_id}"
                )
            case _:
                logger.debug("Ignoring stream event", session_id=session_id, type=content.get("type"))

    def _update_usage(
        self,
        session_id: str,
        state: StreamingState,
        usage: dict[str, Any] | None,
        model_usage: dict[str, Any] | None = None,
    ) -> None:
        updated = usage_from_event(
            usage,
            model_usage,
            default_window=self.default_context_window,
            previous=state.usage,
        )
        if updated is None:
            return
        state.usage = updated
        self._publish(session_id, {"type": "usage_updated", "usage": usage_to_dict(updated)})

    def _on_assistant(self, session_id: str, state: StreamingState, event: AssistantEvent) -> None:
        state.current_text = ""
        self._publish(session_id, {"type": "messages_updated"})
        self._update_usage(session_id, state, event.usage)

    def _on_user(self, session_id: str, state: StreamingState, event: UserEvent) -> None:
        if state.awaiting_compact_summary:
            # The first user message after a compact boundary carries the summary
            state.awaiting_compact_summary = False
            state.is_compacting = False
            summary = "".join(
                str(b.get("text", "")) for b in event.content if b.get("type") == "text"
            )
            self._publish(session_id, {"type": "compact_complete", "summary": summary})
            return
        for block in event.tool_results():
            self._publish(
                session_id,
                {
                    "type": "tool_result",
                    "toolUseId": block["tool_use_id"],
                    "result": block.get("content"),
                    "isError": bool(block.get("is_error", False)),
                },
            )

    def _on_system(self, session_id: str, state: StreamingState, event: SystemEvent) -> None:
        if event.subtype == SYSTEM_INIT:
            self._publish(session_id, {"type": "stream_start"})
        elif event.subtype == SYSTEM_COMPACT_BOUNDARY:
            state.awaiting_compact_summary = True
            self._publish(session_id, {"type": "compact_start"})
        elif event.subtype == SYSTEM_STATUS:
            state.is_compacting = event.status == "compacting"

    def _on_result(self, session_id: str, state: StreamingState, event: ResultEvent) -> None:
        state.is_active = False
        state.clear_partial()
        self._update_usage(session_id, state, event.usage, event.model_usage)

        if event.failed:
            error = event.error or "An error occurred during execution"
            logger.error("Session error", session_id=session_id, subtype=event.subtype, err=error)
            self._publish(session_id, {"type": "session_error", "error": error, "isActive": False})
        else:
            self._publish(session_id, {"type": "session_idle", "isActive": False})

        if event.fatal and state.agent_slug and self.on_fatal is not None:
            logger.warning(
                "Fatal agent error, stopping container",
                session_id=session_id,
                agent_slug=state.agent_slug,
            )
            create_background_task(self.on_fatal(state.agent_slug), name=f"fatal-stop-{state.agent_slug}")

    def _on_delta(self, session_id: str, state: StreamingState, event: StreamDeltaEvent) -> None:
        block = event.content_block or {}
        delta = event.delta or {}
        match event.event_type:
            case "message_start":
                state.current_text = ""
                state.is_streaming = True
                state.current_tool_use = None
                self._publish(session_id, {"type": "stream_start"})
            case "content_block_start" if block.get("type") == "tool_use":
                state.current_tool_use = ToolUseRef(id=str(block.get("id")), name=str(block.get("name")))
                state.current_tool_input = ""
                self._publish(
                    session_id,
                    {
                        "type": "tool_use_start",
                        "toolId": state.current_tool_use.id,
                        "toolName": state.current_tool_use.name,
                        "partialInput": "",
                    },
                )
            case "content_block_delta" if delta.get("type") == "text_delta" and delta.get("text"):
                state.current_text += delta["text"]
                self._publish(session_id, {"type": "stream_delta", "text": delta["text"]})
            case "content_block_delta" if delta.get("type") == "input_json_delta":
                state.current_tool_input += delta.get("partial_json") or ""
                tool = state.current_tool_use
                self._publish(
                    session_id,
                    {
                        "type": "tool_use_streaming",
                        "toolId": tool.id if tool else None,
                        "toolName": tool.name if tool else None,
                        "partialInput": state.current_tool_input,
                    },
                )
            case "content_block_stop" if state.current_tool_use is not None:
                tool = state.current_tool_use
                if is_blocking_tool(tool.name):
                    notice = build_request_notice(
                        tool.name, tool.id, state.current_tool_input, state.agent_slug
                    )
                    if notice is not None:
                        logger.info(
                            "Blocking tool request",
                            session_id=session_id,
                            type=notice["type"],
                            tool_use_id=tool.id,
                        )
                        self._publish(session_id, notice)
                self._publish(
                    session_id, {"type": "tool_use_ready", "toolId": tool.id, "toolName": tool.name}
                )
                state.current_tool_use = None
                state.current_tool_input = ""
            case "message_stop":
                state.is_streaming = False
                state.current_tool_use = None
                state.current_tool_input = ""

    # ------------------------------------------------------------------
    # Transport recovery
    # ------------------------------------------------------------------

    async def _recover_stream(self, session_id: str) -> None:
        """Ask the container whether the session survived the dropped socket."""
        sub = self._subscriptions.get(session_id)
        if sub is None:
            return
        if self.reconnect_delay > 0:
            await asyncio.sleep(self.reconnect_delay)
        try:
            running = await sub.source.is_session_running(sub.container_session_id)
        except Exception as exc:
            logger.warning("Could not check session after disconnect", session_id=session_id, err=str(exc))
            running = False

        # Unsubscribed or replaced while we were checking
        if self._subscriptions.get(session_id) is not sub:
            return
        state = self._states.get(session_id)
        if state is None:
            return

        if running:
            logger.info("Session still running, resubscribing", session_id=session_id)
            self._attach(session_id, sub.source, sub.container_session_id)
            return
        # Drop the dead stream so the next turn subscribes afresh
        self._subscriptions.pop(session_id, None)
        sub.unsubscribe()
        state.is_active = False
        state.clear_partial()
        self._publish(session_id, {"type": "session_idle", "isActive": False})
