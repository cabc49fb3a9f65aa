"""Agent stream protocol: a closed set of event kinds.

The agent process writes one JSON object per line with a ``type``
discriminator. ``parse_stream_event`` turns those dicts into frozen
dataclasses so consumers match on classes instead of poking at strings;
anything unrecognised becomes an :class:`UnknownEvent` rather than an
untyped dict.

Outbound (stdin) lines are built by :func:`user_turn`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

SYSTEM_INIT = "init"
SYSTEM_COMPACT_BOUNDARY = "compact_boundary"
SYSTEM_STATUS = "status"


@dataclass(frozen=True)
class SystemEvent:
    subtype: str | None
    session_id: str | None = None
    status: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class UserEvent:
    content: list[dict[str, Any]]
    parent_tool_use_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    def tool_results(self) -> list[dict[str, Any]]:
        return [
            block
            for block in self.content
            if block.get("type") == "tool_result" and block.get("tool_use_id")
        ]


@dataclass(frozen=True)
class AssistantEvent:
    content: list[dict[str, Any]]
    usage: dict[str, Any] | None = None
    model: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def text(self) -> str:
        return "".join(b.get("text", "") for b in self.content if b.get("type") == "text")


@dataclass(frozen=True)
class ResultEvent:
    subtype: str | None
    is_error: bool = False
    fatal: bool = False
    error: str | None = None
    usage: dict[str, Any] | None = None
    model_usage: dict[str, Any] | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def failed(self) -> bool:
        return self.is_error or (self.subtype or "").startswith("error")


@dataclass(frozen=True)
class StreamDeltaEvent:
    """A partial-message event (``message_start``, ``content_block_delta`` …)."""

    event_type: str
    content_block: dict[str, Any] | None = None
    delta: dict[str, Any] | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class ConnectionClosedEvent:
    """Synthetic: the transport carrying the stream went away."""

    reason: str | None = None


@dataclass(frozen=True)
class UnknownEvent:
    type: str | None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


type StreamEvent = (
    SystemEvent
    | UserEvent
    | AssistantEvent
    | ResultEvent
    | StreamDeltaEvent
    | ConnectionClosedEvent
    | UnknownEvent
)


def _blocks(message: Any) -> list[dict[str, Any]]:
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    if isinstance(content, list):
        return [b for b in content if isinstance(b, dict)]
    return []


def _delta_event(event: dict[str, Any]) -> StreamDeltaEvent:
    block = event.get("content_block")
    delta = event.get("delta")
    return StreamDeltaEvent(
        event_type=str(event.get("type", "")),
        content_block=block if isinstance(block, dict) else None,
        delta=delta if isinstance(delta, dict) else None,
        raw=event,
    )


def parse_stream_event(raw: dict[str, Any]) -> StreamEvent:
    """Classify one decoded protocol line."""
    kind = raw.get("type")
    message = raw.get("message")

    if kind == "system":
        return SystemEvent(
            subtype=raw.get("subtype"),
            session_id=raw.get("session_id"),
            status=raw.get("status"),
            raw=raw,
        )
    if kind == "user":
        return UserEvent(
            content=_blocks(message),
            parent_tool_use_id=raw.get("parent_tool_use_id"),
            raw=raw,
        )
    if kind == "assistant":
        usage = message.get("usage") if isinstance(message, dict) else None
        model = message.get("model") if isinstance(message, dict) else None
        return AssistantEvent(content=_blocks(message), usage=usage, model=model, raw=raw)
    if kind == "result":
        error = raw.get("error") or raw.get("message")
        if not isinstance(error, str):
            errors = raw.get("errors")
            error = "; ".join(str(e) for e in errors) if isinstance(errors, list) else None
        return ResultEvent(
            subtype=raw.get("subtype"),
            is_error=bool(raw.get("is_error", False)),
            fatal=bool(raw.get("fatal", False)),
            error=error,
            usage=raw.get("usage"),
            model_usage=raw.get("modelUsage"),
            raw=raw,
        )
    if kind == "stream_event" and isinstance(raw.get("event"), dict):
        return _delta_event(raw["event"])
    if kind == "connection_closed":
        return ConnectionClosedEvent(reason=raw.get("reason"))
    # Partial events occasionally arrive without the stream_event wrapper
    if isinstance(raw.get("event"), dict):
        return _delta_event(raw["event"])
    return UnknownEvent(type=kind if isinstance(kind, str) else None, raw=raw)


def user_turn(text: str, session_id: str) -> dict[str, Any]:
    """Build the stdin line for one user turn."""
    return {
        "type": "user",
        "session_id": session_id,
        "message": {"role": "user", "content": [{"type": "text", "text": text}]},
        "parent_tool_use_id": None,
    }
