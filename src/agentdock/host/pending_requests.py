"""Detect tool calls that block on a human.

Two entry points:

- ``build_request_notice`` turns one finished tool_use block (name, id and
  its JSON input) into the typed notice the UI shows, or None when the call
  is not a blocking tool or its input is malformed.
- ``find_pending_requests`` rebuilds the notices for requests still waiting
  after a reload, from the session's message log.
"""

from __future__ import annotations

import json
from typing import Any

from pydantic import ValidationError

from agentdock.logger import logger
from agentdock.schedule import schedule_error
from agentdock.tool_inputs import (
    BLOCKING_TOOLS,
    AskUserQuestionArgs,
    RequestConnectedAccountArgs,
    RequestFileArgs,
    RequestRemoteMcpArgs,
    RequestSecretArgs,
    ScheduleTaskArgs,
    ToolArgs,
)

type Notice = dict[str, Any]


def is_blocking_tool(name: str | None) -> bool:
    return name in BLOCKING_TOOLS


def _notice_fields(args: ToolArgs) -> dict[str, Any]:
    match args:
        case RequestSecretArgs():
            return {"secretName": args.secret_name, "reason": args.reason}
        case RequestConnectedAccountArgs():
            return {"toolkit": args.toolkit.lower(), "reason": args.reason}
        case ScheduleTaskArgs():
            return {
                "scheduleType": args.schedule_type,
                "scheduleExpression": args.schedule_expression,
                "prompt": args.prompt,
                "name": args.name,
            }
        case AskUserQuestionArgs():
            return {"questions": args.questions}
        case RequestFileArgs():
            return {"description": args.description, "fileTypes": args.file_types}
        case RequestRemoteMcpArgs():
            return {"url": args.url, "name": args.name, "reason": args.reason}
    return {}


def build_request_notice(
    tool_name: str,
    tool_use_id: str,
    raw_input: str | dict[str, Any] | None,
    agent_slug: str | None = None,
) -> Notice | None:
    """Typed request notice for a blocking tool call, or None.

    ``raw_input`` is either the JSON text accumulated from input deltas or an
    already decoded dict (from a persisted tool_use block).
    """
    entry = BLOCKING_TOOLS.get(tool_name)
    if entry is None:
        return None
    notice_type, model = entry

    data: Any = raw_input
    if isinstance(raw_input, str):
        try:
            data = json.loads(raw_input) if raw_input.strip() else {}
        except json.JSONDecodeError:
            logger.error("Failed to parse tool input", tool=tool_name, tool_use_id=tool_use_id)
            return None
    if not isinstance(data, dict):
        logger.error("Tool input is not an object", tool=tool_name, tool_use_id=tool_use_id)
        return None

    try:
        args = model.model_validate(data)
    except ValidationError as exc:
        logger.error(
            "Blocking tool input missing required fields",
            tool=tool_name,
            tool_use_id=tool_use_id,
            errors=exc.error_count(),
        )
        return None

    if isinstance(args, ScheduleTaskArgs):
        error = schedule_error(args.schedule_type, args.schedule_expression)
        if error:
            logger.warning("Skipping invalid schedule request", tool_use_id=tool_use_id, err=error)
            return None

    return {
        "type": notice_type,
        "toolUseId": tool_use_id,
        **_notice_fields(args),
        "agentSlug": agent_slug,
    }


def _content_blocks(record: dict[str, Any]) -> list[dict[str, Any]]:
    message = record.get("message")
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    if isinstance(content, list):
        return [b for b in content if isinstance(b, dict)]
    return []


def _is_genuine_user_message(blocks: list[dict[str, Any]]) -> bool:
    """A user turn typed by a person, as opposed to a tool_result carrier."""
    has_text = any(b.get("type") == "text" and str(b.get("text", "")).strip() for b in blocks)
    has_result = any(b.get("type") == "tool_result" for b in blocks)
    return has_text and not has_result


def find_pending_requests(
    messages: list[dict[str, Any]], agent_slug: str | None = None
) -> list[Notice]:
    """Notices for blocking tool calls still awaiting an answer.

    A blocking tool_use with no matching tool_result counts as pending, unless
    a genuine user message follows it: the user moved on, so the request was
    abandoned (for example after an interrupt).
    """
    # tool_use_id -> (position, name, input)
    calls: dict[str, tuple[int, str, Any]] = {}
    answered: set[str] = set()
    last_user_at = -1

    for position, record in enumerate(messages):
        kind = record.get("type")
        blocks = _content_blocks(record)
        if kind == "assistant":
            for block in blocks:
                if block.get("type") != "tool_use" or not is_blocking_tool(block.get("name")):
                    continue
                tool_use_id = block.get("id")
                if tool_use_id:
                    calls[tool_use_id] = (position, block["name"], block.get("input"))
        elif kind == "user":
            for block in blocks:
                if block.get("type") == "tool_result" and block.get("tool_use_id"):
                    answered.add(block["tool_use_id"])
            if _is_genuine_user_message(blocks):
                last_user_at = position

    notices: list[Notice] = []
    for tool_use_id, (position, name, raw_input) in calls.items():
        if tool_use_id in answered or last_user_at > position:
            continue
        notice = build_request_notice(name, tool_use_id, raw_input, agent_slug)
        if notice is not None:
            notices.append(notice)
    return notices
