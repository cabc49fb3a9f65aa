"""User-input tool handlers: the agent side of blocking tool calls.

Each handler registers a pending request with the InputBridge under the
tool_use_id captured by the pre-tool hook, then waits for the host to
resolve or reject it. The host writes any configuration the tool needs
(a secret, linked-account metadata) through ``POST /config`` *before* it
resolves, so by the time the handler wakes up the value is on disk.

Handlers never raise to the agent: timeouts and declines come back as an
``isError`` tool result telling the agent to carry on without the input.
"""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import ValidationError

from agentdock.agent.config_store import ConfigStore
from agentdock.agent.input_bridge import InputBridge
from agentdock.errors import AgentDockError
from agentdock.logger import logger
from agentdock.schedule import schedule_error
from agentdock.tool_inputs import (
    AskUserQuestionArgs,
    RequestConnectedAccountArgs,
    RequestFileArgs,
    RequestRemoteMcpArgs,
    RequestSecretArgs,
    ScheduleTaskArgs,
    ToolArgs,
)
from agentdock.types import InputKind

type ToolResult = dict[str, Any]


def text_result(text: str, *, is_error: bool = False) -> ToolResult:
    result: ToolResult = {"content": [{"type": "text", "text": text}]}
    if is_error:
        result["isError"] = True
    return result


class UserInputTools:
    """Tool handlers exposed to the agent by the ``user-input`` tool server."""

    def __init__(self, bridge: InputBridge, config_store: ConfigStore) -> None:
        self.bridge = bridge
        self.config_store = config_store
        self._handlers: dict[str, tuple[type[ToolArgs], Callable[[Any], Awaitable[ToolResult]]]] = {
            "request_secret": (RequestSecretArgs, self.request_secret),
            "request_connected_account": (
                RequestConnectedAccountArgs,
                self.request_connected_account,
            ),
            "request_file": (RequestFileArgs, self.request_file),
            "request_remote_mcp": (RequestRemoteMcpArgs, self.request_remote_mcp),
            "ask_user_question": (AskUserQuestionArgs, self.ask_user_question),
            "schedule_task": (ScheduleTaskArgs, self.schedule_task),
        }

    @property
    def tool_names(self) -> list[str]:
        return list(self._handlers)

    async def call(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        entry = self._handlers.get(name)
        if entry is None:
            return text_result(f"Unknown tool: {name}", is_error=True)
        model, handler = entry
        try:
            args = model.model_validate(arguments)
        except ValidationError as exc:
            return text_result(f"Invalid arguments for {name}: {exc}", is_error=True)
        return await handler(args)

    async def _await_input(
        self, tool: str, kind: InputKind, payload: dict[str, Any]
    ) -> tuple[bool, Any]:
        """Block until the host answers. Returns (granted, value_or_reason)."""
        tool_use_id = self.bridge.consume_current_tool_use_id()
        if tool_use_id is None:
            logger.error("No tool_use_id captured before tool call", tool=tool)
            return False, "no tool use ID available"
        try:
            value = await self.bridge.create_pending(tool_use_id, kind, payload)
        except AgentDockError as exc:
            logger.info("Input request not granted", tool=tool, reason=str(exc))
            return False, str(exc)
        return True, value

    async def request_secret(self, args: RequestSecretArgs) -> ToolResult:
        if self.config_store.has(args.secret_name):
            return text_result(f"Secret {args.secret_name} is already available.")
        granted, value = await self._await_input(
            "request_secret",
            "secret",
            {"secretName": args.secret_name, "reason": args.reason},
        )
        if not granted:
            return text_result(
                f"Secret request declined: {value}. You may need to proceed without this "
                "secret or ask the user for an alternative approach.",
                is_error=True,
            )
        return text_result(
            f"Secret {args.secret_name} has been saved to {self.config_store.path} and is "
            "available as an environment variable."
        )

    async def request_connected_account(self, args: RequestConnectedAccountArgs) -> ToolResult:
        toolkit = args.toolkit.lower()
        granted, value = await self._await_input(
            "request_connected_account",
            "connected_account",
            {"toolkit": toolkit, "reason": args.reason},
        )
        if not granted:
            return text_result(
                f"Access request declined: {value}. You may need to proceed without "
                f"{toolkit} access or ask the user for an alternative approach.",
                is_error=True,
            )
        accounts = _json_env(self.config_store.get(f"CONNECTED_ACCOUNT_{toolkit.upper()}"))
        lines = [f"- {a.get('name')} (ID: {a.get('id')})" for a in accounts or [] if isinstance(a, dict)]
        info = f"\n\nAvailable {toolkit} accounts:\n" + "\n".join(lines) if lines else ""
        return text_result(
            f"Access to {toolkit} has been granted. Make API calls through the proxy:\n\n"
            "URL: $PROXY_BASE_URL/<account_id>/<target_host>/<api_path>\n"
            f"Authorization: Bearer $PROXY_TOKEN{info}"
        )

    async def request_file(self, args: RequestFileArgs) -> ToolResult:
        granted, value = await self._await_input(
            "request_file",
            "file",
            {"description": args.description, "fileTypes": args.file_types},
        )
        if not granted:
            return text_result(
                f"File request declined: {value}. You may need to proceed without this "
                "file or ask the user for an alternative approach.",
                is_error=True,
            )
        return text_result(f"User uploaded file to: {value}")

    async def request_remote_mcp(self, args: RequestRemoteMcpArgs) -> ToolResult:
        granted, value = await self._await_input(
            "request_remote_mcp",
            "remote_mcp",
            {"url": args.url, "name": args.name, "reason": args.reason},
        )
        if not granted:
            return text_result(
                f"Remote MCP access request declined: {value}. You may need to proceed "
                "without this MCP server or ask the user for an alternative approach.",
                is_error=True,
            )
        servers = _json_env(self.config_store.get("REMOTE_MCPS")) or []
        match = next((m for m in servers if isinstance(m, dict) and m.get("id") == value), None)
        info = f"\n\nMCP Server registered as: {match.get('name')}" if match else ""
        return text_result(f"Access to the remote MCP server has been granted.{info}")

    async def ask_user_question(self, args: AskUserQuestionArgs) -> ToolResult:
        granted, value = await self._await_input(
            "ask_user_question", "question", {"questions": args.questions}
        )
        if not granted:
            return text_result(f"The user did not answer: {value}", is_error=True)
        return text_result(value if isinstance(value, str) else json.dumps(value))

    async def schedule_task(self, args: ScheduleTaskArgs) -> ToolResult:
        # Not blocking: the host sees the tool call in the stream and stores the task
        error = schedule_error(args.schedule_type, args.schedule_expression)
        if error:
            return text_result(error, is_error=True)
        if not args.prompt.strip():
            return text_result(
                "Prompt cannot be empty. Please provide a task description for the agent "
                "to execute.",
                is_error=True,
            )
        kind = "recurring" if args.schedule_type == "cron" else "one-time"
        name = args.name or "Scheduled Task"
        preview = args.prompt[:100] + ("..." if len(args.prompt) > 100 else "")
        return text_result(
            f'Scheduled {kind} task "{name}".\n\n'
            f"Schedule: {args.schedule_expression}\nTask: {preview}"
        )


def _json_env(raw: str | None) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Config value is not valid JSON")
        return None
