"""Argument models for the user-input tools, shared by both sides.

The agent-side handlers validate their arguments with these models; the host
validates the same JSON when it spots the tool call in the stream, so both
sides agree on what a well-formed request is.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

USER_INPUT_SERVER = "user-input"


def mcp_tool_name(tool: str) -> str:
    return f"mcp__{USER_INPUT_SERVER}__{tool}"


class ToolArgs(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class RequestSecretArgs(ToolArgs):
    secret_name: str = Field(alias="secretName", min_length=1)
    reason: str | None = None


class RequestConnectedAccountArgs(ToolArgs):
    toolkit: str = Field(min_length=1)
    reason: str | None = None


class RequestFileArgs(ToolArgs):
    description: str
    file_types: str | None = Field(default=None, alias="fileTypes")


class RequestRemoteMcpArgs(ToolArgs):
    url: str = Field(pattern=r"^https?://")
    name: str | None = None
    reason: str | None = None


class AskUserQuestionArgs(ToolArgs):
    questions: list[dict[str, Any]] = Field(min_length=1)


class ScheduleTaskArgs(ToolArgs):
    schedule_type: Literal["at", "cron"] = Field(alias="scheduleType")
    schedule_expression: str = Field(alias="scheduleExpression", min_length=1)
    prompt: str = Field(min_length=1)
    name: str | None = None


# Full tool name as it appears in the stream -> (notice type, argument model)
BLOCKING_TOOLS: dict[str, tuple[str, type[ToolArgs]]] = {
    mcp_tool_name("request_secret"): ("secret_request", RequestSecretArgs),
    mcp_tool_name("request_connected_account"): (
        "connected_account_request",
        RequestConnectedAccountArgs,
    ),
    mcp_tool_name("schedule_task"): ("scheduled_task_request", ScheduleTaskArgs),
    "AskUserQuestion": ("user_question_request", AskUserQuestionArgs),
    mcp_tool_name("request_file"): ("file_request", RequestFileArgs),
    mcp_tool_name("request_remote_mcp"): ("remote_mcp_request", RequestRemoteMcpArgs),
}
