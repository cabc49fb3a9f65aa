"""Tests for the user-input tool handlers and schedule validation."""

from __future__ import annotations

import asyncio
import json

import pytest

from agentdock.agent.config_store import ConfigStore
from agentdock.agent.input_bridge import InputBridge
from agentdock.agent.input_tools import UserInputTools, text_result
from agentdock.schedule import schedule_error


@pytest.fixture
def bridge():
    return InputBridge()


@pytest.fixture
def config_store(tmp_path):
    return ConfigStore(tmp_path / ".env")


@pytest.fixture
def tools(bridge, config_store):
    return UserInputTools(bridge, config_store)


def _text(result: dict) -> str:
    return result["content"][0]["text"]


async def _wait_pending(bridge: InputBridge, tool_use_id: str) -> None:
    for _ in range(200):
        if bridge.has_pending(tool_use_id):
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"{tool_use_id} never became pending")


def test_text_result_error_flag():
    assert text_result("ok") == {"content": [{"type": "text", "text": "ok"}]}
    assert text_result("bad", is_error=True)["isError"] is True


class TestRequestSecret:
    async def test_blocks_until_resolved(self, tools, bridge, config_store):
        bridge.set_current_tool_use_id("tu-1")
        task = asyncio.create_task(tools.call("request_secret", {"secretName": "API_KEY"}))
        await _wait_pending(bridge, "tu-1")
        assert not task.done()

        # Host writes the value first, then resolves
        config_store.set("API_KEY", "s3cret")
        assert bridge.resolve("tu-1", None) is True

        result = await task
        assert "isError" not in result
        assert "API_KEY" in _text(result)
        assert config_store.get("API_KEY") == "s3cret"

    async def test_existing_secret_short_circuits(self, tools, bridge, config_store):
        config_store.set("API_KEY", "already")
        result = await tools.call("request_secret", {"secretName": "API_KEY"})
        assert "already available" in _text(result)
        assert bridge.list_pending() == []

    async def test_decline_is_an_error_result(self, tools, bridge):
        bridge.set_current_tool_use_id("tu-1")
        task = asyncio.create_task(tools.call("request_secret", {"secretName": "API_KEY"}))
        await _wait_pending(bridge, "tu-1")
        bridge.reject("tu-1", "User declined")

        result = await task
        assert result["isError"] is True
        assert "declined" in _text(result)

    async def test_missing_tool_use_id(self, tools):
        result = await tools.call("request_secret", {"secretName": "API_KEY"})
        assert result["isError"] is True
        assert "no tool use ID available" in _text(result)

    async def test_invalid_arguments(self, tools):
        result = await tools.call("request_secret", {"reason": "no name"})
        assert result["isError"] is True
        assert "Invalid arguments" in _text(result)


class TestOtherTools:
    async def test_unknown_tool(self, tools):
        result = await tools.call("format_disk", {})
        assert result["isError"] is True

    async def test_connected_account_lists_granted_accounts(self, tools, bridge, config_store):
        bridge.set_current_tool_use_id("tu-2")
        task = asyncio.create_task(
            tools.call("request_connected_account", {"toolkit": "Gmail", "reason": "read mail"})
        )
        await _wait_pending(bridge, "tu-2")
        pending = bridge.list_pending()[0]
        assert pending.kind == "connected_account"
        assert pending.payload["toolkit"] == "gmail"

        config_store.set("CONNECTED_ACCOUNT_GMAIL", json.dumps([{"id": "acc-1", "name": "Work"}]))
        bridge.resolve("tu-2", ["acc-1"])

        text = _text(await task)
        assert "Access to gmail has been granted" in text
        assert "Work (ID: acc-1)" in text

    async def test_question_returns_answer(self, tools, bridge):
        bridge.set_current_tool_use_id("tu-3")
        task = asyncio.create_task(
            tools.call("ask_user_question", {"questions": [{"question": "Which env?"}]})
        )
        await _wait_pending(bridge, "tu-3")
        bridge.resolve("tu-3", {"Which env?": "staging"})
        assert json.loads(_text(await task)) == {"Which env?": "staging"}

    async def test_file_request(self, tools, bridge):
        bridge.set_current_tool_use_id("tu-4")
        task = asyncio.create_task(tools.call("request_file", {"description": "the report"}))
        await _wait_pending(bridge, "tu-4")
        bridge.resolve("tu-4", "/workspace/uploads/report.pdf")
        assert _text(await task) == "User uploaded file to: /workspace/uploads/report.pdf"

    async def test_remote_mcp_requires_http_url(self, tools):
        result = await tools.call("request_remote_mcp", {"url": "ftp://example.com"})
        assert result["isError"] is True


class TestScheduleTask:
    async def test_valid_cron_is_recurring(self, tools, bridge):
        result = await tools.call(
            "schedule_task",
            {"scheduleType": "cron", "scheduleExpression": "0 9 * * 1-5", "prompt": "Summarize"},
        )
        assert "isError" not in result
        assert "recurring" in _text(result)
        # Never blocks on the bridge
        assert bridge.list_pending() == []

    async def test_invalid_cron_rejected(self, tools):
        result = await tools.call(
            "schedule_task",
            {"scheduleType": "cron", "scheduleExpression": "every day", "prompt": "x"},
        )
        assert result["isError"] is True
        assert "Invalid cron expression" in _text(result)

    async def test_blank_prompt_rejected(self, tools):
        result = await tools.call(
            "schedule_task",
            {"scheduleType": "at", "scheduleExpression": "at now + 1 hour", "prompt": "   "},
        )
        assert result["isError"] is True


class TestScheduleError:
    @pytest.mark.parametrize(
        ("schedule_type", "expression", "valid"),
        [
            ("at", "at tomorrow 9am", True),
            ("at", "tomorrow 9am", False),
            ("at", "at", False),
            ("cron", "*/5 * * * *", True),
            ("cron", "61 * * * *", False),
            ("weekly", "monday", False),
        ],
    )
    def test_validation(self, schedule_type, expression, valid):
        assert (schedule_error(schedule_type, expression) is None) is valid
