"""Tests for the agent subprocess runner, against the scripted fake agent."""

from __future__ import annotations

import asyncio
import os

import pytest
from conftest import fake_agent_command

from agentdock.agent.process_runner import PROTOCOL_FLAGS, ProcessRunner
from agentdock.errors import ProcessNotReadyError, ProcessStartError


def _runner(tmp_path, mode: str = "echo", ready_window: float = 0.2, **kwargs) -> ProcessRunner:
    env = {**os.environ, "FAKE_AGENT_MODE": mode, "FAKE_AGENT_SESSION_ID": "canon-1"}
    return ProcessRunner(
        "temp-1",
        str(tmp_path),
        command=fake_agent_command(),
        env=env,
        ready_window=ready_window,
        stop_grace=2.0,
        **kwargs,
    )


async def _wait_for(predicate, timeout: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


class TestBuildArgs:
    def test_new_session_has_protocol_flags_only(self, tmp_path):
        runner = _runner(tmp_path)
        args = runner.build_args()
        assert args[: len(fake_agent_command())] == fake_agent_command()
        assert all(flag in args for flag in PROTOCOL_FLAGS)
        assert "--resume" not in args

    def test_resume_and_options(self, tmp_path):
        runner = _runner(
            tmp_path,
            canonical_session_id="abc",
            model="some-model",
            max_turns=4,
            system_prompt="be brief",
        )
        args = runner.build_args()
        assert args[args.index("--resume") + 1] == "abc"
        assert args[args.index("--model") + 1] == "some-model"
        assert args[args.index("--max-turns") + 1] == "4"
        assert args[args.index("--append-system-prompt") + 1] == "be brief"


class TestLifecycle:
    async def test_start_send_receives_events_in_order(self, tmp_path):
        runner = _runner(tmp_path)
        messages: list[dict] = []
        session_ids: list[str] = []
        runner.on_message(messages.append)
        runner.on_session_id(session_ids.append)

        await runner.start()
        try:
            assert runner.is_ready
            assert runner.is_running
            await runner.send("hello")
            await _wait_for(lambda: any(m.get("type") == "result" for m in messages))
        finally:
            await runner.stop()

        assert [m["type"] for m in messages] == ["system", "assistant", "result"]
        assert session_ids == ["canon-1"]
        assert runner.canonical_session_id == "canon-1"
        assert messages[1]["message"]["content"][0]["text"] == "echo: hello"

    async def test_session_id_reported_once(self, tmp_path):
        runner = _runner(tmp_path)
        session_ids: list[str] = []
        results: list[dict] = []
        runner.on_session_id(session_ids.append)
        runner.on_message(lambda m: results.append(m) if m["type"] == "result" else None)

        await runner.start()
        try:
            await runner.send("one")
            await _wait_for(lambda: len(results) == 1)
            await runner.send("two")
            await _wait_for(lambda: len(results) == 2)
        finally:
            await runner.stop()
        assert session_ids == ["canon-1"]

    async def test_unparseable_lines_are_dropped(self, tmp_path):
        runner = _runner(tmp_path, mode="noisy")
        messages: list[dict] = []
        runner.on_message(messages.append)
        await runner.start()
        try:
            await runner.send("hi")
            await _wait_for(lambda: any(m.get("type") == "result" for m in messages))
        finally:
            await runner.stop()
        assert [m["type"] for m in messages] == ["system", "assistant", "result"]

    async def test_crash_during_ready_window_raises(self, tmp_path):
        # Generous window: the crash must land inside it even on a slow interpreter start
        runner = _runner(tmp_path, mode="crash", ready_window=10.0)
        with pytest.raises(ProcessStartError, match="code 3"):
            await runner.start()
        assert not runner.is_running

    async def test_spawn_failure_raises(self, tmp_path):
        runner = ProcessRunner(
            "temp-1", str(tmp_path), command=[str(tmp_path / "no-such-agent")], ready_window=0.1
        )
        with pytest.raises(ProcessStartError, match="Failed to spawn"):
            await runner.start()

    async def test_send_before_start_raises(self, tmp_path):
        runner = _runner(tmp_path)
        with pytest.raises(ProcessNotReadyError):
            await runner.send("too early")

    async def test_stop_terminates_process(self, tmp_path):
        runner = _runner(tmp_path)
        await runner.start()
        await runner.stop()
        assert runner.returncode is not None
        assert not runner.is_running
        with pytest.raises(ProcessNotReadyError):
            await runner.send("after stop")

    async def test_unsubscribe_stops_delivery(self, tmp_path):
        runner = _runner(tmp_path)
        seen: list[dict] = []
        results: list[dict] = []
        unsubscribe = runner.on_message(seen.append)
        runner.on_message(lambda m: results.append(m) if m["type"] == "result" else None)
        unsubscribe()
        await runner.start()
        try:
            await runner.send("hi")
            await _wait_for(lambda: bool(results))
        finally:
            await runner.stop()
        assert seen == []

    async def test_interrupt_requires_running_process(self, tmp_path):
        runner = _runner(tmp_path)
        assert await runner.interrupt() is False

    async def test_interrupt_writes_control_request(self, tmp_path):
        runner = _runner(tmp_path)
        messages: list[dict] = []
        runner.on_message(messages.append)
        await runner.start()
        try:
            assert await runner.interrupt() is True
            await _wait_for(lambda: any(m.get("type") == "result" for m in messages))
        finally:
            await runner.stop()
        assert messages[-1]["subtype"] == "error_during_execution"
