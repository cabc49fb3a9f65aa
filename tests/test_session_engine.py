"""Tests for the session engine: create, re-key, resume, delete."""

from __future__ import annotations

import asyncio

import pytest
from conftest import agent_settings

from agentdock.agent.process_runner import ProcessRunner
from agentdock.agent.session_engine import AgentSessionEngine
from agentdock.agent.session_store import SessionStore
from agentdock.errors import SessionNotFoundError, SessionStartTimeoutError
from agentdock.types import SessionOptions, SessionState


async def _wait_for(predicate, timeout: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


def _options(session_id: str = "canon-1", mode: str = "echo") -> SessionOptions:
    return SessionOptions(env={"FAKE_AGENT_SESSION_ID": session_id, "FAKE_AGENT_MODE": mode})


def _result_count(engine: AgentSessionEngine, session_id: str) -> int:
    return sum(1 for m in engine.get_messages(session_id) if m.get("type") == "result")


@pytest.fixture
async def engine(tmp_path):
    eng = AgentSessionEngine(agent_settings(tmp_path))
    yield eng
    await eng.stop_all()


class TestCreateSession:
    async def test_create_rekeys_to_canonical_id(self, engine):
        info = await engine.create_session("hello", _options("canon-1"))

        assert info.id == "canon-1"
        assert info.canonical_id == "canon-1"
        assert info.state is SessionState.ACTIVE
        assert engine.is_running("canon-1")
        meta = engine.store.get("canon-1")
        assert meta is not None
        assert meta.canonical_id == "canon-1"

    async def test_log_keeps_user_turn_before_agent_events(self, engine):
        await engine.create_session("hello", _options("canon-1"))
        await _wait_for(lambda: _result_count(engine, "canon-1") == 1)

        types = [m["type"] for m in engine.get_messages("canon-1")]
        assert types == ["user", "system", "assistant", "result"]

    async def test_send_message_round_trip(self, engine):
        await engine.create_session("first", _options("canon-1"))
        await _wait_for(lambda: _result_count(engine, "canon-1") == 1)

        notices: list[dict] = []
        engine.subscribe("canon-1", notices.append)
        await engine.send_message("canon-1", "second")
        await _wait_for(lambda: _result_count(engine, "canon-1") == 2)

        assert [n["type"] for n in notices] == ["user", "assistant", "result"]
        assert notices[1]["message"]["content"][0]["text"] == "echo: second"

    async def test_silent_agent_times_out(self, tmp_path):
        engine = AgentSessionEngine(agent_settings(tmp_path, session_id_timeout=0.5))
        with pytest.raises(SessionStartTimeoutError):
            await engine.create_session("hello", _options(mode="silent"))
        assert engine.list_sessions() == []
        await engine.stop_all()

    async def test_crashing_agent_leaves_nothing_behind(self, tmp_path):
        engine = AgentSessionEngine(agent_settings(tmp_path, ready_window=10.0))
        with pytest.raises(Exception, match="code 3"):
            await engine.create_session("hello", _options(mode="crash"))
        assert engine.list_sessions() == []


class TestResume:
    async def test_unknown_session_raises(self, engine):
        with pytest.raises(SessionNotFoundError):
            await engine.send_message("nope", "hi")
        with pytest.raises(SessionNotFoundError):
            engine.get_messages("nope")

    async def test_resume_after_restart_spawns_exactly_one_runner(self, tmp_path):
        settings = agent_settings(tmp_path)
        first = AgentSessionEngine(settings)
        await first.create_session("hello", _options("canon-1"))
        await _wait_for(lambda: _result_count(first, "canon-1") == 1)
        await first.stop_all()

        spawned: list[ProcessRunner] = []

        def counting_factory(*args, **kwargs) -> ProcessRunner:
            runner = ProcessRunner(*args, **kwargs)
            spawned.append(runner)
            return runner

        # Fresh engine over the same data dir, as after a container restart
        second = AgentSessionEngine(
            settings, store=SessionStore(settings.data_dir), runner_factory=counting_factory
        )
        try:
            await asyncio.gather(
                second.send_message("canon-1", "again"),
                second.send_message("canon-1", "and again"),
            )
            await _wait_for(lambda: _result_count(second, "canon-1") == 3)
        finally:
            await second.stop_all()

        assert len(spawned) == 1
        assert spawned[0].canonical_session_id == "canon-1"
        assert "--resume" in spawned[0].build_args()

    async def test_unready_runner_is_stopped_before_respawn(self, engine):
        await engine.create_session("hello", _options("canon-1"))
        await _wait_for(lambda: _result_count(engine, "canon-1") == 1)

        stale = engine._sessions["canon-1"].runner
        stale_proc = stale.proc
        # As after a failed stdin write: not ready, but the process lives on
        stale._ready = False
        assert stale_proc.returncode is None

        await engine.send_message("canon-1", "again")
        assert stale_proc.returncode is not None
        assert engine._sessions["canon-1"].runner is not stale
        await _wait_for(lambda: _result_count(engine, "canon-1") == 2)

    async def test_list_includes_dormant_sessions(self, tmp_path):
        settings = agent_settings(tmp_path)
        first = AgentSessionEngine(settings)
        await first.create_session("hello", _options("canon-1"))
        await first.stop_all()

        second = AgentSessionEngine(settings)
        sessions = second.list_sessions()
        assert [s.id for s in sessions] == ["canon-1"]
        assert sessions[0].state is SessionState.DORMANT
        assert not second.is_running("canon-1")


class TestDeleteAndInterrupt:
    async def test_delete_stops_process_and_removes_files(self, engine):
        await engine.create_session("hello", _options("canon-1"))
        log_path = engine.store.log_path("canon-1")

        assert await engine.delete_session("canon-1") is True
        assert not engine.is_running("canon-1")
        assert engine.store.get("canon-1") is None
        assert not log_path.exists()
        assert await engine.delete_session("canon-1") is False

    async def test_interrupt_unknown_session_returns_false(self, engine):
        assert await engine.interrupt("nope") is False

    async def test_interrupt_live_session(self, engine):
        await engine.create_session("hello", _options("canon-1"))
        assert await engine.interrupt("canon-1") is True
