"""Tests for the workload supervisor: slugs, crash policy, process lifecycle."""

from __future__ import annotations

import asyncio
import json
import sys

import pytest

from agentdock.agent.workload_supervisor import Workload, WorkloadProcessSupervisor
from agentdock.config import WorkloadConfig
from agentdock.errors import InvalidWorkloadSlugError

SLEEPER = [sys.executable, "-c", "import time; print('up', flush=True); time.sleep(30)"]
CRASHER = [sys.executable, "-c", "import sys; sys.exit(2)"]
# Survives the settle window, then dies
LATE_CRASHER = [sys.executable, "-c", "import sys, time; time.sleep(0.3); sys.exit(2)"]


async def _wait_for(predicate, timeout: float = 10.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _config(tmp_path, **overrides) -> WorkloadConfig:
    fields = {
        "workloads_dir": str(tmp_path),
        "install_command": [],
        "start_command": SLEEPER,
        "settle_window": 0.1,
        "restart_delay": 0.0,
        "stop_timeout": 2.0,
    }
    fields.update(overrides)
    return WorkloadConfig(**fields)


def _make_workload(tmp_path, slug: str = "app", name: str | None = None) -> None:
    workload_dir = tmp_path / slug
    workload_dir.mkdir()
    (workload_dir / "package.json").write_text(
        json.dumps({"name": name or slug, "description": "A test app"})
    )


class TestSlugValidation:
    @pytest.mark.parametrize("slug", ["app", "my-app", "a1", "x"])
    def test_valid(self, tmp_path, slug):
        supervisor = WorkloadProcessSupervisor(_config(tmp_path))
        assert supervisor.validate_slug(slug) == (tmp_path / slug).resolve()

    @pytest.mark.parametrize("slug", ["-app", "app-", "My-App", "../etc", "a/b", "", "a_b"])
    def test_invalid(self, tmp_path, slug):
        supervisor = WorkloadProcessSupervisor(_config(tmp_path))
        with pytest.raises(InvalidWorkloadSlugError):
            supervisor.validate_slug(slug)

    def test_read_logs_rejects_bad_slug(self, tmp_path):
        supervisor = WorkloadProcessSupervisor(_config(tmp_path))
        with pytest.raises(InvalidWorkloadSlugError):
            supervisor.read_logs("../secrets")


class TestCrashPolicy:
    def _supervisor(self, tmp_path, clock: FakeClock) -> WorkloadProcessSupervisor:
        supervisor = WorkloadProcessSupervisor(_config(tmp_path, max_restarts=3), clock=clock)
        supervisor._workloads["app"] = Workload(
            slug="app", name="app", description="", port=5000, status="stopped"
        )
        return supervisor

    def test_fourth_crash_inside_window_marks_crashed(self, tmp_path):
        clock = FakeClock()
        supervisor = self._supervisor(tmp_path, clock)

        for _ in range(3):
            assert supervisor.handle_crash("app") is True
            clock.now += 10
        assert supervisor.handle_crash("app") is False

        workload = supervisor.get("app")
        assert workload.status == "crashed"
        assert workload.restart_count == 3

    def test_spaced_crashes_keep_restarting(self, tmp_path):
        clock = FakeClock()
        supervisor = self._supervisor(tmp_path, clock)

        for _ in range(6):
            assert supervisor.handle_crash("app") is True
            clock.now += 301
        assert supervisor.get("app").status != "crashed"
        assert len(supervisor.get("app").restart_timestamps) == 1

    def test_old_timestamps_are_pruned(self, tmp_path):
        clock = FakeClock()
        supervisor = self._supervisor(tmp_path, clock)

        supervisor.handle_crash("app")
        supervisor.handle_crash("app")
        clock.now += 299
        supervisor.handle_crash("app")
        clock.now += 2  # first two fall out of the window
        assert supervisor.handle_crash("app") is True
        assert len(supervisor.get("app").restart_timestamps) == 2

    def test_zero_max_restarts_never_restarts(self, tmp_path):
        supervisor = WorkloadProcessSupervisor(_config(tmp_path, max_restarts=0))
        supervisor._workloads["app"] = Workload(slug="app", name="app", description="", port=5000)
        assert supervisor.handle_crash("app") is False

    def test_unknown_slug(self, tmp_path):
        supervisor = WorkloadProcessSupervisor(_config(tmp_path))
        assert supervisor.handle_crash("ghost") is False


class TestLifecycle:
    async def test_start_list_logs_stop(self, tmp_path):
        _make_workload(tmp_path, "app", name="My App")
        supervisor = WorkloadProcessSupervisor(_config(tmp_path))
        try:
            workload = await supervisor.start("app")
            assert workload.status == "running"
            assert workload.name == "My App"
            assert workload.port == 5000
            assert supervisor.get_port("app") == 5000

            for _ in range(100):
                if "up" in supervisor.read_logs("app"):
                    break
                await asyncio.sleep(0.05)
            assert "up" in supervisor.read_logs("app", clear=True)
            assert supervisor.read_logs("app") == ""

            assert await supervisor.stop("app") is True
            assert workload.status == "stopped"
            assert supervisor.get_port("app") is None
            assert await supervisor.stop("app") is False
        finally:
            await supervisor.stop_all()

    async def test_immediate_exit_is_crashed(self, tmp_path):
        _make_workload(tmp_path, "app")
        supervisor = WorkloadProcessSupervisor(
            _config(tmp_path, start_command=CRASHER, settle_window=3.0)
        )
        try:
            workload = await supervisor.start("app")
            assert workload.status == "crashed"
        finally:
            await supervisor.stop_all()

    async def test_late_crash_restarts_then_gives_up(self, tmp_path):
        _make_workload(tmp_path, "app")
        supervisor = WorkloadProcessSupervisor(
            _config(tmp_path, start_command=LATE_CRASHER, max_restarts=1, restart_window=60.0)
        )
        try:
            first = await supervisor.start("app")
            assert first.status == "running"

            await _wait_for(lambda: supervisor.get("app").status == "crashed")

            final = supervisor.get("app")
            assert final is not first
            assert final.port == first.port == 5000
            assert final.restart_count == 1
            assert final.proc.returncode == 2
            assert supervisor.get_port("app") is None
        finally:
            await supervisor.stop_all()

    async def test_stop_cancels_pending_restart(self, tmp_path):
        _make_workload(tmp_path, "app")
        supervisor = WorkloadProcessSupervisor(
            _config(tmp_path, start_command=LATE_CRASHER, restart_delay=5.0)
        )
        try:
            workload = await supervisor.start("app")
            await _wait_for(lambda: workload.restart_count == 1)
            assert workload.proc.returncode == 2

            loop = asyncio.get_running_loop()
            began = loop.time()
            assert await supervisor.stop("app") is True
            assert loop.time() - began < 2.0

            await asyncio.sleep(0.2)
            assert supervisor.get("app") is workload
            assert workload.status == "stopped"
            assert await supervisor.stop("app") is False
        finally:
            await supervisor.stop_all()

    async def test_missing_manifest(self, tmp_path):
        (tmp_path / "app").mkdir()
        supervisor = WorkloadProcessSupervisor(_config(tmp_path))
        with pytest.raises(FileNotFoundError):
            await supervisor.start("app")

    async def test_ports_are_allocated_per_workload(self, tmp_path):
        _make_workload(tmp_path, "one")
        _make_workload(tmp_path, "two")
        supervisor = WorkloadProcessSupervisor(_config(tmp_path))
        try:
            started = await supervisor.scan_and_start_all()
            assert sorted(w.port for w in started) == [5000, 5001]
        finally:
            await supervisor.stop_all()

    def test_list_includes_unstarted_workloads(self, tmp_path):
        _make_workload(tmp_path, "app")
        (tmp_path / "not-a-workload").mkdir()
        supervisor = WorkloadProcessSupervisor(_config(tmp_path))
        listed = supervisor.list_workloads()
        assert [w.slug for w in listed] == ["app"]
        assert listed[0].status == "stopped"
