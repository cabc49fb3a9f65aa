"""Tests for container health checkers and the monitor."""

from __future__ import annotations

import pluggy
from conftest import make_settings

from agentdock.config import HealthConfig
from agentdock.host.health import (
    HealthMonitor,
    MemoryHealthChecker,
    result_to_dict,
    warning_signature,
)
from agentdock.plugin import get_plugin_manager
from agentdock.types import ContainerStats, HealthCheckResult

hookimpl = pluggy.HookimplMarker("agentdock")


def _stats(percent: float) -> ContainerStats:
    return ContainerStats(
        memory_usage_bytes=int(percent * 10),
        memory_limit_bytes=1000,
        memory_percent=percent,
        cpu_percent=0.0,
    )


class DiskChecker:
    name = "disk"

    def check(self, agent_id, stats):
        return HealthCheckResult(check_name=self.name, status="warning", message="disk full")


class BrokenChecker:
    name = "broken"

    def check(self, agent_id, stats):
        raise RuntimeError("boom")


class TestMemoryChecker:
    def test_thresholds(self):
        checker = MemoryHealthChecker(warning_percent=80, critical_percent=90)
        assert checker.check("a", _stats(50)).status == "ok"
        assert checker.check("a", _stats(80)).status == "warning"
        critical = checker.check("a", _stats(93.4))
        assert critical.status == "critical"
        assert "93%" in critical.message
        assert critical.details["memoryLimitBytes"] == 1000

    def test_ok_has_no_details(self):
        result = MemoryHealthChecker().check("a", _stats(10))
        assert result.message is None
        assert result.details is None


class TestMonitor:
    def test_only_problems_are_returned(self):
        monitor = HealthMonitor([MemoryHealthChecker(), DiskChecker()])
        results = monitor.check_all("a", _stats(10))
        assert [r.check_name for r in results] == ["disk"]

    def test_failing_checker_is_skipped(self):
        monitor = HealthMonitor([BrokenChecker(), MemoryHealthChecker()])
        results = monitor.check_all("a", _stats(99))
        assert [(r.check_name, r.status) for r in results] == [("memory", "critical")]

    def test_from_config_uses_thresholds(self):
        monitor = HealthMonitor.from_config(
            HealthConfig(memory_warning_percent=50, memory_critical_percent=60)
        )
        assert monitor.checker_names == ["memory"]
        assert monitor.check_all("a", _stats(55))[0].status == "warning"

    def test_from_config_collects_plugin_checkers(self):
        class DiskPlugin:
            @hookimpl
            def agentdock_health_checker(self):
                return DiskChecker()

        class NotAChecker:
            @hookimpl
            def agentdock_health_checker(self):
                return object()

        pm = get_plugin_manager(make_settings())
        pm.register(DiskPlugin(), name="disk-plugin")
        pm.register(NotAChecker(), name="bad-plugin")

        monitor = HealthMonitor.from_config(HealthConfig(), pm)
        assert sorted(monitor.checker_names) == ["disk", "memory"]


class TestHelpers:
    def test_signature_ignores_messages(self):
        first = [HealthCheckResult(check_name="memory", status="warning", message="86%")]
        second = [HealthCheckResult(check_name="memory", status="warning", message="88%")]
        assert warning_signature(first) == warning_signature(second)
        assert warning_signature([]) != warning_signature(first)

    def test_result_to_dict(self):
        assert result_to_dict(HealthCheckResult(check_name="memory", status="ok")) == {
            "checkName": "memory",
            "status": "ok",
        }
        data = result_to_dict(
            HealthCheckResult(
                check_name="disk", status="warning", message="full", details={"free": 0}
            )
        )
        assert data["message"] == "full"
        assert data["details"] == {"free": 0}
