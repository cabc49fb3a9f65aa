"""Container health checks against runtime stats.

Checkers are small objects with a ``name`` and a ``check(agent_id, stats)``
method. The memory checker is always registered; plugins can add more
through the ``agentdock_health_checker`` hook.
"""

from __future__ import annotations

from typing import Any, Protocol

import pluggy

from agentdock.config import HealthConfig
from agentdock.logger import logger
from agentdock.types import ContainerStats, HealthCheckResult


class HealthChecker(Protocol):
    name: str

    def check(self, agent_id: str, stats: ContainerStats) -> HealthCheckResult: ...


class MemoryHealthChecker:
    name = "memory"

    def __init__(self, warning_percent: float = 85.0, critical_percent: float = 95.0) -> None:
        self.warning_percent = warning_percent
        self.critical_percent = critical_percent

    def check(self, agent_id: str, stats: ContainerStats) -> HealthCheckResult:
        details = {
            "memoryPercent": stats.memory_percent,
            "memoryUsageBytes": stats.memory_usage_bytes,
            "memoryLimitBytes": stats.memory_limit_bytes,
        }
        pct = f"{stats.memory_percent:.0f}%"
        if stats.memory_percent >= self.critical_percent:
            return HealthCheckResult(
                check_name=self.name,
                status="critical",
                message=(
                    f"Memory usage is critically high ({pct}). The container may become "
                    "unresponsive. Consider increasing the memory limit in settings."
                ),
                details=details,
            )
        if stats.memory_percent >= self.warning_percent:
            return HealthCheckResult(
                check_name=self.name,
                status="warning",
                message=(
                    f"Memory usage is high ({pct}). Consider increasing the memory limit "
                    "in settings."
                ),
                details=details,
            )
        return HealthCheckResult(check_name=self.name, status="ok")


class HealthMonitor:
    def __init__(self, checkers: list[HealthChecker] | None = None) -> None:
        self._checkers: list[HealthChecker] = list(checkers or [])

    @classmethod
    def from_config(
        cls, config: HealthConfig, pm: pluggy.PluginManager | None = None
    ) -> HealthMonitor:
        monitor = cls(
            [MemoryHealthChecker(config.memory_warning_percent, config.memory_critical_percent)]
        )
        if pm is not None:
            for checker in pm.hook.agentdock_health_checker():
                if checker is None:
                    continue
                if not callable(getattr(checker, "check", None)):
                    logger.warning(
                        "Ignoring invalid health checker",
                        checker_type=type(checker).__name__,
                    )
                    continue
                monitor.register(checker)
        return monitor

    def register(self, checker: HealthChecker) -> None:
        self._checkers.append(checker)

    @property
    def checker_names(self) -> list[str]:
        return [c.name for c in self._checkers]

    def check_all(self, agent_id: str, stats: ContainerStats) -> list[HealthCheckResult]:
        """Run every checker; return only the non-ok results."""
        results: list[HealthCheckResult] = []
        for checker in self._checkers:
            try:
                result = checker.check(agent_id, stats)
            except Exception as exc:
                logger.warning(
                    "Health checker failed",
                    checker=getattr(checker, "name", "?"),
                    agent_id=agent_id,
                    err=str(exc),
                )
                continue
            if result.status != "ok":
                results.append(result)
        return results


def warning_signature(results: list[HealthCheckResult]) -> frozenset[tuple[str, str]]:
    """Identity of a warning set for change detection: (check_name, status) pairs."""
    return frozenset((r.check_name, r.status) for r in results)


def result_to_dict(result: HealthCheckResult) -> dict[str, Any]:
    data: dict[str, Any] = {"checkName": result.check_name, "status": result.status}
    if result.message is not None:
        data["message"] = result.message
    if result.details is not None:
        data["details"] = result.details
    return data
