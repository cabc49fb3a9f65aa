"""Pluggy hook specifications for agentdock plugins.

All hooks use the "agentdock" namespace and are validated by pluggy at
registration time.
"""

from __future__ import annotations

from typing import Any

import pluggy

hookspec = pluggy.HookspecMarker("agentdock")


class AgentDockSpec:
    """Hook specifications for agentdock plugins."""

    @hookspec
    def agentdock_container_runtime(self) -> Any | None:
        """Provide a container runtime implementation.

        Runtime plugins return an object with:
            - name (str): runtime identifier (e.g., "docker")
            - cli (str): container CLI command
            - host_gateway (str): hostname containers use to reach the host
            - volume_suffix (str): appended to bind mounts (e.g., ":U")
            - is_available() -> bool
            - async is_running() -> bool
            - can_start() -> bool
            - async start() -> str
            - run_flags() -> list[str]

        Returns:
            Runtime object, or None if this plugin doesn't provide one.
        """

    @hookspec
    def agentdock_health_checker(self) -> Any | None:
        """Provide an additional container health checker.

        Returns:
            Object with ``name`` (str) and
            ``check(agent_id: str, stats: ContainerStats) -> HealthCheckResult``,
            or None.
        """
