"""Podman container runtime plugin."""

from __future__ import annotations

from typing import Any

import pluggy

from .runtime import PodmanContainerRuntime

hookimpl = pluggy.HookimplMarker("agentdock")


class PodmanRuntimePlugin:
    """Plugin providing the Podman container runtime."""

    @hookimpl
    def agentdock_container_runtime(self) -> Any | None:
        return PodmanContainerRuntime()
