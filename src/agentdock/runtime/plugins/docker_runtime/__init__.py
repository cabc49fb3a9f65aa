"""Docker container runtime plugin."""

from __future__ import annotations

from typing import Any

import pluggy

from .runtime import DockerContainerRuntime

hookimpl = pluggy.HookimplMarker("agentdock")


class DockerRuntimePlugin:
    """Plugin providing the Docker container runtime."""

    @hookimpl
    def agentdock_container_runtime(self) -> Any | None:
        return DockerContainerRuntime()
