"""Docker container runtime provider for agentdock."""

from __future__ import annotations

import sys

from agentdock.errors import RuntimeUnavailableError
from agentdock.logger import logger
from agentdock.runtime.runtime import CliRuntime, run_cli


class DockerContainerRuntime(CliRuntime):
    """Runtime adapter for the Docker CLI."""

    name = "docker"
    cli = "docker"
    host_gateway = "host.docker.internal"

    def run_flags(self) -> list[str]:
        # Docker Desktop resolves host.docker.internal already; Linux needs the mapping
        if sys.platform == "linux":
            return ["--add-host=host.docker.internal:host-gateway"]
        return []

    async def start(self) -> str:
        if sys.platform != "darwin":
            raise RuntimeUnavailableError(
                'Docker daemon needs to be started with "sudo systemctl start docker".'
            )
        logger.info("Docker not running, attempting to start Docker Desktop...")
        result = await run_cli("open", "-a", "Docker", timeout=30)
        if not result.ok:
            raise RuntimeUnavailableError("Failed to start Docker Desktop. Is it installed?")
        return "Docker Desktop is starting..."
