"""Podman container runtime provider for agentdock."""

from __future__ import annotations

import sys

from agentdock.errors import RuntimeUnavailableError
from agentdock.logger import logger
from agentdock.runtime.runtime import CliRuntime, run_cli


class PodmanContainerRuntime(CliRuntime):
    """Runtime adapter for the Podman CLI.

    Podman keeps the host UID on bind mounts, so volumes get ``:U`` to remap
    ownership to the container user.
    """

    name = "podman"
    cli = "podman"
    host_gateway = "host.containers.internal"
    volume_suffix = ":U"

    async def start(self) -> str:
        if sys.platform != "darwin":
            raise RuntimeUnavailableError(
                "Podman on Linux is daemonless. If installed, it should work automatically."
            )
        listed = await run_cli(self.cli, "machine", "list", "--format", "{{.Name}}", timeout=30)
        machines = [m.strip().rstrip("*") for m in listed.stdout.splitlines() if m.strip()]
        if not machines:
            raise RuntimeUnavailableError(
                'No Podman machine found. Run "podman machine init" first.'
            )
        logger.info("Starting Podman machine", machine=machines[0])
        result = await run_cli(self.cli, "machine", "start", machines[0], timeout=120)
        if result.ok:
            return f'Podman machine "{machines[0]}" is starting...'
        if "already running" in (result.stderr + result.stdout):
            return "Podman machine is already running."
        raise RuntimeUnavailableError(f"Failed to start Podman machine: {result.stderr.strip()}")
