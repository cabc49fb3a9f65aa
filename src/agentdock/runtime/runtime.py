"""Container runtime detection with plugin-extensible providers.

Docker and Podman ship as built-in plugins. Additional runtimes can be
provided by third-party plugins via ``agentdock_container_runtime``.

Every provider drives an OCI-compatible CLI; the differences between them
(auto-start, host gateway name, volume suffix, extra run flags) live on the
provider object.
"""

from __future__ import annotations

import asyncio
import shutil
import sys
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import pluggy

from agentdock.config import Settings
from agentdock.errors import RuntimeUnavailableError
from agentdock.logger import logger


@dataclass(frozen=True)
class CliResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


async def run_cli(*args: str, timeout: float | None = None) -> CliResult:
    """Run a CLI command to completion. A missing binary yields returncode 127."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        return CliResult(127, "", str(exc))
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError:
        proc.kill()
        await proc.wait()
        return CliResult(124, "", f"{args[0]} timed out after {timeout}s")
    return CliResult(
        proc.returncode if proc.returncode is not None else -1,
        stdout.decode(errors="replace"),
        stderr.decode(errors="replace"),
    )


async def stream_cli(
    *args: str,
    on_line: Callable[[str], None],
    timeout: float | None = None,
) -> int:
    """Run a CLI command, feeding each stdout/stderr line to ``on_line``."""
    proc = await asyncio.create_subprocess_exec(
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    assert proc.stdout is not None

    async def _pump() -> None:
        assert proc.stdout is not None
        async for raw in proc.stdout:
            line = raw.decode(errors="replace").strip()
            if line:
                on_line(line)

    try:
        await asyncio.wait_for(_pump(), timeout=timeout)
    except TimeoutError:
        proc.kill()
        await proc.wait()
        raise
    return await proc.wait()


@runtime_checkable
class RuntimeProvider(Protocol):
    """Runtime provider contract implemented by built-ins and plugins."""

    name: str
    cli: str
    host_gateway: str
    volume_suffix: str

    def is_available(self) -> bool: ...
    async def is_running(self) -> bool: ...
    def can_start(self) -> bool: ...
    async def start(self) -> str: ...
    def run_flags(self) -> list[str]: ...


class CliRuntime:
    """Shared behaviour for OCI CLIs; plugins subclass and override the quirks."""

    name = "oci"
    cli = "oci"
    host_gateway = "host.docker.internal"
    volume_suffix = ""

    def is_available(self) -> bool:
        return shutil.which(self.cli) is not None

    async def is_running(self) -> bool:
        if not self.is_available():
            return False
        result = await run_cli(self.cli, "info", timeout=15)
        return result.ok

    def can_start(self) -> bool:
        return sys.platform == "darwin"

    async def start(self) -> str:
        raise RuntimeUnavailableError(f"Cannot auto-start {self.name} on this platform.")

    def run_flags(self) -> list[str]:
        return []


def _is_valid_plugin_runtime(candidate: Any) -> bool:
    return all(
        [
            hasattr(candidate, "name"),
            hasattr(candidate, "cli"),
            callable(getattr(candidate, "is_available", None)),
            callable(getattr(candidate, "is_running", None)),
            callable(getattr(candidate, "start", None)),
        ]
    )


def collect_runtimes(pm: pluggy.PluginManager) -> dict[str, RuntimeProvider]:
    """Ask every plugin for its runtime; first registration of a name wins."""
    runtimes: dict[str, RuntimeProvider] = {}
    try:
        provided = pm.hook.agentdock_container_runtime()
    except Exception:
        logger.exception("Failed to resolve runtime plugins")
        return runtimes

    for runtime in provided:
        if runtime is None:
            continue
        if not _is_valid_plugin_runtime(runtime):
            logger.warning(
                "Ignoring invalid plugin runtime object",
                runtime_type=type(runtime).__name__,
            )
            continue
        name = str(runtime.name).lower().strip()
        if not name:
            continue
        if name in runtimes:
            logger.warning("Duplicate runtime provider ignored", runtime=name)
            continue
        runtimes[name] = runtime
    return runtimes


async def detect_runtime(
    settings: Settings, runtimes: dict[str, RuntimeProvider]
) -> RuntimeProvider:
    """Pick the runtime to use.

    Priority:
    1) settings.container.runtime override (if a provider with that name exists)
    2) first provider that is installed and running
    3) first provider that is installed
    """
    if not runtimes:
        raise RuntimeUnavailableError("No container runtime providers are registered")

    override = (settings.container.runtime or "").lower()
    if override:
        selected = runtimes.get(override)
        if selected is not None:
            return selected
        logger.warning("Unknown runtime override; falling back to auto-detection", runtime=override)

    installed = [r for r in runtimes.values() if r.is_available()]
    for runtime in installed:
        if await runtime.is_running():
            return runtime
    if installed:
        return installed[0]
    return next(iter(runtimes.values()))
