"""Container runtime providers (docker, podman, plugins)."""

from agentdock.runtime.runtime import (
    CliResult,
    CliRuntime,
    RuntimeProvider,
    collect_runtimes,
    detect_runtime,
    run_cli,
    stream_cli,
)

__all__ = [
    "CliResult",
    "CliRuntime",
    "RuntimeProvider",
    "collect_runtimes",
    "detect_runtime",
    "run_cli",
    "stream_cli",
]
