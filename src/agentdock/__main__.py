"""Entry point for `python -m agentdock` / `agentdock`.

Subcommands:
    agentdock serve     Run the in-container control server (default)
    agentdock check     Run the host readiness pipeline and print the outcome
"""

from __future__ import annotations

import argparse
import asyncio
import sys


def _serve() -> None:
    from agentdock.agent.server import start_server
    from agentdock.config import get_settings
    from agentdock.logger import bind_role, configure_logging

    settings = get_settings()
    configure_logging(settings.logging.level, settings.logging.format)
    bind_role("agent")

    async def _run() -> None:
        runner = await start_server(settings)
        try:
            await asyncio.Event().wait()
        finally:
            await runner.cleanup()

    asyncio.run(_run())


def _check() -> None:
    from agentdock.app import build_host
    from agentdock.types import ReadinessStatus

    async def _run() -> int:
        host = await build_host()
        state = await host.readiness.ensure_image_ready()
        print(f"{state.status}: {state.message}")
        return 0 if state.status == ReadinessStatus.READY else 1

    sys.exit(asyncio.run(_run()))


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="agentdock",
        description="Containerized AI agent runtime",
    )
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("serve", help="Run the in-container control server")
    sub.add_parser("check", help="Check the container runtime and agent image")

    args = parser.parse_args()

    match args.command:
        case "check":
            _check()
        case _:
            try:
                _serve()
            except KeyboardInterrupt:
                pass


if __name__ == "__main__":
    main()
