"""Host-side handle on one agent container.

Two channels:

- the runtime CLI (``docker``/``podman``) for lifecycle and ground truth:
  run, stop, inspect, stats
- the container's control API over HTTP/WebSocket (aiohttp) for sessions,
  messages, pending input and config

Any failure to reach the control API is reported through
``on_connection_error`` so the lifecycle manager can re-check what the
runtime actually says about the container.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import re
import socket
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import aiohttp

from agentdock.config import Settings
from agentdock.errors import ContainerConnectionError, ContainerNotRunningError, ContainerStartError
from agentdock.logger import logger
from agentdock.runtime import RuntimeProvider, run_cli
from agentdock.types import AgentSpec, ContainerInfo, ContainerStats
from agentdock.utils import create_background_task

type FrameCallback = Callable[[dict[str, Any]], None]

_PORT_MAPPING_RE = re.compile(r":(\d+)->")
_SIZE_RE = re.compile(r"^\s*([\d.]+)\s*([kmgtp]?i?b)?\s*$", re.IGNORECASE)
_SIZE_UNITS = {
    "b": 1,
    "kb": 1000,
    "mb": 1000**2,
    "gb": 1000**3,
    "tb": 1000**4,
    "kib": 1024,
    "mib": 1024**2,
    "gib": 1024**3,
    "tib": 1024**4,
}


def parse_size(text: str) -> int:
    """Parse runtime size strings like ``512MiB`` or ``1.5GB`` into bytes."""
    match = _SIZE_RE.match(text)
    if not match:
        return 0
    unit = (match.group(2) or "b").lower()
    return int(float(match.group(1)) * _SIZE_UNITS.get(unit, 1))


def _parse_percent(text: str | None) -> float:
    try:
        return float((text or "0").strip().rstrip("%") or 0)
    except ValueError:
        return 0.0


def parse_stats(raw: dict[str, Any]) -> ContainerStats:
    """Parse one ``stats --no-stream --format {{json .}}`` record."""
    usage, _, limit = str(raw.get("MemUsage", "")).partition("/")
    return ContainerStats(
        memory_usage_bytes=parse_size(usage),
        memory_limit_bytes=parse_size(limit),
        memory_percent=_parse_percent(raw.get("MemPerc")),
        cpu_percent=_parse_percent(raw.get("CPUPerc")),
    )


def _port_free(port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind(("127.0.0.1", port))
        except OSError:
            return False
    return True


class ContainerClient:
    def __init__(
        self,
        agent: AgentSpec,
        runtime: RuntimeProvider,
        settings: Settings,
        *,
        on_connection_error: Callable[[str], None] | None = None,
    ) -> None:
        self.agent = agent
        self.runtime = runtime
        self._settings = settings
        self.on_connection_error = on_connection_error
        self._port: int | None = None
        self._http: aiohttp.ClientSession | None = None
        self._streams: dict[str, asyncio.Task[None]] = {}

    @property
    def agent_id(self) -> str:
        return self.agent.slug

    @property
    def container_name(self) -> str:
        return f"{self._settings.container.name_prefix}{self.agent.slug}"

    @property
    def workspace_dir(self) -> Path:
        return Path(self._settings.container.workspaces_dir).expanduser() / self.agent.slug

    # ------------------------------------------------------------------
    # Runtime CLI
    # ------------------------------------------------------------------

    async def get_info(self) -> ContainerInfo:
        """Authoritative status from the runtime. Any failure reads as stopped."""
        internal = self._settings.container.internal_port
        fmt = (
            "{{.State.Running}}|{{range $p, $conf := .NetworkSettings.Ports}}"
            f'{{{{if eq $p "{internal}/tcp"}}}}{{{{(index $conf 0).HostPort}}}}{{{{end}}}}'
            "{{end}}"
        )
        result = await run_cli(self.runtime.cli, "inspect", "--format", fmt, self.container_name)
        if not result.ok:
            self._port = None
            return ContainerInfo(status="stopped")
        running, _, port = result.stdout.strip().partition("|")
        if running != "true":
            self._port = None
            return ContainerInfo(status="stopped")
        self._port = int(port) if port.isdigit() else None
        return ContainerInfo(status="running", port=self._port)

    async def _used_ports(self) -> set[int]:
        result = await run_cli(self.runtime.cli, "ps", "--format", "{{.Ports}}")
        return {int(p) for p in _PORT_MAPPING_RE.findall(result.stdout)} if result.ok else set()

    async def _find_available_port(self) -> int:
        used = await self._used_ports()
        port = self._settings.container.base_host_port
        while port in used or not _port_free(port):
            port += 1
        return port

    def _run_args(self, port: int, env: dict[str, str]) -> list[str]:
        c = self._settings.container
        args = [
            self.runtime.cli,
            "run",
            "-d",
            "--name",
            self.container_name,
            "-p",
            f"{port}:{c.internal_port}",
            "-v",
            f"{self.workspace_dir}:/workspace{self.runtime.volume_suffix}",
        ]
        memory = self.agent.memory_limit or c.memory_limit
        if memory:
            args.append(f"--memory={memory}")
        cpus = self.agent.cpu_limit or c.cpu_limit
        if cpus:
            args.append(f"--cpus={cpus}")
        args += self.runtime.run_flags()
        for key, value in env.items():
            args += ["-e", f"{key}={value}"]
        args.append(c.image)
        return args

    async def start(self, env: dict[str, str] | None = None) -> ContainerInfo:
        info = await self.get_info()
        if info.status == "running":
            logger.info("Container already running", agent_id=self.agent_id, port=info.port)
            return info

        self.workspace_dir.mkdir(parents=True, exist_ok=True)
        await run_cli(self.runtime.cli, "rm", "-f", self.container_name)
        port = await self._find_available_port()
        result = await run_cli(*self._run_args(port, env or {}), timeout=120)
        if not result.ok:
            raise ContainerStartError(
                f"Failed to start container {self.container_name}: {result.stderr.strip()}"
            )
        logger.info("Started container", agent_id=self.agent_id, port=port)

        if not await self.wait_for_healthy(self._settings.container.healthy_timeout):
            raise ContainerStartError("Container failed to become healthy")
        return ContainerInfo(status="running", port=self._port)

    async def stop(self) -> None:
        for session_id in list(self._streams):
            self._close_stream(session_id)
        stop_timeout = str(self._settings.container.stop_timeout)
        await run_cli(self.runtime.cli, "stop", "-t", stop_timeout, self.container_name)
        await run_cli(self.runtime.cli, "rm", self.container_name)
        self._port = None
        logger.info("Stopped container", agent_id=self.agent_id)

    async def get_stats(self) -> ContainerStats | None:
        result = await run_cli(
            self.runtime.cli,
            "stats",
            "--no-stream",
            "--format",
            "{{json .}}",
            self.container_name,
            timeout=30,
        )
        if not result.ok:
            return None
        for line in result.stdout.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                return parse_stats(json.loads(line))
            except json.JSONDecodeError:
                logger.warning("Unparseable stats line", agent_id=self.agent_id)
        return None

    async def wait_for_healthy(self, timeout: float, poll_interval: float = 1.0) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if await self.is_healthy():
                return True
            await asyncio.sleep(poll_interval)
        return False

    async def is_healthy(self) -> bool:
        info = await self.get_info()
        if info.status != "running" or not info.port:
            return False
        try:
            async with self._session().get(
                self._url(info.port, "/health"), timeout=aiohttp.ClientTimeout(total=5)
            ) as resp:
                return resp.status == 200
        except (aiohttp.ClientError, TimeoutError):
            return False

    # ------------------------------------------------------------------
    # Control API
    # ------------------------------------------------------------------

    def _session(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
        return self._http

    @staticmethod
    def _url(port: int, path: str) -> str:
        return f"http://localhost:{port}{path}"

    async def _port_or_raise(self) -> int:
        if self._port is None:
            info = await self.get_info()
            if info.status != "running" or not info.port:
                raise ContainerNotRunningError(f"Container for {self.agent_id} is not running")
        assert self._port is not None
        return self._port

    def _connection_failed(self, exc: BaseException) -> None:
        self._port = None
        logger.warning("Container unreachable", agent_id=self.agent_id, err=str(exc))
        if self.on_connection_error is not None:
            self.on_connection_error(self.agent_id)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Any = None,
        ok_statuses: tuple[int, ...] = (200, 201),
        allow_404: bool = False,
    ) -> Any:
        port = await self._port_or_raise()
        try:
            async with self._session().request(
                method, self._url(port, path), json=json_body
            ) as resp:
                if allow_404 and resp.status == 404:
                    return None
                if resp.status not in ok_statuses:
                    text = await resp.text()
                    raise ContainerConnectionError(
                        f"{method} {path} failed with {resp.status}: {text[:200]}"
                    )
                return await resp.json()
        except aiohttp.ClientConnectionError as exc:
            self._connection_failed(exc)
            raise ContainerConnectionError(f"Cannot reach container {self.agent_id}") from exc

    async def create_session(
        self,
        initial_message: str,
        *,
        system_prompt: str | None = None,
        available_env_vars: list[str] | None = None,
        model: str | None = None,
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            "/sessions",
            json_body={
                "initialMessage": initial_message,
                "systemPrompt": system_prompt,
                "availableEnvVars": available_env_vars or [],
                "model": model or self.agent.model,
            },
        )

    async def get_session(self, session_id: str) -> dict[str, Any] | None:
        return await self._request("GET", f"/sessions/{session_id}", allow_404=True)

    async def list_sessions(self) -> list[dict[str, Any]]:
        return await self._request("GET", "/sessions")

    async def delete_session(self, session_id: str) -> bool:
        self._close_stream(session_id)
        return await self._request("DELETE", f"/sessions/{session_id}", allow_404=True) is not None

    async def send_message(self, session_id: str, content: str) -> None:
        await self._request("POST", f"/sessions/{session_id}/messages", json_body={"content": content})

    async def get_messages(self, session_id: str) -> list[dict[str, Any]]:
        return await self._request("GET", f"/sessions/{session_id}/messages")

    async def interrupt_session(self, session_id: str) -> bool:
        body = await self._request("POST", f"/sessions/{session_id}/interrupt")
        return bool(body.get("interrupted"))

    async def is_session_running(self, session_id: str) -> bool:
        body = await self._request("GET", f"/sessions/{session_id}/running")
        return bool(body.get("running"))

    async def resolve_input(self, tool_use_id: str, value: Any = None) -> bool:
        body = await self._request(
            "POST", f"/inputs/{tool_use_id}/resolve", json_body={"value": value}, allow_404=True
        )
        return body is not None

    async def reject_input(self, tool_use_id: str, reason: str = "User declined") -> bool:
        body = await self._request(
            "POST", f"/inputs/{tool_use_id}/reject", json_body={"reason": reason}, allow_404=True
        )
        return body is not None

    async def set_config(self, key: str, value: str) -> None:
        await self._request("POST", "/config", json_body={"key": key, "value": value})

    # ------------------------------------------------------------------
    # Stream
    # ------------------------------------------------------------------

    def subscribe_to_stream(self, session_id: str, callback: FrameCallback) -> Callable[[], None]:
        """Open the session's WebSocket; frames go to ``callback`` in order.

        When the socket closes without an explicit unsubscribe, a synthetic
        ``connection_closed`` frame is delivered last.
        """
        self._close_stream(session_id)
        task = create_background_task(
            self._stream_loop(session_id, callback), name=f"stream-{self.agent_id}-{session_id}"
        )
        self._streams[session_id] = task

        def _unsubscribe() -> None:
            if self._streams.get(session_id) is task:
                self._close_stream(session_id)

        return _unsubscribe

    def _close_stream(self, session_id: str) -> None:
        task = self._streams.pop(session_id, None)
        if task is not None and not task.done():
            task.cancel()

    async def _stream_loop(self, session_id: str, callback: FrameCallback) -> None:
        reason = "closed"
        try:
            port = await self._port_or_raise()
            async with self._session().ws_connect(
                f"ws://localhost:{port}/sessions/{session_id}/stream"
            ) as ws:
                logger.info("Stream connected", agent_id=self.agent_id, session_id=session_id)
                async for msg in ws:
                    if msg.type != aiohttp.WSMsgType.TEXT:
                        continue
                    try:
                        frame = json.loads(msg.data)
                    except json.JSONDecodeError:
                        logger.warning("Unparseable stream frame", session_id=session_id)
                        continue
                    if isinstance(frame, dict):
                        callback(frame)
        except asyncio.CancelledError:
            raise
        except (aiohttp.ClientError, ContainerNotRunningError) as exc:
            reason = str(exc) or type(exc).__name__
            if isinstance(exc, aiohttp.ClientConnectionError):
                self._connection_failed(exc)
        finally:
            if self._streams.get(session_id) is asyncio.current_task():
                self._streams.pop(session_id, None)
        logger.info("Stream closed", agent_id=self.agent_id, session_id=session_id, reason=reason)
        callback(
            {
                "type": "connection_closed",
                "content": {"type": "connection_closed", "reason": reason},
                "sessionId": session_id,
            }
        )

    async def close(self) -> None:
        for session_id in list(self._streams):
            self._close_stream(session_id)
        if self._http is not None and not self._http.closed:
            with contextlib.suppress(Exception):
                await self._http.close()
        self._http = None
