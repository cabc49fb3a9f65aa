"""Workload supervisor. Keeps auxiliary per-workload servers alive.

A workload is a directory under the workloads dir holding a ``package.json``
manifest. Starting one runs the install command, then the start command with
``PORT`` / ``WORKLOAD_PORT`` set, both with output appended to
``<dir>/workload.log``.

Crash policy (unexpected non-zero exit after the settle window):

    prune restart timestamps older than restart_window
    len(timestamps) >= max_restarts  -> crashed, no more restarts
    otherwise                        -> record now, restart after restart_delay

An exit inside the settle window means the server never came up; the
workload is marked crashed straight away.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import os
import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any, Literal

from agentdock.config import WorkloadConfig
from agentdock.errors import InvalidWorkloadSlugError
from agentdock.logger import logger
from agentdock.utils import create_background_task

SLUG_RE = re.compile(r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?$")
MANIFEST = "package.json"
LOG_NAME = "workload.log"

WorkloadStatus = Literal["starting", "running", "stopped", "crashed"]


@dataclass
class Workload:
    slug: str
    name: str
    description: str
    port: int
    status: WorkloadStatus = "starting"
    restart_count: int = 0
    restart_timestamps: list[float] = field(default_factory=list)
    log_path: Path | None = None
    proc: asyncio.subprocess.Process | None = field(default=None, repr=False)
    settled: bool = False
    stopping: bool = False
    _log_file: IO[bytes] | None = field(default=None, repr=False)
    _watcher: asyncio.Task[None] | None = field(default=None, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "slug": self.slug,
            "name": self.name,
            "description": self.description,
            "status": self.status,
            "port": self.port,
            "restartCount": self.restart_count,
        }

    def close_log(self) -> None:
        if self._log_file is not None:
            self._log_file.close()
            self._log_file = None


class WorkloadProcessSupervisor:
    def __init__(
        self,
        config: WorkloadConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.root = Path(config.workloads_dir)
        self._clock = clock
        self._workloads: dict[str, Workload] = {}
        self._next_port = config.base_port

    # ------------------------------------------------------------------
    # Paths & manifest
    # ------------------------------------------------------------------

    def validate_slug(self, slug: str) -> Path:
        """Return the workload dir for ``slug`` or raise InvalidWorkloadSlugError."""
        if not SLUG_RE.match(slug):
            raise InvalidWorkloadSlugError(
                f'Invalid workload slug: "{slug}". Must be lowercase alphanumeric with '
                "hyphens, not starting/ending with hyphen."
            )
        root = self.root.resolve()
        resolved = (root / slug).resolve()
        if resolved.parent != root:
            raise InvalidWorkloadSlugError(
                f'Invalid workload slug: "{slug}". Path traversal detected.'
            )
        return resolved

    def _read_manifest(self, workload_dir: Path, slug: str) -> tuple[str, str]:
        try:
            data = json.loads((workload_dir / MANIFEST).read_text())
        except (OSError, json.JSONDecodeError):
            return slug, ""
        return data.get("name") or slug, data.get("description") or ""

    # ------------------------------------------------------------------
    # Start / stop
    # ------------------------------------------------------------------

    async def start(self, slug: str) -> Workload:
        workload_dir = self.validate_slug(slug)
        if not (workload_dir / MANIFEST).exists():
            raise FileNotFoundError(f"Workload {slug} has no {MANIFEST}")

        existing = self._workloads.get(slug)
        if existing is not None and existing.proc is not None and existing.proc.returncode is None:
            await self._terminate(existing)

        name, description = self._read_manifest(workload_dir, slug)
        if existing is not None:
            port = existing.port
        else:
            port = self._next_port
            self._next_port += 1

        workload = Workload(
            slug=slug,
            name=name,
            description=description,
            port=port,
            restart_count=existing.restart_count if existing else 0,
            restart_timestamps=existing.restart_timestamps if existing else [],
            log_path=workload_dir / LOG_NAME,
        )
        self._workloads[slug] = workload

        assert workload.log_path is not None
        workload._log_file = workload.log_path.open("ab")
        try:
            await self._run_install(workload_dir, workload._log_file)
            env = {
                **os.environ,
                "PORT": str(port),
                "WORKLOAD_PORT": str(port),
                "NODE_ENV": "production",
            }
            workload.proc = await asyncio.create_subprocess_exec(
                *self.config.start_command,
                cwd=workload_dir,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=workload._log_file,
                stderr=workload._log_file,
            )
        except (OSError, RuntimeError) as exc:
            logger.error("Failed to start workload", slug=slug, err=str(exc))
            workload._log_file.write(f"[supervisor] Failed to start: {exc}\n".encode())
            workload.close_log()
            workload.status = "crashed"
            return workload

        workload.status = "running"
        workload._watcher = create_background_task(
            self._watch(workload), name=f"workload-watch-{slug}"
        )
        logger.info("Workload started", slug=slug, port=port, pid=workload.proc.pid)

        # Detect immediate crashes (syntax errors, missing files)
        await asyncio.sleep(self.config.settle_window)
        workload.settled = True
        if workload.proc.returncode not in (None, 0):
            workload.status = "crashed"
        return workload

    async def _run_install(self, workload_dir: Path, log_file: IO[bytes]) -> None:
        if not self.config.install_command:
            return
        proc = await asyncio.create_subprocess_exec(
            *self.config.install_command,
            cwd=workload_dir,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=log_file,
            stderr=log_file,
        )
        code = await proc.wait()
        if code != 0:
            raise RuntimeError(f"{' '.join(self.config.install_command)} failed (code {code})")

    async def _watch(self, workload: Workload) -> None:
        assert workload.proc is not None
        code = await workload.proc.wait()
        logger.info("Workload exited", slug=workload.slug, code=code)
        workload.close_log()
        if self._workloads.get(workload.slug) is not workload:
            return  # replaced by a newer instance
        if workload.stopping or code == 0:
            workload.status = "stopped"
            return
        if not workload.settled:
            workload.status = "crashed"
            return
        workload.status = "stopped"
        if self.handle_crash(workload.slug):
            await asyncio.sleep(self.config.restart_delay)
            if self._workloads.get(workload.slug) is workload and not workload.stopping:
                await self.start(workload.slug)

    def handle_crash(self, slug: str) -> bool:
        """Apply the crash policy. Returns True when a restart should follow."""
        workload = self._workloads.get(slug)
        if workload is None:
            return False
        now = self._clock()
        workload.restart_timestamps[:] = [
            ts for ts in workload.restart_timestamps if now - ts < self.config.restart_window
        ]
        if len(workload.restart_timestamps) >= self.config.max_restarts:
            logger.warning("Workload exhausted restart attempts", slug=slug)
            workload.status = "crashed"
            return False
        workload.restart_timestamps.append(now)
        workload.restart_count += 1
        logger.info(
            "Auto-restarting workload",
            slug=slug,
            attempt=len(workload.restart_timestamps),
            max_restarts=self.config.max_restarts,
        )
        return True

    async def _terminate(self, workload: Workload) -> None:
        workload.stopping = True
        proc = workload.proc
        if proc is not None and proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=self.config.stop_timeout)
            except TimeoutError:
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()
        watcher = workload._watcher
        if watcher is not None and watcher is not asyncio.current_task():
            # The exit is handled here; a live watcher must not restart it
            if not watcher.done():
                watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watcher
        workload.close_log()
        workload.status = "stopped"

    async def stop(self, slug: str) -> bool:
        """Stop the workload and cancel any pending auto-restart.

        Returns False when there was neither a live process nor a pending restart.
        """
        workload = self._workloads.get(slug)
        if workload is None:
            return False
        alive = workload.proc is not None and workload.proc.returncode is None
        restarting = workload._watcher is not None and not workload._watcher.done()
        if not alive and not restarting:
            return False
        await self._terminate(workload)
        # The cancelled restart may already have registered a replacement
        current = self._workloads.get(slug)
        if current is not None and current is not workload:
            await self._terminate(current)
        logger.info("Workload stopped", slug=slug)
        return True

    async def stop_all(self) -> None:
        workloads = list(self._workloads.values())
        await asyncio.gather(*(self._terminate(w) for w in workloads), return_exceptions=True)
        seen = {id(w) for w in workloads}
        leftovers = [w for w in self._workloads.values() if id(w) not in seen]
        await asyncio.gather(*(self._terminate(w) for w in leftovers), return_exceptions=True)
        self._workloads.clear()

    async def scan_and_start_all(self) -> list[Workload]:
        self.root.mkdir(parents=True, exist_ok=True)
        started: list[Workload] = []
        for entry in sorted(self.root.iterdir()):
            if not entry.is_dir() or not (entry / MANIFEST).exists():
                continue
            try:
                started.append(await self.start(entry.name))
            except InvalidWorkloadSlugError as exc:
                logger.warning("Skipping workload directory", dir=entry.name, err=str(exc))
        return started

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, slug: str) -> Workload | None:
        return self._workloads.get(slug)

    def list_workloads(self) -> list[Workload]:
        result = list(self._workloads.values())
        if not self.root.is_dir():
            return result
        for entry in sorted(self.root.iterdir()):
            if entry.name in self._workloads or not entry.is_dir():
                continue
            if not (entry / MANIFEST).exists():
                continue
            name, description = self._read_manifest(entry, entry.name)
            result.append(
                Workload(slug=entry.name, name=name, description=description, port=0, status="stopped")
            )
        return result

    def get_port(self, slug: str) -> int | None:
        workload = self._workloads.get(slug)
        if workload is None or workload.status != "running":
            return None
        return workload.port

    def read_logs(self, slug: str, *, clear: bool = False) -> str:
        log_path = self.validate_slug(slug) / LOG_NAME
        if not log_path.exists():
            return ""
        content = log_path.read_text(errors="replace")
        if clear:
            log_path.write_text("")
        return content
