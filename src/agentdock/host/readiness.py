"""Runtime and image readiness pipeline.

Before any agent container can start, the host needs a reachable container
runtime and the agent image on disk. ``ImageReadiness.ensure_image_ready``
walks through those checks, publishing a ``ReadinessChanged`` event at each
phase (and throttled progress while pulling or building) so the UI can show
what is happening. It never raises: every failure ends in an ERROR or
RUNTIME_UNAVAILABLE state carrying a message the user can act on.
"""

from __future__ import annotations

import asyncio
import re
import sys
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from agentdock.config import Settings
from agentdock.errors import ImageError, RuntimeUnavailableError
from agentdock.event_bus import EventBus, ReadinessChanged
from agentdock.logger import logger
from agentdock.runtime import RuntimeProvider, detect_runtime, run_cli, stream_cli
from agentdock.types import ImagePullProgress, ReadinessStatus, RuntimeReadiness

_LAYER_RE = re.compile(r"^([a-f0-9]+):\s+(.+)$", re.IGNORECASE)
_COMPLETED_STATUSES = ("pull complete", "already exists")
_BUILD_STEP_RE = re.compile(r"^(Step \d|#\d)")
_MAX_STATUS_LEN = 80

# ---------------------------------------------------------------------------
# Runtime availability
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RunnerAvailability:
    runner: str
    installed: bool
    running: bool
    available: bool
    can_start: bool


async def check_runtime_availability(runtime: RuntimeProvider) -> RunnerAvailability:
    if not runtime.is_available():
        return RunnerAvailability(runtime.name, False, False, False, False)
    running = await runtime.is_running()
    return RunnerAvailability(
        runner=runtime.name,
        installed=True,
        running=running,
        available=running,
        can_start=not running and runtime.can_start(),
    )


async def start_runtime(runtime: RuntimeProvider) -> tuple[bool, str]:
    """Try to start the runtime. Returns (success, message for the user)."""
    try:
        message = await runtime.start()
    except RuntimeUnavailableError as exc:
        return False, str(exc)
    return True, message


def _install_hint() -> str:
    if sys.platform == "darwin":
        return "Install Docker Desktop or Podman Desktop, then try again."
    return "Install Docker or Podman with your package manager, then try again."


# ---------------------------------------------------------------------------
# Progress parsing
# ---------------------------------------------------------------------------


class PullProgressTracker:
    """Layer-based progress from ``<cli> pull`` output.

    Piped pull output has one line per layer event, e.g.
    ``abc123: Pull complete`` or ``def456: Already exists``.
    """

    def __init__(self) -> None:
        self.layers: set[str] = set()
        self.completed: set[str] = set()

    def feed(self, line: str) -> ImagePullProgress:
        line = line.strip()
        match = _LAYER_RE.match(line)
        if match:
            layer = match.group(1)
            self.layers.add(layer)
            if match.group(2).lower().startswith(_COMPLETED_STATUSES):
                self.completed.add(layer)
        total = len(self.layers)
        done = len(self.completed)
        return ImagePullProgress(
            status=f"{done} of {total} layers" if total else line,
            percent=round(done / total * 100) if total else None,
            completed_layers=done,
            total_layers=total,
        )


class BuildProgressTracker:
    """Step count from ``<cli> build`` output (classic ``Step N`` or BuildKit ``#N``)."""

    def __init__(self) -> None:
        self.steps = 0

    def feed(self, line: str) -> ImagePullProgress:
        line = line.strip()
        if _BUILD_STEP_RE.match(line):
            self.steps += 1
        status = line if len(line) <= _MAX_STATUS_LEN else line[:_MAX_STATUS_LEN] + "..."
        return ImagePullProgress(status=status, percent=None, completed_layers=self.steps, total_layers=0)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class ImageReadiness:
    def __init__(
        self,
        settings: Settings,
        runtimes: dict[str, RuntimeProvider],
        bus: EventBus,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.runtimes = runtimes
        self.bus = bus
        self.clock = clock
        self.runtime: RuntimeProvider | None = None
        self.state = RuntimeReadiness(ReadinessStatus.CHECKING, "Not checked yet")
        self._inflight: asyncio.Task[RuntimeReadiness] | None = None
        self._last_progress_at: float | None = None

    @property
    def is_ready(self) -> bool:
        return self.state.status == ReadinessStatus.READY

    def _set(
        self,
        status: ReadinessStatus,
        message: str,
        progress: ImagePullProgress | None = None,
    ) -> RuntimeReadiness:
        self.state = RuntimeReadiness(status, message, progress)
        self.bus.emit(ReadinessChanged(self.state))
        return self.state

    def _progress(self, message: str, progress: ImagePullProgress) -> None:
        now = self.clock()
        throttle = self.settings.readiness.progress_throttle
        if self._last_progress_at is not None and now - self._last_progress_at < throttle:
            return
        self._last_progress_at = now
        self._set(ReadinessStatus.PULLING_IMAGE, message, progress)

    async def ensure_image_ready(self) -> RuntimeReadiness:
        """Run the pipeline, or join the run already in flight."""
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.create_task(self._run())
        return await asyncio.shield(self._inflight)

    async def _run(self) -> RuntimeReadiness:
        try:
            self._set(ReadinessStatus.CHECKING, "Checking container runtime...")
            runtime = await self._resolve_runtime()
            if runtime is None:
                return self.state
            self.runtime = runtime

            image = self.settings.container.image
            if await self._image_exists(runtime, image):
                return self._set(ReadinessStatus.READY, "Container runtime ready")

            await self._fetch_image(runtime, image)
            return self._set(ReadinessStatus.READY, "Container runtime ready")
        except Exception as exc:
            logger.error("Image readiness check failed", err=str(exc))
            return self._set(ReadinessStatus.ERROR, str(exc) or type(exc).__name__)

    async def _resolve_runtime(self) -> RuntimeProvider | None:
        try:
            runtime = await detect_runtime(self.settings, self.runtimes)
        except RuntimeUnavailableError as exc:
            self._set(ReadinessStatus.RUNTIME_UNAVAILABLE, f"{exc}. {_install_hint()}")
            return None

        availability = await check_runtime_availability(runtime)
        if availability.available:
            return runtime

        message = f"{runtime.name} is not installed. {_install_hint()}"
        if availability.installed:
            message = f"{runtime.name} is installed but not running."
            if availability.can_start:
                started, start_message = await start_runtime(runtime)
                logger.info("Runtime start attempted", runtime=runtime.name, ok=started)
                if started:
                    self._set(ReadinessStatus.CHECKING, start_message)
                    if await self._wait_until_running(runtime):
                        return runtime
                    message = f"{runtime.name} did not become ready in time."
                else:
                    message = start_message
            else:
                _, message = await start_runtime(runtime)

        fallback = await self._fallback_runtime(exclude=runtime.name)
        if fallback is not None:
            logger.info("Falling back to another runtime", requested=runtime.name, runtime=fallback.name)
            return fallback
        self._set(ReadinessStatus.RUNTIME_UNAVAILABLE, message)
        return None

    async def _wait_until_running(self, runtime: RuntimeProvider, poll: float = 2.0) -> bool:
        deadline = self.clock() + self.settings.readiness.runtime_start_wait
        while self.clock() < deadline:
            if await runtime.is_running():
                return True
            await asyncio.sleep(poll)
        return await runtime.is_running()

    async def _fallback_runtime(self, *, exclude: str) -> RuntimeProvider | None:
        for name, candidate in self.runtimes.items():
            if name == exclude:
                continue
            if (await check_runtime_availability(candidate)).available:
                return candidate
        return None

    async def _image_exists(self, runtime: RuntimeProvider, image: str) -> bool:
        result = await run_cli(runtime.cli, "image", "inspect", image, timeout=30)
        return result.ok

    async def _fetch_image(self, runtime: RuntimeProvider, image: str) -> None:
        self._last_progress_at = None
        build_context = self.settings.container.build_context
        timeout = self.settings.readiness.pull_timeout

        if build_context and Path(build_context).expanduser().is_dir():
            context = str(Path(build_context).expanduser())
            self._set(ReadinessStatus.PULLING_IMAGE, f"Building image {image}...")
            build = BuildProgressTracker()
            logger.info("Building agent image", image=image, context=context)
            code = await stream_cli(
                runtime.cli,
                "build",
                "-t",
                image,
                context,
                on_line=lambda line: self._progress("Building image...", build.feed(line)),
                timeout=timeout,
            )
            if code != 0:
                raise ImageError(f"Image build failed with exit code {code}")
            return

        self._set(ReadinessStatus.PULLING_IMAGE, f"Pulling image {image}...")
        pull = PullProgressTracker()
        logger.info("Pulling agent image", image=image)
        code = await stream_cli(
            runtime.cli,
            "pull",
            image,
            on_line=lambda line: self._progress("Pulling image...", pull.feed(line)),
            timeout=timeout,
        )
        if code != 0:
            raise ImageError(f"Image pull failed with exit code {code}")
