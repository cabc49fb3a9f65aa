"""Agent subprocess runner: spawn, line-delimited JSON I/O, graceful stop.

One ProcessRunner owns one native agent process for one session. The
process speaks the stream-json protocol on stdio: we write one user turn per
line to stdin and read one event per line from stdout.

    start()  -> spawn, start readers, survive the readiness window
    send()   -> write a user turn
    stop()   -> close stdin, SIGTERM, SIGKILL after the grace period

Listeners are plain callables invoked in arrival order from the stdout
reader task; each ``on_*`` registration returns an unsubscribe callable.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import uuid
from collections.abc import Callable
from typing import Any

from agentdock.errors import ProcessNotReadyError, ProcessStartError
from agentdock.logger import logger
from agentdock.protocol import SYSTEM_INIT, user_turn

MessageListener = Callable[[dict[str, Any]], None]
SessionIdListener = Callable[[str], None]
ExitListener = Callable[[int | None], None]

_READ_CHUNK = 8192
_STDERR_TAIL = 4000

PROTOCOL_FLAGS = (
    "--print",
    "--input-format",
    "stream-json",
    "--output-format",
    "stream-json",
    "--verbose",
    "--include-partial-messages",
)


def _subscribe(listeners: list[Any], callback: Any) -> Callable[[], None]:
    listeners.append(callback)

    def _unsubscribe() -> None:
        with contextlib.suppress(ValueError):
            listeners.remove(callback)

    return _unsubscribe


class ProcessRunner:
    """Owns one long-lived agent process speaking stream-json on stdio."""

    def __init__(
        self,
        session_id: str,
        working_directory: str,
        *,
        command: list[str],
        canonical_session_id: str | None = None,
        env: dict[str, str] | None = None,
        system_prompt: str | None = None,
        model: str | None = None,
        max_turns: int | None = None,
        ready_window: float = 0.5,
        stop_grace: float = 5.0,
    ) -> None:
        self.session_id = session_id
        self.working_directory = working_directory
        self.canonical_session_id = canonical_session_id
        self._command = list(command)
        self._env = env
        self._system_prompt = system_prompt
        self._model = model
        self._max_turns = max_turns
        self._ready_window = ready_window
        self._stop_grace = stop_grace

        self.proc: asyncio.subprocess.Process | None = None
        self._ready = False
        self._stopping = False
        self._session_id_emitted = False
        self._stdout_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._exit_task: asyncio.Task[None] | None = None
        self._stderr_tail = ""

        self._message_listeners: list[MessageListener] = []
        self._session_id_listeners: list[SessionIdListener] = []
        self._exit_listeners: list[ExitListener] = []

    # ------------------------------------------------------------------
    # Listener registration
    # ------------------------------------------------------------------

    def on_message(self, callback: MessageListener) -> Callable[[], None]:
        return _subscribe(self._message_listeners, callback)

    def on_session_id(self, callback: SessionIdListener) -> Callable[[], None]:
        return _subscribe(self._session_id_listeners, callback)

    def on_exit(self, callback: ExitListener) -> Callable[[], None]:
        return _subscribe(self._exit_listeners, callback)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def is_ready(self) -> bool:
        return self._ready

    @property
    def is_running(self) -> bool:
        return self._ready and self.proc is not None and self.proc.returncode is None

    @property
    def returncode(self) -> int | None:
        return self.proc.returncode if self.proc is not None else None

    def build_args(self) -> list[str]:
        args = [*self._command, *PROTOCOL_FLAGS]
        if self.canonical_session_id:
            args += ["--resume", self.canonical_session_id]
        if self._model:
            args += ["--model", self._model]
        if self._max_turns:
            args += ["--max-turns", str(self._max_turns)]
        if self._system_prompt:
            args += ["--append-system-prompt", self._system_prompt]
        return args

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Spawn the agent and wait out the readiness window.

        Raises ProcessStartError if the spawn fails or the process exits
        with a non-zero code before the window elapses.
        """
        if self.proc is not None:
            raise ProcessStartError(f"Session {self.session_id} process already started")

        args = self.build_args()
        logger.info(
            "Starting agent process",
            session_id=self.session_id,
            cwd=self.working_directory,
            resuming=self.canonical_session_id is not None,
        )
        try:
            self.proc = await asyncio.create_subprocess_exec(
                *args,
                cwd=self.working_directory,
                env=self._env,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ProcessStartError(f"Failed to spawn agent process: {exc}") from exc

        assert self.proc.stdout is not None
        assert self.proc.stderr is not None
        self._stdout_task = asyncio.create_task(self._read_stdout(self.proc.stdout))
        self._stderr_task = asyncio.create_task(self._read_stderr(self.proc.stderr))
        self._exit_task = asyncio.create_task(self._watch_exit())

        try:
            code = await asyncio.wait_for(asyncio.shield(self.proc.wait()), self._ready_window)
        except TimeoutError:
            self._ready = True
            logger.info("Agent process ready", session_id=self.session_id, pid=self.proc.pid)
            return

        if code != 0:
            # Let the stderr reader drain so the error carries the real cause
            with contextlib.suppress(Exception):
                await asyncio.wait_for(asyncio.shield(self._stderr_task), 1.0)
            raise ProcessStartError(
                f"Agent process exited with code {code} during startup: {self._stderr_tail[-200:]}"
            )
        logger.warning("Agent process exited cleanly during startup", session_id=self.session_id)

    async def send(self, text: str) -> None:
        """Write one user turn to the agent's stdin."""
        session_id = self.canonical_session_id or self.session_id
        await self._write_line(user_turn(text, session_id))
        logger.debug("Sent message", session_id=self.session_id, preview=text[:100])

    async def interrupt(self) -> bool:
        """Ask the agent to abort the current turn; the process keeps running."""
        if not self.is_running:
            logger.info("Nothing to interrupt", session_id=self.session_id)
            return False
        await self._write_line(
            {
                "type": "control_request",
                "request_id": uuid.uuid4().hex,
                "request": {"subtype": "interrupt"},
            }
        )
        logger.info("Interrupt requested", session_id=self.session_id)
        return True

    async def stop(self) -> None:
        """Graceful stop: close stdin → SIGTERM → SIGKILL after the grace period."""
        self._stopping = True
        self._ready = False
        proc = self.proc
        if proc is not None and proc.returncode is None:
            if proc.stdin is not None:
                with contextlib.suppress(OSError, RuntimeError):
                    proc.stdin.close()
            with contextlib.suppress(ProcessLookupError):
                proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=self._stop_grace)
            except TimeoutError:
                logger.warning(
                    "Agent process did not exit after SIGTERM, killing",
                    session_id=self.session_id,
                    grace=self._stop_grace,
                )
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                with contextlib.suppress(Exception):
                    await proc.wait()

        for task in (self._stdout_task, self._stderr_task, self._exit_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        logger.info("Agent process stopped", session_id=self.session_id)

    # ------------------------------------------------------------------
    # I/O
    # ------------------------------------------------------------------

    async def _write_line(self, payload: dict[str, Any]) -> None:
        proc = self.proc
        if not self._ready or proc is None or proc.stdin is None or proc.returncode is not None:
            raise ProcessNotReadyError(f"Agent process for session {self.session_id} is not running")
        try:
            proc.stdin.write((json.dumps(payload) + "\n").encode())
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            self._ready = False
            raise ProcessNotReadyError(f"Agent stdin closed: {exc}") from exc

    def _handle_line(self, raw_line: bytes) -> None:
        line = raw_line.decode(errors="replace").strip()
        if not line:
            return
        try:
            message = json.loads(line)
        except json.JSONDecodeError:
            logger.warning(
                "Dropping unparseable agent output line",
                session_id=self.session_id,
                line=line[:200],
            )
            return
        if not isinstance(message, dict):
            logger.warning("Dropping non-object agent output", session_id=self.session_id)
            return

        if (
            not self._session_id_emitted
            and message.get("type") == "system"
            and message.get("subtype") == SYSTEM_INIT
            and message.get("session_id")
        ):
            self._session_id_emitted = True
            self.canonical_session_id = message["session_id"]
            logger.info(
                "Captured canonical session id",
                session_id=self.session_id,
                canonical_id=self.canonical_session_id,
            )
            for cb in list(self._session_id_listeners):
                self._safe_dispatch(cb, self.canonical_session_id)

        for cb in list(self._message_listeners):
            self._safe_dispatch(cb, message)

    def _safe_dispatch(self, callback: Callable[[Any], None], value: Any) -> None:
        try:
            callback(value)
        except Exception as exc:
            logger.error(
                "Agent listener failed",
                session_id=self.session_id,
                error=str(exc),
            )

    async def _read_stdout(self, stream: asyncio.StreamReader) -> None:
        buffer = b""
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                if buffer:
                    self._handle_line(buffer)
                return
            buffer += chunk
            while b"\n" in buffer:
                line, buffer = buffer.split(b"\n", 1)
                self._handle_line(line)

    async def _read_stderr(self, stream: asyncio.StreamReader) -> None:
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                return
            text = chunk.decode(errors="replace")
            self._stderr_tail = (self._stderr_tail + text)[-_STDERR_TAIL:]
            for line in text.strip().splitlines():
                if line:
                    logger.debug(line, session_id=self.session_id, stream="stderr")

    async def _watch_exit(self) -> None:
        assert self.proc is not None
        code = await self.proc.wait()
        # Drain stdout so listeners see every line before the exit notice
        if self._stdout_task is not None:
            with contextlib.suppress(Exception):
                await self._stdout_task
        self._ready = False
        log = logger.info if code == 0 or self._stopping else logger.warning
        log("Agent process exited", session_id=self.session_id, code=code)
        for cb in list(self._exit_listeners):
            self._safe_dispatch(cb, code)
