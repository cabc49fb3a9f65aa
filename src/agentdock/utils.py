"""Shared utility functions.

Small helpers used across the host and agent sides: fire-and-forget tasks
that still log their failures, atomic JSON writes, JSONL appends and reads.
"""

from __future__ import annotations

import asyncio
import json
import os
from collections.abc import Coroutine
from pathlib import Path
from typing import Any

from agentdock.logger import logger

# The event loop only keeps weak references to tasks
_background_tasks: set[asyncio.Task[Any]] = set()


def create_background_task(
    coro: Coroutine[Any, Any, Any],
    *,
    name: str | None = None,
) -> asyncio.Task[Any]:
    """Schedule ``coro`` without awaiting it; failures end up in the log.

    Used for container stops after fatal errors, stream recovery and
    workload restarts, where nobody waits on the outcome.
    """
    task = asyncio.create_task(coro, name=name)
    _background_tasks.add(task)
    task.add_done_callback(_on_background_done)
    return task


def _on_background_done(task: asyncio.Task[Any]) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        # Done-callbacks run outside an except block, so pass exc_info explicitly
        logger.error("Background task failed", task_name=task.get_name(), exc_info=exc)


def write_json_atomic(path: Path, data: Any, *, indent: int | None = None) -> None:
    """Replace ``path`` with ``data`` as JSON; readers never see a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f"{path.name}.tmp")
    tmp.write_text(json.dumps(data, indent=indent), encoding="utf-8")
    os.replace(tmp, path)


def append_jsonl(path: Path, record: Any) -> None:
    """Append one JSON record as a single line."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as f:
        f.write(json.dumps(record) + "\n")


def read_jsonl_file(path: Path) -> list[dict[str, Any]]:
    """Read a JSONL file, skipping blank and malformed lines.

    A single corrupt line (e.g. a partial write during a crash) must not make
    the whole conversation unreadable.
    """
    if not path.exists():
        return []
    records: list[dict[str, Any]] = []
    for lineno, line in enumerate(path.read_text(encoding="utf-8").splitlines(), 1):
        if not line.strip():
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("Skipping malformed JSONL line", path=str(path), line=lineno)
            continue
        if isinstance(record, dict):
            records.append(record)
    return records
