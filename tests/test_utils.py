"""Tests for shared utility functions."""

from __future__ import annotations

import asyncio
import json

from agentdock.utils import (
    append_jsonl,
    create_background_task,
    read_jsonl_file,
    write_json_atomic,
)


class TestCreateBackgroundTask:
    async def test_returns_task_with_name(self):
        async def work():
            return 42

        task = create_background_task(work(), name="answer")
        assert task.get_name() == "answer"
        assert await task == 42

    async def test_failure_is_logged_not_raised(self):
        async def fail():
            raise RuntimeError("boom")

        task = create_background_task(fail(), name="failing")
        await asyncio.sleep(0.01)
        assert task.done()
        assert isinstance(task.exception(), RuntimeError)

    async def test_cancelled_task_is_quiet(self):
        task = create_background_task(asyncio.sleep(10), name="sleepy")
        task.cancel()
        await asyncio.sleep(0.01)
        assert task.cancelled()


class TestJsonFiles:
    def test_write_json_atomic_creates_parents(self, tmp_path):
        path = tmp_path / "a" / "b" / "meta.json"
        write_json_atomic(path, {"id": "s-1"})
        assert json.loads(path.read_text()) == {"id": "s-1"}
        assert not path.with_suffix(".json.tmp").exists()

    def test_jsonl_round_trip_skips_bad_lines(self, tmp_path):
        path = tmp_path / "log.jsonl"
        append_jsonl(path, {"type": "user"})
        with path.open("a") as f:
            f.write('{"type": "assis\n\n[1, 2]\n')
        append_jsonl(path, {"type": "result"})

        assert read_jsonl_file(path) == [{"type": "user"}, {"type": "result"}]

    def test_missing_file_reads_empty(self, tmp_path):
        assert read_jsonl_file(tmp_path / "nope.jsonl") == []
