"""Tests for the in-container control API."""

from __future__ import annotations

import asyncio

import pytest
from aiohttp.test_utils import TestClient, TestServer
from conftest import agent_settings

from agentdock.agent.config_store import ConfigStore
from agentdock.agent.input_bridge import InputBridge
from agentdock.agent.server import build_app
from agentdock.agent.workload_supervisor import WorkloadProcessSupervisor
from agentdock.config import WorkloadConfig


@pytest.fixture
async def client(tmp_path, monkeypatch):
    monkeypatch.setenv("FAKE_AGENT_SESSION_ID", "canon-1")
    monkeypatch.setenv("FAKE_AGENT_MODE", "echo")
    settings = agent_settings(tmp_path)
    workloads_dir = tmp_path / "workloads"
    workloads_dir.mkdir()
    app = build_app(
        settings,
        config_store=ConfigStore(tmp_path / "config.env"),
        workloads=WorkloadProcessSupervisor(WorkloadConfig(workloads_dir=str(workloads_dir))),
    )
    test_client = TestClient(TestServer(app))
    await test_client.start_server()
    yield test_client
    await test_client.close()


async def _wait_for_result(client: TestClient, session_id: str, count: int = 1) -> list[dict]:
    for _ in range(250):
        resp = await client.get(f"/sessions/{session_id}/messages")
        messages = await resp.json()
        if sum(1 for m in messages if m["type"] == "result") >= count:
            return messages
        await asyncio.sleep(0.02)
    raise AssertionError("agent never produced a result")


class TestSessions:
    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status == 200
        data = await resp.json()
        assert data["status"] == "ok"
        assert data["sessions"] == 0

    async def test_create_requires_initial_message(self, client):
        resp = await client.post("/sessions", json={})
        assert resp.status == 400

    async def test_create_list_get_delete(self, client):
        resp = await client.post("/sessions", json={"initialMessage": "hello"})
        assert resp.status == 201
        created = await resp.json()
        assert created["id"] == "canon-1"
        assert created["state"] == "active"

        resp = await client.get("/sessions")
        assert [s["id"] for s in await resp.json()] == ["canon-1"]

        resp = await client.get("/sessions/canon-1")
        assert (await resp.json())["isRunning"] is True

        resp = await client.get("/sessions/canon-1/running")
        assert await resp.json() == {"running": True}

        resp = await client.delete("/sessions/canon-1")
        assert resp.status == 200
        resp = await client.delete("/sessions/canon-1")
        assert resp.status == 404

    async def test_send_message_and_read_log(self, client):
        await client.post("/sessions", json={"initialMessage": "hello"})
        await _wait_for_result(client, "canon-1")

        resp = await client.post("/sessions/canon-1/messages", json={"content": "again"})
        assert resp.status == 201
        messages = await _wait_for_result(client, "canon-1", count=2)
        texts = [
            m["message"]["content"][0]["text"] for m in messages if m["type"] == "assistant"
        ]
        assert texts == ["echo: hello", "echo: again"]

    async def test_unknown_session(self, client):
        assert (await client.get("/sessions/nope")).status == 404
        assert (await client.get("/sessions/nope/messages")).status == 404
        resp = await client.post("/sessions/nope/messages", json={"content": "hi"})
        assert resp.status == 404
        resp = await client.post("/sessions/nope/interrupt")
        assert await resp.json() == {"interrupted": False}

    async def test_send_requires_content(self, client):
        resp = await client.post("/sessions/canon-1/messages", json={})
        assert resp.status == 400


class TestStream:
    async def test_stream_frames_wrap_events(self, client):
        await client.post("/sessions", json={"initialMessage": "hello"})
        await _wait_for_result(client, "canon-1")

        ws = await client.ws_connect("/sessions/canon-1/stream")
        try:
            await ws.send_json({"content": "over the socket"})
            frames = []
            while True:
                frame = await asyncio.wait_for(ws.receive_json(), timeout=5.0)
                frames.append(frame)
                if frame["type"] == "result":
                    break
        finally:
            await ws.close()

        assert [f["type"] for f in frames] == ["user", "assistant", "result"]
        assert all(f["sessionId"] == "canon-1" for f in frames)
        assert frames[1]["content"]["message"]["content"][0]["text"] == "echo: over the socket"

    async def test_stream_unknown_session_reports_error(self, client):
        ws = await client.ws_connect("/sessions/nope/stream")
        frame = await asyncio.wait_for(ws.receive_json(), timeout=5.0)
        assert frame["type"] == "error"
        await ws.close()


class TestInputsAndConfig:
    async def test_config_rejects_bad_key(self, client):
        resp = await client.post("/config", json={"key": "not a key", "value": "x"})
        assert resp.status == 400
        resp = await client.post("/config", json={"key": "OK_KEY"})
        assert resp.status == 400

    async def test_config_persists_value(self, client, tmp_path):
        resp = await client.post("/config", json={"key": "API_KEY", "value": "s3cret"})
        assert resp.status == 200
        assert ConfigStore(tmp_path / "config.env").get("API_KEY") == "s3cret"

    async def test_resolve_unknown_is_404(self, client):
        resp = await client.post("/inputs/tu-x/resolve", json={"value": 1})
        assert resp.status == 404
        resp = await client.post("/inputs/tu-x/reject", json={})
        assert resp.status == 404

    async def test_tool_call_blocks_until_resolved(self, client):
        bridge: InputBridge = client.app["bridge"]

        async def _call():
            resp = await client.post(
                "/tools/request_file",
                json={"toolUseId": "tu-1", "arguments": {"description": "a CSV"}},
            )
            return await resp.json()

        call = asyncio.create_task(_call())
        for _ in range(200):
            if bridge.has_pending("tu-1"):
                break
            await asyncio.sleep(0.01)

        resp = await client.get("/inputs")
        pending = await resp.json()
        assert [p["toolUseId"] for p in pending] == ["tu-1"]
        assert pending[0]["kind"] == "file"

        resp = await client.post("/inputs/tu-1/resolve", json={"value": "/tmp/data.csv"})
        assert resp.status == 200

        result = await call
        assert result["content"][0]["text"] == "User uploaded file to: /tmp/data.csv"

    async def test_pre_tool_use_hook_sets_id(self, client):
        resp = await client.post("/hooks/pre-tool-use", json={"toolUseId": "tu-7"})
        assert resp.status == 200
        assert client.app["bridge"].consume_current_tool_use_id() == "tu-7"

        resp = await client.post("/hooks/pre-tool-use", json={})
        assert resp.status == 400


class TestWorkloads:
    async def test_invalid_slug(self, client):
        resp = await client.post("/workloads/Bad_Slug/start")
        assert resp.status == 400
        resp = await client.get("/workloads/Bad_Slug/logs")
        assert resp.status == 400

    async def test_missing_workload(self, client):
        resp = await client.post("/workloads/ghost/start")
        assert resp.status == 404

    async def test_list_empty(self, client):
        resp = await client.get("/workloads")
        assert await resp.json() == []
        resp = await client.post("/workloads/ghost/stop")
        assert await resp.json() == {"stopped": False}
