"""In-container control API (aiohttp).

The host talks to a container exclusively through this server:

    GET    /health
    POST   /sessions                      create (201)
    GET    /sessions                      list
    GET    /sessions/{id}                 info (resumes a dormant session)
    DELETE /sessions/{id}
    GET    /sessions/{id}/messages        persisted event log
    POST   /sessions/{id}/messages        send a user turn
    POST   /sessions/{id}/interrupt
    GET    /sessions/{id}/running
    GET    /sessions/{id}/stream          WebSocket, one frame per stream event
    POST   /inputs/{tool_use_id}/resolve  answer a pending input request
    POST   /inputs/{tool_use_id}/reject
    GET    /inputs                        pending input requests
    POST   /config                        persist a {key, value} pair
    POST   /hooks/pre-tool-use            record the tool_use_id about to run
    POST   /tools/{name}                  invoke a user-input tool handler
    GET    /workloads                     workload servers
    POST   /workloads/{slug}/start|stop
    GET    /workloads/{slug}/logs
"""

from __future__ import annotations

import asyncio
import contextlib
import json
from datetime import UTC, datetime
from typing import Any

from aiohttp import WSMsgType, web

from agentdock.agent.config_store import ConfigStore
from agentdock.agent.input_bridge import InputBridge
from agentdock.agent.input_tools import UserInputTools
from agentdock.agent.session_engine import AgentSessionEngine
from agentdock.agent.workload_supervisor import WorkloadProcessSupervisor
from agentdock.config import Settings
from agentdock.errors import (
    InvalidWorkloadSlugError,
    ProcessNotReadyError,
    ProcessStartError,
    SessionNotFoundError,
    SessionStartTimeoutError,
)
from agentdock.logger import logger
from agentdock.types import SessionOptions

# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"error": message}, status=status)


async def _json_body(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except json.JSONDecodeError:
        return {}
    return body if isinstance(body, dict) else {}


def _engine(request: web.Request) -> AgentSessionEngine:
    return request.app["engine"]


def _bridge(request: web.Request) -> InputBridge:
    return request.app["bridge"]


def _content_text(content: Any) -> str:
    return content if isinstance(content, str) else json.dumps(content)


# ------------------------------------------------------------------
# Sessions
# ------------------------------------------------------------------


async def _handle_health(request: web.Request) -> web.Response:
    engine = _engine(request)
    return web.json_response(
        {
            "status": "ok",
            "timestamp": datetime.now(UTC).isoformat(),
            "sessions": len(engine.list_sessions()),
            "pendingInputs": len(_bridge(request).list_pending()),
        }
    )


async def _handle_create_session(request: web.Request) -> web.Response:
    body = await _json_body(request)
    initial_message = body.get("initialMessage")
    if not initial_message:
        return _error("initialMessage required", 400)
    options = SessionOptions(
        working_directory=body.get("workingDirectory"),
        system_prompt=body.get("systemPrompt"),
        available_env_vars=list(body.get("availableEnvVars") or []),
        model=body.get("model"),
        max_turns=body.get("maxTurns"),
    )
    try:
        info = await _engine(request).create_session(_content_text(initial_message), options)
    except SessionStartTimeoutError as exc:
        return _error(str(exc), 504)
    except ProcessStartError as exc:
        logger.error("Error creating session", err=str(exc))
        return _error(str(exc), 500)
    return web.json_response(info.to_dict(), status=201)


async def _handle_list_sessions(request: web.Request) -> web.Response:
    return web.json_response([info.to_dict() for info in _engine(request).list_sessions()])


async def _handle_get_session(request: web.Request) -> web.Response:
    engine = _engine(request)
    session_id = request.match_info["id"]
    try:
        info = await engine.get_session(session_id)
    except SessionNotFoundError:
        return _error("Session not found", 404)
    except ProcessStartError as exc:
        return _error(str(exc), 500)
    return web.json_response({**info.to_dict(), "isRunning": engine.is_running(session_id)})


async def _handle_delete_session(request: web.Request) -> web.Response:
    if not await _engine(request).delete_session(request.match_info["id"]):
        return _error("Session not found", 404)
    return web.json_response({"success": True})


async def _handle_get_messages(request: web.Request) -> web.Response:
    try:
        messages = _engine(request).get_messages(request.match_info["id"])
    except SessionNotFoundError:
        return _error("Session not found", 404)
    return web.json_response(messages)


async def _handle_send_message(request: web.Request) -> web.Response:
    body = await _json_body(request)
    if "content" not in body:
        return _error("content required", 400)
    try:
        await _engine(request).send_message(request.match_info["id"], _content_text(body["content"]))
    except SessionNotFoundError:
        return _error("Session not found", 404)
    except (ProcessStartError, ProcessNotReadyError) as exc:
        logger.error("Error sending message", session_id=request.match_info["id"], err=str(exc))
        return _error(str(exc), 500)
    return web.json_response({"success": True}, status=201)


async def _handle_interrupt(request: web.Request) -> web.Response:
    interrupted = await _engine(request).interrupt(request.match_info["id"])
    return web.json_response({"interrupted": interrupted})


async def _handle_running(request: web.Request) -> web.Response:
    return web.json_response({"running": _engine(request).is_running(request.match_info["id"])})


async def _handle_stream(request: web.Request) -> web.WebSocketResponse:
    engine = _engine(request)
    session_id = request.match_info["id"]
    ws = web.WebSocketResponse()
    await ws.prepare(request)

    if not engine.is_running(session_id) and engine.store.get(session_id) is None:
        await ws.send_json({"type": "error", "content": {"message": "Session not found"}})
        await ws.close()
        return ws

    queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
    unsubscribe = engine.subscribe(session_id, queue.put_nowait)

    async def _pump() -> None:
        while True:
            notice = await queue.get()
            await ws.send_json(
                {
                    "type": notice.get("type"),
                    "content": notice,
                    "timestamp": datetime.now(UTC).isoformat(),
                    "sessionId": session_id,
                }
            )

    pump = asyncio.create_task(_pump())
    logger.info("Stream connected", session_id=session_id)
    try:
        async for msg in ws:
            if msg.type != WSMsgType.TEXT:
                continue
            # Clients may also send turns over the socket
            try:
                payload = json.loads(msg.data)
                await engine.send_message(session_id, _content_text(payload.get("content")))
            except Exception as exc:
                logger.warning("Stream message rejected", session_id=session_id, err=str(exc))
                await ws.send_json({"type": "error", "content": {"message": str(exc)}})
    finally:
        unsubscribe()
        pump.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await pump
        logger.info("Stream closed", session_id=session_id)
    return ws


# ------------------------------------------------------------------
# Pending input, config, tools
# ------------------------------------------------------------------


async def _handle_resolve_input(request: web.Request) -> web.Response:
    body = await _json_body(request)
    if not _bridge(request).resolve(request.match_info["tool_use_id"], body.get("value")):
        return _error("No pending request", 404)
    return web.json_response({"success": True})


async def _handle_reject_input(request: web.Request) -> web.Response:
    body = await _json_body(request)
    reason = body.get("reason") or "User declined"
    if not _bridge(request).reject(request.match_info["tool_use_id"], reason):
        return _error("No pending request", 404)
    return web.json_response({"success": True})


async def _handle_list_inputs(request: web.Request) -> web.Response:
    return web.json_response([p.summary() for p in _bridge(request).list_pending()])


async def _handle_config(request: web.Request) -> web.Response:
    body = await _json_body(request)
    key, value = body.get("key"), body.get("value")
    if not isinstance(key, str) or value is None:
        return _error("key and value required", 400)
    store: ConfigStore = request.app["config_store"]
    try:
        store.set(key, value if isinstance(value, str) else json.dumps(value))
    except ValueError as exc:
        return _error(str(exc), 400)
    return web.json_response({"success": True})


async def _handle_pre_tool_use(request: web.Request) -> web.Response:
    body = await _json_body(request)
    tool_use_id = body.get("toolUseId")
    if not tool_use_id:
        return _error("toolUseId required", 400)
    _bridge(request).set_current_tool_use_id(tool_use_id)
    return web.json_response({"success": True})


async def _handle_tool_call(request: web.Request) -> web.Response:
    body = await _json_body(request)
    tools: UserInputTools = request.app["tools"]
    if body.get("toolUseId"):
        _bridge(request).set_current_tool_use_id(body["toolUseId"])
    result = await tools.call(request.match_info["name"], body.get("arguments") or {})
    return web.json_response(result)


# ------------------------------------------------------------------
# Workloads
# ------------------------------------------------------------------


def _supervisor(request: web.Request) -> WorkloadProcessSupervisor:
    return request.app["workloads"]


async def _handle_list_workloads(request: web.Request) -> web.Response:
    return web.json_response([w.to_dict() for w in _supervisor(request).list_workloads()])


async def _handle_start_workload(request: web.Request) -> web.Response:
    try:
        workload = await _supervisor(request).start(request.match_info["slug"])
    except InvalidWorkloadSlugError as exc:
        return _error(str(exc), 400)
    except FileNotFoundError as exc:
        return _error(str(exc), 404)
    return web.json_response(workload.to_dict())


async def _handle_stop_workload(request: web.Request) -> web.Response:
    stopped = await _supervisor(request).stop(request.match_info["slug"])
    return web.json_response({"stopped": stopped})


async def _handle_workload_logs(request: web.Request) -> web.Response:
    clear = request.query.get("clear", "").lower() in ("1", "true", "yes")
    try:
        logs = _supervisor(request).read_logs(request.match_info["slug"], clear=clear)
    except InvalidWorkloadSlugError as exc:
        return _error(str(exc), 400)
    return web.json_response({"logs": logs})


# ------------------------------------------------------------------
# App setup
# ------------------------------------------------------------------


def build_app(
    settings: Settings,
    *,
    engine: AgentSessionEngine | None = None,
    bridge: InputBridge | None = None,
    config_store: ConfigStore | None = None,
    workloads: WorkloadProcessSupervisor | None = None,
) -> web.Application:
    """Wire the in-container components and return the aiohttp application."""
    config_store = config_store or ConfigStore(settings.data_dir / ".env")
    bridge = bridge or InputBridge(
        timeout=settings.input.timeout, sweep_interval=settings.input.sweep_interval
    )
    engine = engine or AgentSessionEngine(settings, config_store=config_store)
    workloads = workloads or WorkloadProcessSupervisor(settings.workload)

    app = web.Application()
    app["settings"] = settings
    app["engine"] = engine
    app["bridge"] = bridge
    app["config_store"] = config_store
    app["tools"] = UserInputTools(bridge, config_store)
    app["workloads"] = workloads

    app.router.add_get("/health", _handle_health)
    app.router.add_post("/sessions", _handle_create_session)
    app.router.add_get("/sessions", _handle_list_sessions)
    app.router.add_get("/sessions/{id}", _handle_get_session)
    app.router.add_delete("/sessions/{id}", _handle_delete_session)
    app.router.add_get("/sessions/{id}/messages", _handle_get_messages)
    app.router.add_post("/sessions/{id}/messages", _handle_send_message)
    app.router.add_post("/sessions/{id}/interrupt", _handle_interrupt)
    app.router.add_get("/sessions/{id}/running", _handle_running)
    app.router.add_get("/sessions/{id}/stream", _handle_stream)
    app.router.add_get("/inputs", _handle_list_inputs)
    app.router.add_post("/inputs/{tool_use_id}/resolve", _handle_resolve_input)
    app.router.add_post("/inputs/{tool_use_id}/reject", _handle_reject_input)
    app.router.add_post("/config", _handle_config)
    app.router.add_post("/hooks/pre-tool-use", _handle_pre_tool_use)
    app.router.add_post("/tools/{name}", _handle_tool_call)
    app.router.add_get("/workloads", _handle_list_workloads)
    app.router.add_post("/workloads/{slug}/start", _handle_start_workload)
    app.router.add_post("/workloads/{slug}/stop", _handle_stop_workload)
    app.router.add_get("/workloads/{slug}/logs", _handle_workload_logs)

    app.on_startup.append(_on_startup)
    app.on_cleanup.append(_on_cleanup)
    return app


async def _on_startup(app: web.Application) -> None:
    app["bridge"].start_sweeper()


async def _on_cleanup(app: web.Application) -> None:
    bridge: InputBridge = app["bridge"]
    await bridge.stop_sweeper()
    bridge.reject_all("Server shutting down")
    await app["engine"].stop_all()
    await app["workloads"].stop_all()
    logger.info("Control server stopped")


async def start_server(settings: Settings) -> web.AppRunner:
    """Create, start, and return the control server runner."""
    app = build_app(settings)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, settings.server.host, settings.server.port)
    await site.start()
    logger.info("Control server listening", host=settings.server.host, port=settings.server.port)
    return runner
