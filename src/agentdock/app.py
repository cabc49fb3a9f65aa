"""Host composition root: wires the control plane together.

``build_host`` constructs every host-side component once and hands them to
each other by reference. The resulting :class:`AgentDockHost` is what an
embedding application (desktop shell, web server) talks to: it exposes the
conversation flow on top of the lifecycle manager and the stream reconciler.
"""

from __future__ import annotations

from typing import Any

import pluggy

from agentdock.config import Settings, get_settings
from agentdock.event_bus import EventBus, SessionChannel
from agentdock.host.container_client import ContainerClient
from agentdock.host.container_manager import (
    AccountStore,
    AgentStore,
    ContainerLifecycleManager,
    SessionStatusStore,
)
from agentdock.host.health import HealthMonitor
from agentdock.host.pending_requests import find_pending_requests
from agentdock.host.readiness import ImageReadiness
from agentdock.host.stream_reconciler import StreamReconciler
from agentdock.logger import bind_role, configure_logging, logger
from agentdock.plugin import get_plugin_manager
from agentdock.runtime import RuntimeProvider, collect_runtimes, detect_runtime
from agentdock.types import RuntimeReadiness


class AgentDockHost:
    """Owns the host-side components and the user-facing conversation flow."""

    def __init__(
        self,
        settings: Settings,
        *,
        pm: pluggy.PluginManager,
        runtimes: dict[str, RuntimeProvider],
        bus: EventBus,
        channel: SessionChannel,
        readiness: ImageReadiness,
        manager: ContainerLifecycleManager,
        reconciler: StreamReconciler,
    ) -> None:
        self.settings = settings
        self.pm = pm
        self.runtimes = runtimes
        self.bus = bus
        self.channel = channel
        self.readiness = readiness
        self.manager = manager
        self.reconciler = reconciler

    async def start(self) -> RuntimeReadiness | None:
        state = await self.manager.ensure_image_ready()
        self.manager.start()
        return state

    async def shutdown(self) -> None:
        logger.info("Shutting down host")
        self.reconciler.unsubscribe_all()
        await self.manager.stop_all()

    # ------------------------------------------------------------------
    # Conversation flow
    # ------------------------------------------------------------------

    async def create_session(
        self,
        agent_id: str,
        initial_message: str,
        *,
        system_prompt: str | None = None,
        available_env_vars: list[str] | None = None,
        model: str | None = None,
    ) -> dict[str, Any]:
        client = await self.manager.ensure_running(agent_id)
        session = await client.create_session(
            initial_message,
            system_prompt=system_prompt,
            available_env_vars=available_env_vars,
            model=model,
        )
        session_id = session["id"]
        self.reconciler.subscribe_to_session(session_id, client, session_id, agent_id)
        self.reconciler.mark_session_active(session_id, agent_id)
        return session

    async def _client_for_session(self, agent_id: str, session_id: str) -> ContainerClient:
        client = await self.manager.ensure_running(agent_id)
        if not self.reconciler.is_subscribed(session_id):
            self.reconciler.subscribe_to_session(session_id, client, session_id, agent_id)
        return client

    async def send_message(self, agent_id: str, session_id: str, content: str) -> None:
        client = await self._client_for_session(agent_id, session_id)
        self.reconciler.mark_session_active(session_id, agent_id)
        await client.send_message(session_id, content)

    async def interrupt(self, agent_id: str, session_id: str) -> bool:
        # Flag first so events already in flight are dropped
        self.reconciler.mark_session_interrupted(session_id)
        client = self.manager.get_client(agent_id)
        return await client.interrupt_session(session_id)

    async def provide_input(
        self,
        agent_id: str,
        tool_use_id: str,
        value: Any = None,
        *,
        config: dict[str, str] | None = None,
    ) -> bool:
        """Answer a pending request; configuration lands before the tool wakes."""
        client = self.manager.get_client(agent_id)
        for key, item in (config or {}).items():
            await client.set_config(key, item)
        return await client.resolve_input(tool_use_id, value)

    async def decline_input(
        self, agent_id: str, tool_use_id: str, reason: str = "User declined"
    ) -> bool:
        return await self.manager.get_client(agent_id).reject_input(tool_use_id, reason)

    async def pending_requests(self, agent_id: str, session_id: str) -> list[dict[str, Any]]:
        """Requests still waiting on a human, rebuilt from the session log."""
        client = await self.manager.ensure_running(agent_id)
        messages = await client.get_messages(session_id)
        return find_pending_requests(messages, agent_id)


async def build_host(
    settings: Settings | None = None,
    *,
    agents: AgentStore | None = None,
    accounts: AccountStore | None = None,
    session_status: SessionStatusStore | None = None,
) -> AgentDockHost:
    settings = settings or get_settings()
    configure_logging(settings.logging.level, settings.logging.format)
    bind_role("host")

    pm = get_plugin_manager(settings)
    runtimes = collect_runtimes(pm)
    runtime = await detect_runtime(settings, runtimes)
    logger.info("Container runtime selected", runtime=runtime.name, available=list(runtimes))

    bus = EventBus()
    channel = SessionChannel()
    readiness = ImageReadiness(settings, runtimes, bus)
    manager = ContainerLifecycleManager(
        settings,
        runtime,
        bus=bus,
        health=HealthMonitor.from_config(settings.health, pm),
        readiness=readiness,
        agents=agents,
        accounts=accounts,
        session_status=session_status,
    )
    reconciler = StreamReconciler(
        channel,
        default_context_window=settings.session.default_context_window,
        on_fatal=manager.stop,
    )
    return AgentDockHost(
        settings,
        pm=pm,
        runtimes=runtimes,
        bus=bus,
        channel=channel,
        readiness=readiness,
        manager=manager,
        reconciler=reconciler,
    )
