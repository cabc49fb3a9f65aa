"""Host-side lifecycle control for per-agent containers.

The manager owns one ``ContainerClient`` per agent and a cached
``ContainerRecord`` of what the runtime last said about it. The cache is
best-effort: it is refreshed by a periodic full sync, by an on-demand sync
whenever a client fails to reach its container, and after every start or
stop. Anything consequential (``ensure_running``) falls back to the runtime
when the cache says stopped.

Sync results carry a stamp taken when the sync *started*; a slow sync that
began before a newer one finished is discarded instead of overwriting it.
"""

from __future__ import annotations

import asyncio
import itertools
import json
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import Any, Protocol

from agentdock.config import Settings
from agentdock.event_bus import AgentStatusChanged, EventBus, HealthWarnings
from agentdock.host.container_client import ContainerClient
from agentdock.host.health import HealthMonitor, warning_signature
from agentdock.host.readiness import ImageReadiness
from agentdock.logger import logger
from agentdock.runtime import RuntimeProvider
from agentdock.types import AgentSpec, ContainerRecord, RuntimeReadiness
from agentdock.utils import create_background_task

# ---------------------------------------------------------------------------
# Collaborators (owned by the embedding application)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LinkedAccount:
    id: str
    toolkit: str
    name: str
    status: str = "active"


class AgentStore(Protocol):
    def get_agent(self, slug: str) -> AgentSpec | None: ...


class AccountStore(Protocol):
    async def list_accounts(self, agent_slug: str) -> list[LinkedAccount]: ...


class SessionStatusStore(Protocol):
    async def mark_sessions_inactive(self, agent_slug: str) -> None: ...


type ClientFactory = Callable[..., ContainerClient]


class ContainerLifecycleManager:
    def __init__(
        self,
        settings: Settings,
        runtime: RuntimeProvider,
        *,
        bus: EventBus | None = None,
        health: HealthMonitor | None = None,
        readiness: ImageReadiness | None = None,
        agents: AgentStore | None = None,
        accounts: AccountStore | None = None,
        session_status: SessionStatusStore | None = None,
        client_factory: ClientFactory = ContainerClient,
    ) -> None:
        self.settings = settings
        self.runtime = runtime
        self.bus = bus or EventBus()
        self.health = health or HealthMonitor.from_config(settings.health)
        self.readiness = readiness
        self.agents = agents
        self.accounts = accounts
        self.session_status = session_status
        self._client_factory = client_factory
        self._clients: dict[str, ContainerClient] = {}
        self._records: dict[str, ContainerRecord] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._signatures: dict[str, frozenset[tuple[str, str]]] = {}
        self._stamps = itertools.count(1)
        self._loops: list[asyncio.Task[None]] = []

    # ------------------------------------------------------------------
    # Clients and cache
    # ------------------------------------------------------------------

    def _agent_spec(self, agent_id: str) -> AgentSpec:
        spec = self.agents.get_agent(agent_id) if self.agents is not None else None
        return spec or AgentSpec(slug=agent_id)

    def get_client(self, agent_id: str) -> ContainerClient:
        client = self._clients.get(agent_id)
        if client is None:
            client = self._client_factory(
                self._agent_spec(agent_id),
                self.runtime,
                self.settings,
                on_connection_error=self._on_connection_error,
            )
            self._clients[agent_id] = client
        return client

    async def remove_client(self, agent_id: str) -> None:
        client = self._clients.pop(agent_id, None)
        self._records.pop(agent_id, None)
        self._signatures.pop(agent_id, None)
        if client is not None:
            await client.close()

    def _lock(self, agent_id: str) -> asyncio.Lock:
        return self._locks.setdefault(agent_id, asyncio.Lock())

    def get_cached_info(self, agent_id: str) -> ContainerRecord:
        return self._records.get(agent_id) or ContainerRecord()

    def is_cached_running(self, agent_id: str) -> bool:
        return self.get_cached_info(agent_id).status == "running"

    def get_running_agent_ids(self) -> list[str]:
        return [a for a, r in self._records.items() if r.status == "running"]

    def has_running_agents(self) -> bool:
        return any(r.status == "running" for r in self._records.values())

    def _on_connection_error(self, agent_id: str) -> None:
        create_background_task(self.sync_agent_status(agent_id), name=f"sync-{agent_id}")

    # ------------------------------------------------------------------
    # Start / stop
    # ------------------------------------------------------------------

    async def _build_env(self, agent_id: str) -> dict[str, str]:
        """Environment for a new container: proxy credentials and account names.

        Raw third-party tokens never enter the container; it reaches those
        services through the proxy using the account ids listed here.
        """
        env: dict[str, str] = {"PROXY_BASE_URL": self.settings.proxy.host_url}
        if self.settings.proxy.token is not None:
            env["PROXY_TOKEN"] = self.settings.proxy.token.get_secret_value()

        if self.accounts is not None:
            by_toolkit: dict[str, list[dict[str, str]]] = {}
            try:
                accounts = await self.accounts.list_accounts(agent_id)
            except Exception as exc:
                logger.error("Failed to load linked accounts", agent_id=agent_id, err=str(exc))
                accounts = []
            for account in accounts:
                if account.status != "active":
                    continue
                by_toolkit.setdefault(account.toolkit.lower(), []).append(
                    {"id": account.id, "name": account.name}
                )
            for toolkit, entries in by_toolkit.items():
                env[f"CONNECTED_ACCOUNT_{toolkit.upper()}"] = json.dumps(entries)

        if self.settings.browser.host_passthrough:
            env["BROWSER_CDP_URL"] = self.settings.browser.cdp_url
        return env

    async def ensure_running(self, agent_id: str) -> ContainerClient:
        client = self.get_client(agent_id)
        if self.is_cached_running(agent_id):
            return client

        async with self._lock(agent_id):
            # The cache may be stale; the client re-checks the runtime before running
            if self.is_cached_running(agent_id):
                return client
            env = await self._build_env(agent_id)
            try:
                await client.start(env)
            finally:
                await self.sync_agent_status(agent_id)
        return client

    async def stop(self, agent_id: str) -> None:
        client = self.get_client(agent_id)
        async with self._lock(agent_id):
            try:
                await client.stop()
            finally:
                await self.sync_agent_status(agent_id)

    # ------------------------------------------------------------------
    # Status sync
    # ------------------------------------------------------------------

    async def sync_agent_status(self, agent_id: str) -> ContainerRecord:
        stamp = float(next(self._stamps))
        info = await self.get_client(agent_id).get_info()

        record = self._records.setdefault(agent_id, ContainerRecord())
        if stamp < record.last_synced_at:
            logger.debug("Discarding stale status sync", agent_id=agent_id)
            return record

        previous = record.status
        record.status = info.status
        record.port = info.port
        record.last_synced_at = stamp

        if previous != info.status:
            logger.info(
                "Container status changed", agent_id=agent_id, old=previous, new=info.status
            )
            self.bus.emit(AgentStatusChanged(agent_slug=agent_id, status=info.status))
            if info.status == "stopped":
                self._signatures.pop(agent_id, None)
                await self._mark_sessions_inactive(agent_id)
        return record

    async def _mark_sessions_inactive(self, agent_id: str) -> None:
        if self.session_status is None:
            return
        try:
            await self.session_status.mark_sessions_inactive(agent_id)
        except Exception as exc:
            logger.error("Failed to mark sessions inactive", agent_id=agent_id, err=str(exc))

    async def sync_all_statuses(self) -> None:
        agent_ids = list(self._clients)
        results = await asyncio.gather(
            *(self.sync_agent_status(a) for a in agent_ids), return_exceptions=True
        )
        for agent_id, result in zip(agent_ids, results, strict=True):
            if isinstance(result, BaseException):
                logger.error("Status sync failed", agent_id=agent_id, err=str(result))

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def run_health_checks(self) -> None:
        agent_ids = self.get_running_agent_ids()
        results = await asyncio.gather(
            *(self._check_agent_health(a) for a in agent_ids), return_exceptions=True
        )
        for agent_id, result in zip(agent_ids, results, strict=True):
            if isinstance(result, BaseException):
                logger.error("Health check failed", agent_id=agent_id, err=str(result))

    async def _check_agent_health(self, agent_id: str) -> None:
        stats = await self.get_client(agent_id).get_stats()
        if stats is None:
            return
        warnings = self.health.check_all(agent_id, stats)
        signature = warning_signature(warnings)
        if signature == self._signatures.get(agent_id, frozenset()):
            return
        self._signatures[agent_id] = signature
        if warnings:
            logger.warning(
                "Container health warnings",
                agent_id=agent_id,
                checks=sorted(name for name, _ in signature),
            )
        self.bus.emit(HealthWarnings(agent_slug=agent_id, warnings=warnings))

    # ------------------------------------------------------------------
    # Image readiness
    # ------------------------------------------------------------------

    async def ensure_image_ready(self) -> RuntimeReadiness | None:
        if self.readiness is None:
            return None
        state = await self.readiness.ensure_image_ready()
        selected = self.readiness.runtime
        if selected is not None and selected is not self.runtime:
            logger.info("Switching container runtime", old=self.runtime.name, new=selected.name)
            self.runtime = selected
            for agent_id in [a for a in self._clients if not self.is_cached_running(a)]:
                await self.remove_client(agent_id)
        return state

    # ------------------------------------------------------------------
    # Background loops
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._loops:
            return
        intervals = self.settings.intervals
        self._loops = [
            create_background_task(
                self._periodic(intervals.status_sync, self.sync_all_statuses, "status sync"),
                name="container-status-sync",
            ),
            create_background_task(
                self._periodic(intervals.health_check, self.run_health_checks, "health check"),
                name="container-health-check",
            ),
        ]
        logger.info(
            "Container manager started",
            status_sync=intervals.status_sync,
            health_check=intervals.health_check,
        )

    async def _periodic(
        self,
        interval: float,
        job: Callable[[], Coroutine[Any, Any, None]],
        label: str,
    ) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await job()
            except Exception:
                logger.exception("Periodic job failed", job=label)

    async def stop_all(self) -> None:
        for task in self._loops:
            task.cancel()
        await asyncio.gather(*self._loops, return_exceptions=True)
        self._loops = []

        agent_ids = list(self._clients)
        results = await asyncio.gather(
            *(self._clients[a].stop() for a in agent_ids), return_exceptions=True
        )
        for agent_id, result in zip(agent_ids, results, strict=True):
            if isinstance(result, BaseException):
                logger.error("Failed to stop container", agent_id=agent_id, err=str(result))
        for agent_id in agent_ids:
            await self.remove_client(agent_id)
