"""Data models for agentdock."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal

ContainerStatus = Literal["running", "stopped"]
HealthStatus = Literal["ok", "warning", "critical"]
InputKind = Literal["secret", "connected_account", "file", "question", "remote_mcp"]


@dataclass
class AgentSpec:
    """An agent identity as handed over by the external agent store."""

    slug: str
    working_directory: str | None = None
    model: str | None = None
    memory_limit: str | None = None  # e.g. "2g"; None = settings default
    cpu_limit: float | None = None
    secret_names: list[str] = field(default_factory=list)


@dataclass
class ContainerRecord:
    """Cached view of a container's real-world state.

    ``last_synced_at`` is a monotonically increasing sync stamp, not a wall
    clock. A sync that started earlier never overwrites a newer result.
    """

    status: ContainerStatus = "stopped"
    port: int | None = None
    last_synced_at: float = 0.0


@dataclass(frozen=True)
class ContainerInfo:
    """Ground truth returned by the container runtime."""

    status: ContainerStatus
    port: int | None = None


@dataclass(frozen=True)
class ContainerStats:
    memory_usage_bytes: int
    memory_limit_bytes: int
    memory_percent: float
    cpu_percent: float


@dataclass(frozen=True)
class HealthCheckResult:
    check_name: str
    status: HealthStatus
    message: str | None = None
    details: dict[str, Any] | None = None


class SessionState(StrEnum):
    UNCREATED = "uncreated"
    STARTING = "starting"
    ACTIVE = "active"
    DORMANT = "dormant"
    DELETED = "deleted"


@dataclass
class SessionOptions:
    """Per-session options supplied by the caller of ``create_session``."""

    working_directory: str | None = None
    system_prompt: str | None = None
    available_env_vars: list[str] = field(default_factory=list)
    model: str | None = None
    max_turns: int | None = None
    env: dict[str, str] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class SessionInfo:
    id: str
    working_directory: str
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_activity: datetime = field(default_factory=lambda: datetime.now(UTC))
    canonical_id: str | None = None
    resumed_from: str | None = None
    state: SessionState = SessionState.UNCREATED

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workingDirectory": self.working_directory,
            "createdAt": self.created_at.isoformat(),
            "lastActivity": self.last_activity.isoformat(),
            "resumedFrom": self.resumed_from,
            "state": str(self.state),
        }


@dataclass
class SessionUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0
    context_window: int = 200_000


@dataclass(frozen=True)
class ImagePullProgress:
    status: str  # human readable, e.g. "3 of 7 layers"
    percent: int | None  # None until the layer count is known (always None for builds)
    completed_layers: int = 0
    total_layers: int = 0


class ReadinessStatus(StrEnum):
    CHECKING = "CHECKING"
    RUNTIME_UNAVAILABLE = "RUNTIME_UNAVAILABLE"
    PULLING_IMAGE = "PULLING_IMAGE"
    READY = "READY"
    ERROR = "ERROR"


@dataclass(frozen=True)
class RuntimeReadiness:
    status: ReadinessStatus
    message: str
    pull_progress: ImagePullProgress | None = None
