"""Centralized configuration: Pydantic BaseSettings with TOML + dotenv sources.

Non-secret settings live in agentdock.toml. Secrets (proxy tokens) live in
.env. Environment variables override both using ``__`` as the nested
delimiter (e.g. ``PROXY__TOKEN``). Secrets use SecretStr for masking in logs.

Priority (highest wins): init args > env vars > .env > agentdock.toml

Components never reach for a global: the composition root calls
``get_settings()`` once and hands the object to constructors.

Usage::

    from agentdock.config import get_settings

    s = get_settings()
    print(s.container.image)
    print(s.intervals.status_sync)
"""

from __future__ import annotations

from functools import cached_property
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, SecretStr, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in agentdock.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models. Unknown keys are rejected."""

    model_config = {"extra": "forbid"}


class ContainerConfig(_StrictModel):
    runtime: Literal["docker", "podman"] | None = None  # None = auto-detect
    image: str = "ghcr.io/agentdock/agent-container:latest"
    name_prefix: str = "agentdock-"
    internal_port: int = 3000
    base_host_port: int = 3100
    memory_limit: str | None = "2g"
    cpu_limit: float | None = None
    build_context: str | None = None  # local agent-container source; None = pull only
    workspaces_dir: str = "~/.agentdock/workspaces"  # host side, one subdir per agent
    stop_timeout: int = 5  # seconds before the runtime escalates to SIGKILL
    healthy_timeout: float = 30.0

    @field_validator("internal_port", "base_host_port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not 0 < v < 65536:
            raise ValueError("port must be between 1 and 65535")
        return v


class SessionConfig(_StrictModel):
    agent_command: list[str] = ["claude"]
    base_working_dir: str = "/workspace"
    data_dir: str | None = None  # None = <base_working_dir>/.agentdock
    ready_window: float = 0.5  # process must survive this long after spawn
    session_id_timeout: float = 30.0
    stop_grace: float = 5.0
    default_context_window: int = 200_000


class InputConfig(_StrictModel):
    timeout: float = 300.0  # 5 minutes
    sweep_interval: float = 30.0


class IntervalsConfig(_StrictModel):
    status_sync: float = 300.0
    health_check: float = 30.0


class HealthConfig(_StrictModel):
    memory_warning_percent: float = 85.0
    memory_critical_percent: float = 95.0

    @field_validator("memory_warning_percent", "memory_critical_percent")
    @classmethod
    def validate_percent(cls, v: float) -> float:
        if not 0 < v <= 100:
            raise ValueError("percent thresholds must be in (0, 100]")
        return v


class WorkloadConfig(_StrictModel):
    workloads_dir: str = "/workspace/artifacts"
    base_port: int = 5000
    install_command: list[str] = ["bun", "install"]
    start_command: list[str] = ["bun", "run", "start"]
    settle_window: float = 1.5
    max_restarts: int = 3
    restart_window: float = 300.0
    restart_delay: float = 1.0
    stop_timeout: float = 5.0

    @field_validator("max_restarts")
    @classmethod
    def clamp_max_restarts(cls, v: int) -> int:
        return max(0, v)


class ReadinessConfig(_StrictModel):
    progress_throttle: float = 0.25
    pull_timeout: float = 1800.0
    runtime_start_wait: float = 60.0


class ProxyConfig(_StrictModel):
    """Credential proxy the containers talk to instead of holding raw API keys."""

    host_url: str = "http://host.docker.internal:47891"
    token: SecretStr | None = None


class BrowserConfig(_StrictModel):
    host_passthrough: bool = False
    cdp_url: str = "http://host.docker.internal:9222"


class ServerConfig(_StrictModel):
    host: str = "0.0.0.0"
    port: int = 3000


class LoggingConfig(_StrictModel):
    level: str = "INFO"
    format: Literal["console", "json"] = "console"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="agentdock.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    container: ContainerConfig = ContainerConfig()
    session: SessionConfig = SessionConfig()
    input: InputConfig = InputConfig()
    intervals: IntervalsConfig = IntervalsConfig()
    health: HealthConfig = HealthConfig()
    workload: WorkloadConfig = WorkloadConfig()
    readiness: ReadinessConfig = ReadinessConfig()
    proxy: ProxyConfig = ProxyConfig()
    browser: BrowserConfig = BrowserConfig()
    server: ServerConfig = ServerConfig()
    logging: LoggingConfig = LoggingConfig()
    plugins: dict[str, bool] = {}  # plugin name -> enabled

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > agentdock.toml > file secrets."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    # --- Computed properties ---

    @cached_property
    def data_dir(self) -> Path:
        if self.session.data_dir:
            return Path(self.session.data_dir)
        return Path(self.session.base_working_dir) / ".agentdock"

    @cached_property
    def workloads_dir(self) -> Path:
        return Path(self.workload.workloads_dir)


_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cache. Sources are read on the first call only."""
    global _settings  # noqa: PLW0603
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next call re-reads all sources."""
    global _settings  # noqa: PLW0603
    _settings = None
