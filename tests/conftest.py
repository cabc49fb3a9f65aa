"""Shared test fixtures for agentdock."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

FAKE_AGENT = Path(__file__).parent / "fake_agent.py"

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, not fixtures, importable by test files)
# ---------------------------------------------------------------------------

# Cached property names that must be set via __dict__ (not model_construct).
_CACHED_PROPERTY_NAMES = frozenset({"data_dir", "workloads_dir"})


def make_settings(**overrides):
    """Create a Settings object with sensible defaults for testing.

    Accepts both model fields (container, session, etc.) and cached property
    overrides (data_dir, workloads_dir).

    Usage::

        s = make_settings(data_dir=tmp_path)
        s = make_settings(session=SessionConfig(ready_window=0.1))
    """
    from agentdock.config import (
        BrowserConfig,
        ContainerConfig,
        HealthConfig,
        InputConfig,
        IntervalsConfig,
        LoggingConfig,
        ProxyConfig,
        ReadinessConfig,
        ServerConfig,
        SessionConfig,
        Settings,
        WorkloadConfig,
    )

    cached = {k: overrides.pop(k) for k in list(overrides) if k in _CACHED_PROPERTY_NAMES}

    defaults = {
        "container": ContainerConfig(),
        "session": SessionConfig(),
        "input": InputConfig(),
        "intervals": IntervalsConfig(),
        "health": HealthConfig(),
        "workload": WorkloadConfig(),
        "readiness": ReadinessConfig(),
        "proxy": ProxyConfig(),
        "browser": BrowserConfig(),
        "server": ServerConfig(),
        "logging": LoggingConfig(),
        "plugins": {},
    }
    defaults.update(overrides)
    s = Settings.model_construct(**defaults)

    for key, value in cached.items():
        s.__dict__[key] = value

    return s


def fake_agent_command() -> list[str]:
    """Command line for the scripted stand-in agent (see fake_agent.py)."""
    return [sys.executable, str(FAKE_AGENT)]


def agent_settings(tmp_path: Path, **session_overrides):
    """Settings wired to the fake agent with short timeouts."""
    from agentdock.config import SessionConfig

    fields = {
        "agent_command": fake_agent_command(),
        "base_working_dir": str(tmp_path),
        "ready_window": 0.2,
        "session_id_timeout": 5.0,
        "stop_grace": 2.0,
    }
    fields.update(session_overrides)
    return make_settings(session=SessionConfig(**fields), data_dir=tmp_path / ".agentdock")


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch):
    """Ensure each test starts with a clean Settings singleton.

    Uses ``make_settings()`` to build from pure defaults: no agentdock.toml,
    no .env, no file I/O. Tests are fully isolated from production config.
    """
    safe = make_settings()
    monkeypatch.setattr("agentdock.config._settings", safe)
