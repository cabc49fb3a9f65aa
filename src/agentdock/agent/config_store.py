"""In-container configuration store backed by a ``.env`` file.

The host pushes typed ``{key, value}`` updates (a secret the user just typed,
linked-account metadata) over the control API. Each update is written to disk
before the caller resolves the pending request that asked for it, so a
freshly spawned agent process always sees it in its environment.
"""

from __future__ import annotations

import re
from pathlib import Path

import dotenv

from agentdock.logger import logger

_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class ConfigStore:
    def __init__(self, path: Path) -> None:
        self.path = path

    @staticmethod
    def validate_key(key: str) -> str:
        if not _KEY_RE.match(key):
            raise ValueError(f"Invalid config key: {key!r}")
        return key

    def set(self, key: str, value: str) -> None:
        self.validate_key(key)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.touch(exist_ok=True)
        dotenv.set_key(str(self.path), key, value)
        # Never log the value; these are secrets more often than not
        logger.info("Config value stored", key=key)

    def get(self, key: str) -> str | None:
        return self.as_env().get(key)

    def has(self, key: str) -> bool:
        return key in self.as_env()

    def as_env(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        return {k: v for k, v in dotenv.dotenv_values(self.path).items() if v is not None}
