"""Exception hierarchy for agentdock.

Errors local to one session never escape into the control plane; the
periodic loops and stream readers catch ``AgentDockError`` (and anything
else) per iteration and log it.
"""

from __future__ import annotations


class AgentDockError(Exception):
    """Base class for all agentdock errors."""


# -- Agent process -------------------------------------------------------------


class ProcessStartError(AgentDockError):
    """The agent process failed to spawn or died inside the readiness window."""


class ProcessNotReadyError(AgentDockError):
    """A message was sent to a process that is not running."""


# -- Sessions ------------------------------------------------------------------


class SessionNotFoundError(AgentDockError):
    """No in-memory session and nothing persisted to resume from."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class SessionStartTimeoutError(AgentDockError):
    """The agent never reported its canonical session id."""


# -- Pending input -------------------------------------------------------------


class InputTimeoutError(AgentDockError):
    """A pending input request was not answered in time."""


class InputRejectedError(AgentDockError):
    """The user declined a pending input request."""


class DuplicatePendingError(AgentDockError):
    """A pending request with the same tool-use id already exists."""


# -- Containers ----------------------------------------------------------------


class ContainerNotRunningError(AgentDockError):
    """The container is not running (or its port is unknown)."""


class ContainerStartError(AgentDockError):
    """The runtime refused to start the container."""


class ContainerConnectionError(AgentDockError):
    """The container's control API could not be reached."""


class RuntimeUnavailableError(AgentDockError):
    """No usable container runtime is installed and running."""


class ImageError(AgentDockError):
    """Pulling or building the agent image failed."""


# -- Workloads -----------------------------------------------------------------


class InvalidWorkloadSlugError(AgentDockError, ValueError):
    """Workload slug is malformed or escapes the workloads directory."""


class WorkloadExistsError(AgentDockError):
    """A workload with this slug already exists."""
