"""agentdock: run AI agents in per-agent containers and talk to them over a stream."""

__version__ = "0.1.0"
