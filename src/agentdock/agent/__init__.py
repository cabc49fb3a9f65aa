"""In-container side: agent processes, sessions, pending input, workloads."""
