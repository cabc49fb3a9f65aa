"""Schedule expression validation for agent-requested tasks.

Two schedule types:

- ``at``    one-shot, natural language after the ``at`` keyword
            ("at now + 1 hour", "at tomorrow 9am")
- ``cron``  recurring, standard 5-field (or 6 with seconds) cron syntax
"""

from __future__ import annotations

from typing import Literal

from croniter import croniter

ScheduleType = Literal["at", "cron"]


def schedule_error(schedule_type: str, expression: str) -> str | None:
    """Return a user-facing error for an invalid schedule, or None if it is valid."""
    if schedule_type == "at":
        normalized = expression.strip().lower()
        if not normalized.startswith("at ") or len(normalized) <= 3:
            return (
                f"Invalid 'at' expression: \"{expression}\". Expected format: \"at <time>\", "
                'e.g., "at now + 1 hour" or "at tomorrow 9am"'
            )
        return None
    if schedule_type == "cron":
        if not croniter.is_valid(expression.strip()):
            return (
                f'Invalid cron expression: "{expression}". Expected 5-6 space-separated '
                'fields, e.g., "0 9 * * 1-5" (minute hour day-of-month month day-of-week)'
            )
        return None
    return f"Unknown schedule type: {schedule_type!r} (expected 'at' or 'cron')"
