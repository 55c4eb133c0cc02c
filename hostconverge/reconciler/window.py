"""Maintenance windows for sensitive changes."""

from datetime import datetime
from typing import Optional

from croniter import croniter


def in_maintenance_window(schedule: Optional[str], current_time: datetime) -> bool:
    """
    True when `current_time` matches the cron expression, or when no
    schedule is set. An invalid expression never matches.
    """
    if not schedule:
        return True
    try:
        return croniter.match(schedule, current_time)
    except (ValueError, KeyError):
        return False
