"""
Backup schedule computations on top of APScheduler's CronTrigger.

Due times are always anchored on the last *successful* run so that a failed
attempt never shifts the schedule forward.
"""

from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Optional

from apscheduler.triggers.cron import CronTrigger

from .errors import ConfigurationError

LOOKBACK_START = timedelta(minutes=1)


@lru_cache(maxsize=256)
def _trigger(expression: str) -> CronTrigger:
    try:
        return CronTrigger.from_crontab(expression, timezone=timezone.utc)
    except ValueError as e:
        raise ConfigurationError(f"Invalid schedule {expression!r}: {e}") from e


def validate_schedule(expression: str) -> None:
    _trigger(expression)


def next_fire_after(expression: str, after: datetime) -> datetime:
    """First fire time strictly later than ``after``."""
    trigger = _trigger(expression)
    start = after + timedelta(microseconds=1)
    return trigger.get_next_fire_time(None, start)


def next_due_time(
    expression: str,
    last_success: Optional[datetime],
    anchor: datetime,
) -> datetime:
    """
    Compute when the next backup is due.

    Args:
        expression: 5-field cron expression
        last_success: Scheduled time of the last succeeded run, if any
        anchor: Fallback reference (resource creation) when nothing succeeded

    Returns:
        The first fire time after the last success (or at/after the anchor)
    """
    if last_success is not None:
        return next_fire_after(expression, last_success)
    return _trigger(expression).get_next_fire_time(None, anchor)


def latest_slot(expression: str, due: datetime, now: datetime) -> Optional[datetime]:
    """
    Most recent fire time in ``[due, now]``.

    Missed slots are coalesced into the latest one. Returns None when
    ``due`` is still in the future.
    """
    if due > now:
        return None
    trigger = _trigger(expression)

    # Widen a window back from now until it holds a fire time
    window = LOOKBACK_START
    while True:
        slot = trigger.get_next_fire_time(None, max(due, now - window))
        if slot is not None and slot <= now:
            break
        window *= 2

    while True:
        following = trigger.get_next_fire_time(None, slot + timedelta(microseconds=1))
        if following is None or following > now:
            return slot
        slot = following
