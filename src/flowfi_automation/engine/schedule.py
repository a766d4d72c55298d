"""Trigger time arithmetic.

Every function takes `now` explicitly so callers (and tests) control the clock.
Fire times are always computed forward from `now`: missed occurrences are
skipped rather than replayed. Calendar schedules are expressed as APScheduler
cron and interval triggers; times of day are UTC.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from flowfi_automation.engine.models import (
    ConditionTrigger,
    EventTrigger,
    Frequency,
    ScheduledTrigger,
    TimeWindowTrigger,
    TriggerSpec,
)

_CADENCE_SECONDS: dict[Frequency, float] = {
    Frequency.HOURLY: 3600.0,
    Frequency.ONCE: 86400.0,
    Frequency.DAILY: 86400.0,
    Frequency.WEEKLY: 7 * 86400.0,
    Frequency.MONTHLY: 30 * 86400.0,
}


def parse_time_of_day(value: str) -> tuple[int, int]:
    hour_raw, minute_raw = value.split(":", 1)
    return int(hour_raw), int(minute_raw)


def schedule_trigger(trigger: ScheduledTrigger) -> BaseTrigger:
    """The APScheduler trigger for a schedule.

    Weekly schedules fire on Mondays and monthly schedules on the 1st, both at
    `time_of_day`; hourly schedules use only its minute.
    """

    if trigger.frequency is Frequency.CUSTOM:
        assert trigger.interval_seconds is not None
        return IntervalTrigger(seconds=trigger.interval_seconds, timezone=UTC)

    hour, minute = parse_time_of_day(trigger.time_of_day)
    if trigger.frequency is Frequency.HOURLY:
        return CronTrigger(minute=minute, second=0, timezone=UTC)
    if trigger.frequency is Frequency.WEEKLY:
        return CronTrigger(day_of_week="mon", hour=hour, minute=minute, second=0, timezone=UTC)
    if trigger.frequency is Frequency.MONTHLY:
        return CronTrigger(day=1, hour=hour, minute=minute, second=0, timezone=UTC)
    return CronTrigger(hour=hour, minute=minute, second=0, timezone=UTC)


def next_scheduled_fire(trigger: ScheduledTrigger, *, now: datetime) -> datetime:
    """Return the first occurrence of the schedule strictly after `now`."""

    # Passing `now` as the previous fire time makes both trigger types skip it.
    fires_at = schedule_trigger(trigger).get_next_fire_time(now, now)
    assert fires_at is not None
    return fires_at


def cadence_seconds(trigger: TriggerSpec, *, condition_poll_seconds: float) -> float | None:
    """The natural period of a trigger, used to cap retry backoff."""

    if isinstance(trigger, ScheduledTrigger):
        if trigger.frequency is Frequency.CUSTOM:
            return float(trigger.interval_seconds or 0) or None
        return _CADENCE_SECONDS[trigger.frequency]
    if isinstance(trigger, TimeWindowTrigger):
        return (trigger.end - trigger.start).total_seconds()
    if isinstance(trigger, ConditionTrigger):
        return trigger.poll_seconds or condition_poll_seconds
    return None


def retry_backoff(*, attempt: int, base_seconds: float, cap_seconds: float | None) -> timedelta:
    """Exponential backoff: base, 2*base, 4*base, ... capped at the cadence."""

    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    delay = base_seconds * (2 ** (attempt - 1))
    if cap_seconds is not None and cap_seconds > 0:
        delay = min(delay, cap_seconds)
    return timedelta(seconds=delay)


def initial_due_at(
    trigger: TriggerSpec, *, now: datetime, condition_poll_seconds: float
) -> datetime | None:
    """When a freshly armed trigger is next due.

    Returns None for a time window that has already closed.
    """

    if isinstance(trigger, ScheduledTrigger):
        return next_scheduled_fire(trigger, now=now)
    if isinstance(trigger, TimeWindowTrigger):
        if now >= trigger.end:
            return None
        return max(trigger.start, now)
    if isinstance(trigger, ConditionTrigger):
        return now + timedelta(seconds=trigger.poll_seconds or condition_poll_seconds)
    assert isinstance(trigger, EventTrigger)
    # Push triggers have no deadline; record when the listener was armed.
    return now


def due_after_success(
    trigger: TriggerSpec, *, now: datetime, condition_poll_seconds: float
) -> datetime | None:
    """Next due time after a successful run; None for one-shot triggers."""

    if isinstance(trigger, TimeWindowTrigger):
        return None
    return initial_due_at(trigger, now=now, condition_poll_seconds=condition_poll_seconds)
