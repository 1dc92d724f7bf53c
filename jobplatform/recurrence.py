"""Next-run computation for schedules.

Only a fixed cron vocabulary is understood; anything else falls back to the
schedule's interval tag and then to a four hour default.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .models import INTERVAL_4HOURLY, INTERVAL_DAILY, INTERVAL_HOURLY, INTERVAL_WEEKLY, Schedule
from .sql.database import UTC

CRON_HOURLY = "0 * * * *"
CRON_EVERY_4_HOURS = "0 */4 * * *"
CRON_DAILY_6AM = "0 6 * * *"
CRON_DAILY_7AM = "0 7 * * *"
CRON_DAILY_8AM = "0 8 * * *"
CRON_WEEKLY_SUNDAY = "0 0 * * 0"

CRON_PATTERNS = frozenset(
    {
        CRON_HOURLY,
        CRON_EVERY_4_HOURS,
        CRON_DAILY_6AM,
        CRON_DAILY_7AM,
        CRON_DAILY_8AM,
        CRON_WEEKLY_SUNDAY,
    }
)

INTERVAL_DURATIONS = {
    INTERVAL_HOURLY: timedelta(hours=1),
    INTERVAL_4HOURLY: timedelta(hours=4),
    INTERVAL_DAILY: timedelta(hours=24),
    INTERVAL_WEEKLY: timedelta(days=7),
}
DEFAULT_INTERVAL = timedelta(hours=4)

_DAILY_HOURS = {CRON_DAILY_6AM: 6, CRON_DAILY_7AM: 7, CRON_DAILY_8AM: 8}
_SUNDAY = 6
_MAX_HOURLY_STEPS = 4 * 24 * 2
logger = logging.getLogger(__name__)


def normalize_cron(expression: str | None) -> str:
    return " ".join((expression or "").split())


def is_recognized_cron(expression: str | None) -> bool:
    return normalize_cron(expression) in CRON_PATTERNS


def interval_duration(tag: str | None) -> timedelta | None:
    return INTERVAL_DURATIONS.get(tag or "")


def resolve_timezone(name: str | None) -> tzinfo:
    if not name or name.upper() == "UTC":
        return UTC
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("unknown schedule timezone, using UTC: timezone=%s", name)
        return UTC


def next_cron_run(expression: str, after: datetime, tz: tzinfo = UTC) -> datetime:
    """Return the first instant strictly after ``after`` matching ``expression``.

    Wall-clock fields are interpreted in ``tz``; the result is in UTC.

    Raises:
        ValueError: If ``expression`` is not part of the recognized vocabulary.
    """

    expr = normalize_cron(expression)
    if expr in (CRON_HOURLY, CRON_EVERY_4_HOURS):
        return _next_top_of_hour(after, tz, every=1 if expr == CRON_HOURLY else 4)

    local = after.astimezone(tz)
    top_of_hour = local.replace(minute=0, second=0, microsecond=0)
    if expr in _DAILY_HOURS:
        candidate = top_of_hour.replace(hour=_DAILY_HOURS[expr])
        if candidate <= local:
            candidate += timedelta(days=1)
    elif expr == CRON_WEEKLY_SUNDAY:
        midnight = top_of_hour.replace(hour=0)
        candidate = midnight + timedelta(days=(_SUNDAY - midnight.weekday()) % 7)
        if candidate <= local:
            candidate += timedelta(days=7)
    else:
        raise ValueError(f"unsupported cron expression: {expression!r}")
    return candidate.astimezone(UTC)


def _next_top_of_hour(after: datetime, tz: tzinfo, *, every: int) -> datetime:
    """Step through UTC instants; a repeated wall-clock hour is visited twice.

    Offsets are whole multiples of 15 minutes, so the walk uses that step and a
    local top of hour is always one of the visited instants.
    """

    step = timedelta(minutes=15)
    utc = after.astimezone(UTC)
    candidate = utc.replace(minute=utc.minute - utc.minute % 15, second=0, microsecond=0)
    for _ in range(_MAX_HOURLY_STEPS):
        candidate += step
        wall = candidate.astimezone(tz)
        if wall.minute == 0 and wall.hour % every == 0:
            return candidate
    raise ValueError(f"no top of hour found after {after.isoformat()} in {tz}")


def next_run(schedule: Schedule, after: datetime) -> datetime:
    """Compute the schedule's next fire time after ``after``.

    A recognized cron expression wins over the interval tag; without either the
    schedule fires every four hours.
    """

    if is_recognized_cron(schedule.cron_expression):
        return next_cron_run(
            schedule.cron_expression, after, resolve_timezone(schedule.timezone)
        )
    if schedule.cron_expression:
        logger.debug(
            "unrecognized cron expression, falling back: schedule_id=%s cron=%s",
            schedule.id,
            schedule.cron_expression,
        )
    return after + (interval_duration(schedule.interval) or DEFAULT_INTERVAL)
