"""
Next-run calculation for schedule windows.

A window's runs are anchored at ``start_hour:00`` on each allowed weekday, so the
next run is the first such instant strictly after ``now``. This is the cron
expression ``0 <start_hour> * * <days>`` evaluated in the window's timezone.
"""

import logging
from datetime import datetime, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from collection_scheduler.domain.task import ScheduleWindow
from collection_scheduler.errors import ConfigurationError

logger = logging.getLogger(__name__)


def resolve_timezone(label: str) -> tzinfo:
    if label.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(label)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigurationError(f"Unknown timezone '{label}'") from e


def validate_window(window: ScheduleWindow) -> None:
    """
    Reject windows that can never produce a run.

    Raises:
        ConfigurationError: If no day of the week is selected or the timezone is unknown.
    """
    if not window.days_of_week:
        raise ConfigurationError("Schedule window must include at least one day of the week")
    resolve_timezone(window.timezone)


def next_run(now: datetime, window: ScheduleWindow) -> datetime:
    """
    Return the first instant strictly after ``now`` that falls on an allowed weekday at ``start_hour``.

    The result is expressed in the window's timezone. A naive ``now`` is taken to be UTC.
    With an empty ``days_of_week`` nothing qualifies, and ``now + 7 days`` at ``start_hour``
    is returned so callers always get a timestamp.
    """
    tz = resolve_timezone(window.timezone)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local_now = now.astimezone(tz)

    if not window.days_of_week:
        logger.warning("Schedule window has no days of week, falling back to one week from now")
        fallback = local_now + timedelta(days=7)
        return fallback.replace(hour=window.start_hour, minute=0, second=0, microsecond=0)

    cron = croniter(window.cron_expression, local_now)
    return cron.get_next(datetime)
