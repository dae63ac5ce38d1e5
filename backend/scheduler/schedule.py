"""
Next-run computation for scheduled tasks.

All datetimes are naive and expressed in ``Settings.timezone``:
  - hourly:  now + 1 hour
  - daily:   next local midnight
  - weekly:  midnight of the day seven days ahead
  - monthly: midnight on the 1st of next month
  - custom:  next croniter fire time after now; a missing or unparseable
             expression falls back to now + 24 hours and is logged
"""

from datetime import datetime, timedelta

import structlog
from croniter import croniter

from core import clock
from db.domain import Frequency

logger = structlog.get_logger()

CUSTOM_FALLBACK = timedelta(hours=24)


def _midnight(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def _first_of_next_month(value: datetime) -> datetime:
    if value.month == 12:
        return _midnight(value.replace(year=value.year + 1, month=1, day=1))
    return _midnight(value.replace(month=value.month + 1, day=1))


def next_cron_run(cron_expression: str | None, now: datetime) -> datetime | None:
    """Next fire time for a 5-field cron expression, or None when it cannot be parsed."""
    if not cron_expression or not croniter.is_valid(cron_expression):
        return None
    try:
        return croniter(cron_expression, now).get_next(datetime)
    except (ValueError, KeyError):
        return None


def compute_next_run(
    frequency: Frequency | str,
    cron_expression: str | None = None,
    now: datetime | None = None,
) -> datetime:
    now = now or clock.now()
    frequency = Frequency(frequency)

    if frequency == Frequency.HOURLY:
        return now + timedelta(hours=1)
    if frequency == Frequency.DAILY:
        return _midnight(now + timedelta(days=1))
    if frequency == Frequency.WEEKLY:
        return _midnight(now + timedelta(days=7))
    if frequency == Frequency.MONTHLY:
        return _first_of_next_month(now)

    next_run = next_cron_run(cron_expression, now)
    if next_run is None:
        next_run = now + CUSTOM_FALLBACK
        logger.warning(
            "scheduler.cron_fallback",
            cron_expression=cron_expression,
            next_run_at=next_run.isoformat(),
        )
    return next_run
