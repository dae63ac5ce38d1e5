"""
Wall clock for the automation core.

All persisted timestamps are naive datetimes expressed in the configured
``Settings.timezone`` so "midnight" means local midnight for that zone.
"""

from datetime import datetime
from zoneinfo import ZoneInfo

from core.config import get_settings


def now(tz_name: str | None = None) -> datetime:
    """Current time in the configured zone, tzinfo stripped."""
    zone = ZoneInfo(tz_name or get_settings().timezone)
    return datetime.now(zone).replace(tzinfo=None)
