"""
Tests for next-run computation.
"""

from datetime import datetime

import pytest

from db.domain import Frequency
from scheduler.schedule import compute_next_run, next_cron_run

NOW = datetime(2024, 3, 15, 10, 0)


class TestFixedFrequencies:
    def test_hourly(self):
        assert compute_next_run(Frequency.HOURLY, now=NOW) == datetime(2024, 3, 15, 11, 0)

    def test_daily_is_next_midnight(self):
        assert compute_next_run(Frequency.DAILY, now=NOW) == datetime(2024, 3, 16, 0, 0)

    def test_weekly_is_midnight_seven_days_out(self):
        assert compute_next_run(Frequency.WEEKLY, now=NOW) == datetime(2024, 3, 22, 0, 0)

    def test_monthly_is_first_of_next_month(self):
        assert compute_next_run(Frequency.MONTHLY, now=NOW) == datetime(2024, 4, 1, 0, 0)

    def test_monthly_rolls_over_the_year(self):
        assert compute_next_run(Frequency.MONTHLY, now=datetime(2024, 12, 31, 23, 59)) == datetime(2025, 1, 1)

    def test_daily_just_before_midnight(self):
        assert compute_next_run(Frequency.DAILY, now=datetime(2024, 2, 28, 23, 59)) == datetime(2024, 2, 29)

    def test_accepts_string_frequency(self):
        assert compute_next_run("hourly", now=NOW) == datetime(2024, 3, 15, 11, 0)

    def test_result_is_after_now(self):
        for frequency in (Frequency.HOURLY, Frequency.DAILY, Frequency.WEEKLY, Frequency.MONTHLY):
            assert compute_next_run(frequency, now=NOW) > NOW


class TestCustom:
    def test_cron_expression(self):
        assert compute_next_run(Frequency.CUSTOM, "30 6 * * *", NOW) == datetime(2024, 3, 16, 6, 30)

    def test_cron_every_fifteen_minutes(self):
        assert compute_next_run(Frequency.CUSTOM, "*/15 * * * *", NOW) == datetime(2024, 3, 15, 10, 15)

    @pytest.mark.parametrize("expression", [None, "", "not a cron", "99 99 * * *"])
    def test_unparseable_falls_back_to_a_day(self, expression):
        assert compute_next_run(Frequency.CUSTOM, expression, NOW) == datetime(2024, 3, 16, 10, 0)

    def test_next_cron_run_none_for_invalid(self):
        assert next_cron_run("bogus", NOW) is None
