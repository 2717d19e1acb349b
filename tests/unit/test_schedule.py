"""
Unit tests for job triggers.

Tests cover:
- Cron parsing and next fire times
- Interval triggers
- Trigger selection from a job schedule
"""

from datetime import datetime, timezone

import pytest

from recsys.recocore_server.config import JobSchedule
from recsys.recocore_server.errors import ConfigurationError
from recsys.recocore_server.orchestrator.schedule import CronTrigger, IntervalTrigger, trigger_for


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


class TestCronTrigger:
    """Tests for CronTrigger."""

    def test_hourly(self):
        """'0 * * * *' fires at the top of the next hour."""
        trigger = CronTrigger.parse("0 * * * *")

        assert trigger.next_fire(utc(2024, 5, 1, 10, 15, 30)) == utc(2024, 5, 1, 11, 0)

    def test_fire_time_is_strictly_after(self):
        """A trigger never fires at the instant it was asked from."""
        trigger = CronTrigger.parse("0 * * * *")

        assert trigger.next_fire(utc(2024, 5, 1, 11, 0)) == utc(2024, 5, 1, 12, 0)

    def test_steps_and_ranges(self):
        """Steps, ranges and lists compile to the expected sets."""
        trigger = CronTrigger.parse("*/15 9-17/4 1,15 * *")

        assert trigger.minutes == frozenset({0, 15, 30, 45})
        assert trigger.hours == frozenset({9, 13, 17})
        assert trigger.days == frozenset({1, 15})

    def test_sunday_as_zero_or_seven(self):
        """Both 0 and 7 mean Sunday."""
        sunday = utc(2024, 5, 5, 3, 0)

        assert CronTrigger.parse("0 3 * * 0").matches(sunday)
        assert CronTrigger.parse("0 3 * * 7").matches(sunday)
        assert not CronTrigger.parse("0 3 * * 1").matches(sunday)

    def test_daily_rolls_over_month(self):
        """Daily triggers cross month boundaries."""
        trigger = CronTrigger.parse("0 3 * * *")

        assert trigger.next_fire(utc(2024, 1, 31, 4, 0)) == utc(2024, 2, 1, 3, 0)

    @pytest.mark.parametrize("expression", ["* * * *", "60 * * * *", "*/0 * * * *", "5-1 * * * *", "a * * * *"])
    def test_invalid_expressions(self, expression):
        """Malformed expressions raise ValueError."""
        with pytest.raises(ValueError):
            CronTrigger.parse(expression)


class TestTriggerFor:
    """Tests for trigger_for."""

    def test_interval(self):
        """Interval schedules add a fixed delay."""
        trigger = trigger_for("job", JobSchedule(interval_seconds=90))

        assert isinstance(trigger, IntervalTrigger)
        assert trigger.next_fire(utc(2024, 1, 1, 0, 0)) == utc(2024, 1, 1, 0, 1, 30)

    def test_cron_wins_over_interval(self):
        """When both are set the cron expression is used."""
        trigger = trigger_for("job", JobSchedule(interval_seconds=90, cron="0 * * * *"))

        assert isinstance(trigger, CronTrigger)

    def test_invalid_cron_is_configuration_error(self):
        """Bad cron expressions surface as configuration errors naming the job."""
        with pytest.raises(ConfigurationError) as exc_info:
            trigger_for("warm-cache", JobSchedule(cron="not a cron"))

        assert exc_info.value.details["setting"] == "warm-cache"

    def test_missing_trigger(self):
        """A schedule without cron or interval is rejected."""
        with pytest.raises(ConfigurationError, match="no trigger"):
            trigger_for("job", JobSchedule())
