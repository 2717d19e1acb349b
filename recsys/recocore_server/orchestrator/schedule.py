"""
Job triggers: fixed intervals and five-field cron expressions (UTC).

Cron fields are minute, hour, day of month, month, day of week. Each field
accepts "*", "*/n", "a-b", "a-b/n", single values and comma lists. Day of
week uses 0 or 7 for Sunday.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from ..config import JobSchedule
from ..errors import ConfigurationError


class Trigger(Protocol):
    def next_fire(self, after: datetime) -> datetime: ...


def _parse_cron_field(field: str, minimum: int, maximum: int) -> set[int]:
    values: set[int] = set()
    for part in field.split(","):
        token = part.strip()
        step = 1
        if "/" in token:
            token, step_str = token.split("/", 1)
            step = int(step_str)
            if step <= 0:
                raise ValueError(f"invalid cron step '{part}'")

        if token == "*":
            lo, hi = minimum, maximum
        elif "-" in token:
            lo_str, hi_str = token.split("-", 1)
            lo, hi = int(lo_str), int(hi_str)
            if lo > hi:
                raise ValueError(f"invalid cron range '{part}'")
        else:
            lo = hi = int(token)
            if step != 1:
                hi = maximum

        if lo < minimum or hi > maximum:
            raise ValueError(f"cron value out of bounds '{part}'")
        values.update(range(lo, hi + 1, step))
    return values


@dataclass(frozen=True)
class CronTrigger:
    """Compiled cron expression."""

    expression: str
    minutes: frozenset[int]
    hours: frozenset[int]
    days: frozenset[int]
    months: frozenset[int]
    weekdays: frozenset[int]

    @classmethod
    def parse(cls, expression: str) -> CronTrigger:
        """Compile a cron expression.

        Raises:
            ValueError: If the expression is malformed
        """
        parts = expression.split()
        if len(parts) != 5:
            raise ValueError(f"cron expression must have 5 fields: '{expression}'")
        return cls(
            expression=expression,
            minutes=frozenset(_parse_cron_field(parts[0], 0, 59)),
            hours=frozenset(_parse_cron_field(parts[1], 0, 23)),
            days=frozenset(_parse_cron_field(parts[2], 1, 31)),
            months=frozenset(_parse_cron_field(parts[3], 1, 12)),
            weekdays=frozenset(_parse_cron_field(parts[4], 0, 7)),
        )

    def matches(self, dt: datetime) -> bool:
        # Cron weekday: 0/7=Sunday, 1=Monday, ..., 6=Saturday.
        cron_weekday = (dt.weekday() + 1) % 7
        weekday_match = cron_weekday in self.weekdays or (cron_weekday == 0 and 7 in self.weekdays)
        return (
            dt.minute in self.minutes
            and dt.hour in self.hours
            and dt.day in self.days
            and dt.month in self.months
            and weekday_match
        )

    def next_fire(self, after: datetime) -> datetime:
        candidate = after.replace(second=0, microsecond=0) + timedelta(minutes=1)
        for _ in range(0, 366 * 24 * 60):
            if self.matches(candidate):
                return candidate
            candidate += timedelta(minutes=1)
        raise ValueError(f"unable to find next trigger for '{self.expression}' within one year")


@dataclass(frozen=True)
class IntervalTrigger:
    """Fires every `seconds` seconds."""

    seconds: float

    def next_fire(self, after: datetime) -> datetime:
        return after + timedelta(seconds=self.seconds)


def trigger_for(job_name: str, schedule: JobSchedule) -> Trigger:
    """Build the trigger of a job schedule; cron wins over interval.

    Raises:
        ConfigurationError: If the cron expression is invalid or no trigger is set
    """
    if schedule.cron:
        try:
            return CronTrigger.parse(schedule.cron)
        except ValueError as e:
            raise ConfigurationError(f"Invalid cron for {job_name}: {e}", setting=job_name) from e
    if schedule.interval_seconds:
        return IntervalTrigger(schedule.interval_seconds)
    raise ConfigurationError(f"Job {job_name} has no trigger", setting=job_name)
