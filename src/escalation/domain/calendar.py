"""
Business Calendar
=================

Turn-around-time arithmetic that skips weekends.

Every weekday counts as a full 24-hour business day; weekend days count as
zero. When the cursor lands on a weekend day it jumps to 00:00 of the next
working day, which is the intended policy for deadlines that straddle a
weekend (a ticket filed late on Friday gets its remaining hours on Monday).
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

ONE_HOUR = timedelta(hours=1)

# datetime.weekday(): Monday == 0 ... Sunday == 6
SATURDAY = 5
SUNDAY = 6


@dataclass(frozen=True)
class Deadlines:
    """Acknowledgement and resolution deadlines for a ticket."""
    acknowledgement_due_at: datetime
    resolution_due_at: datetime


class BusinessCalendar:
    """
    Adds and measures business hours.

    Instants are converted to the calendar's timezone to decide which
    weekday they fall on; results are returned in UTC.
    """

    def __init__(
        self,
        weekend_days: Iterable[int] = (SATURDAY, SUNDAY),
        tz: Optional[tzinfo] = None,
        acknowledgement_fraction: float = 0.1,
    ):
        self.weekend_days = frozenset(weekend_days)
        if len(self.weekend_days) >= 7:
            raise ValueError("At least one weekday must be a working day")
        self.tz = tz or timezone.utc
        self.acknowledgement_fraction = acknowledgement_fraction

    @classmethod
    def from_timezone_name(cls, name: str, **kwargs) -> "BusinessCalendar":
        return cls(tz=ZoneInfo(name), **kwargs)

    def is_weekend(self, moment: datetime) -> bool:
        return self._local(moment).weekday() in self.weekend_days

    def add_business_hours(self, start: datetime, hours: float) -> datetime:
        """
        Add business hours to an instant, skipping weekend days.

        Args:
            start: Starting instant (naive values are treated as UTC)
            hours: Hours to add; fractional values are honoured

        Returns:
            The resulting instant in UTC
        """
        cursor = self._local(start)
        if hours <= 0:
            return cursor.astimezone(timezone.utc)

        remaining = timedelta(hours=hours)
        while remaining > timedelta(0):
            if cursor.weekday() in self.weekend_days:
                cursor = self._next_working_midnight(cursor)
                continue

            until_midnight = self._next_midnight(cursor) - cursor
            if remaining < until_midnight:
                cursor += remaining
                remaining = timedelta(0)
            else:
                remaining -= until_midnight
                cursor = self._next_midnight(cursor)

        # Ending exactly on a weekend midnight is the same business instant
        # as the next working day's midnight.
        if cursor.weekday() in self.weekend_days:
            cursor = self._next_working_midnight(cursor)

        return cursor.astimezone(timezone.utc)

    def calculate_remaining_business_hours(self, start: datetime, end: datetime) -> int:
        """
        Business hours between two instants, rounded up to a whole hour.

        Returns 0 when end is not after start.
        """
        cursor = self._local(start)
        stop = self._local(end)
        if stop <= cursor:
            return 0

        total = timedelta(0)
        while cursor < stop:
            next_midnight = self._next_midnight(cursor)
            if cursor.weekday() not in self.weekend_days:
                total += min(stop, next_midnight) - cursor
            cursor = next_midnight

        whole_hours, remainder = divmod(total, ONE_HOUR)
        return whole_hours + (1 if remainder else 0)

    def calculate_deadlines(self, sla_hours: float, start: Optional[datetime] = None) -> Deadlines:
        """
        Deadlines for a ticket with the given SLA.

        Acknowledgement is due after ceil(fraction * SLA) business hours,
        resolution after the full SLA.
        """
        start = start or datetime.now(timezone.utc)
        # Rounding first keeps 0.1 * 30 from ceiling to 4
        acknowledgement_hours = math.ceil(round(sla_hours * self.acknowledgement_fraction, 9))
        return Deadlines(
            acknowledgement_due_at=self.add_business_hours(start, acknowledgement_hours),
            resolution_due_at=self.add_business_hours(start, sla_hours),
        )

    def _local(self, moment: datetime) -> datetime:
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        return moment.astimezone(self.tz)

    @staticmethod
    def _next_midnight(moment: datetime) -> datetime:
        return (moment + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)

    def _next_working_midnight(self, moment: datetime) -> datetime:
        cursor = self._next_midnight(moment)
        while cursor.weekday() in self.weekend_days:
            cursor = self._next_midnight(cursor)
        return cursor
