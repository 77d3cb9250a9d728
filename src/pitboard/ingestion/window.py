"""Run modes and the inclusive publish-time windows they target."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone

from zoneinfo import ZoneInfo

INCREMENTAL = "incremental"
BACKFILL = "backfill"


def _start_of_day(day: date, tz: ZoneInfo) -> datetime:
    return datetime.combine(day, time.min, tzinfo=tz).astimezone(timezone.utc)


def _end_of_day(day: date, tz: ZoneInfo) -> datetime:
    return datetime.combine(day, time.max, tzinfo=tz).astimezone(timezone.utc)


@dataclass(frozen=True)
class DateWindow:
    """Closed interval of publish times, both ends inclusive, in UTC."""

    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        return self.start <= moment <= self.end

    @classmethod
    def last_days(
        cls, days: int, tz_name: str = "UTC", now: datetime | None = None
    ) -> DateWindow:
        """Local midnight ``days`` days ago through the end of today.

        ``last_days(0)`` is today only.
        """
        if days < 0:
            raise ValueError("days must be >= 0")
        tz = ZoneInfo(tz_name)
        today = (now or datetime.now(timezone.utc)).astimezone(tz).date()
        return cls(
            start=_start_of_day(today - timedelta(days=days), tz),
            end=_end_of_day(today, tz),
        )

    @classmethod
    def for_day(cls, day: date, tz_name: str = "UTC") -> DateWindow:
        """A single local calendar day."""
        tz = ZoneInfo(tz_name)
        return cls(start=_start_of_day(day, tz), end=_end_of_day(day, tz))


@dataclass(frozen=True)
class RunMode:
    """How a run treats checkpoints, plus the window it ingests."""

    name: str
    window: DateWindow

    @property
    def is_backfill(self) -> bool:
        return self.name == BACKFILL

    @classmethod
    def incremental(
        cls, days_back: int = 0, tz_name: str = "UTC", now: datetime | None = None
    ) -> RunMode:
        return cls(INCREMENTAL, DateWindow.last_days(days_back, tz_name, now))

    @classmethod
    def backfill_days(
        cls, days: int, tz_name: str = "UTC", now: datetime | None = None
    ) -> RunMode:
        return cls(BACKFILL, DateWindow.last_days(days, tz_name, now))

    @classmethod
    def backfill_date(cls, day: date, tz_name: str = "UTC") -> RunMode:
        return cls(BACKFILL, DateWindow.for_day(day, tz_name))

    def describe(self) -> dict:
        return {
            "mode": self.name,
            "window_start": self.window.start.isoformat(),
            "window_end": self.window.end.isoformat(),
        }
