"""Data models for schedules, recurrence selections and booking instances."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo

# Horizon value of a series whose rule produced no further occurrences.
MAX_TIME = datetime(9999, 1, 1, tzinfo=timezone.utc)

MINUTES_PER_DAY = 24 * 60


class Weekday(enum.IntEnum):
    MONDAY = 0
    TUESDAY = 1
    WEDNESDAY = 2
    THURSDAY = 3
    FRIDAY = 4
    SATURDAY = 5
    SUNDAY = 6

    @property
    def code(self) -> str:
        return self.name[:2]

    @classmethod
    def from_code(cls, code: str) -> "Weekday":
        for day in cls:
            if day.code == code.upper():
                return day
        raise ValueError(f"unknown weekday code: {code}")

    @classmethod
    def of(cls, value: date) -> "Weekday":
        return cls(value.weekday())

    def next(self) -> "Weekday":
        return Weekday((self + 1) % 7)

    def previous(self) -> "Weekday":
        return Weekday((self - 1) % 7)


@dataclass(frozen=True)
class TimePeriod:
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValueError("time period bounds must be timezone-aware")
        if self.start > self.end:
            raise ValueError(f"time period starts after it ends: {self.start} > {self.end}")

    def is_overlap(self, start: datetime, end: datetime) -> bool:
        return self.start < end and self.end > start

    def shift(self, delta: timedelta) -> "TimePeriod":
        return TimePeriod(self.start + delta, self.end + delta)

    def to_utc(self) -> "TimePeriod":
        return TimePeriod(
            self.start.astimezone(timezone.utc), self.end.astimezone(timezone.utc)
        )

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


@dataclass(frozen=True)
class TimeDuration:
    """A block of working hours relative to a day: local start plus a length."""

    start: time
    duration_minutes: int

    def __post_init__(self) -> None:
        if not 0 < self.duration_minutes <= MINUTES_PER_DAY:
            raise ValueError(
                f"duration must be between 1 and {MINUTES_PER_DAY} minutes: {self.duration_minutes}"
            )

    def get_start(self, day: date, tz: ZoneInfo) -> datetime:
        return datetime.combine(day, self.start, tz)

    def get_end(self, day: date, tz: ZoneInfo) -> datetime:
        # elapsed time, so a block spanning a DST change keeps its length
        start = self.get_start(day, tz).astimezone(timezone.utc)
        return (start + timedelta(minutes=self.duration_minutes)).astimezone(tz)


@dataclass
class DaySchedule:
    day_of_week: Weekday
    durations: List[TimeDuration] = field(default_factory=list)
    unavailable: bool = False
    periods: List[TimePeriod] = field(default_factory=list)


@dataclass
class WeeklySchedule:
    days: Dict[Weekday, DaySchedule] = field(default_factory=dict)
    timezone: str = "UTC"
    resolved: bool = False

    def day(self, day_of_week: Weekday) -> DaySchedule:
        schedule = self.days.get(day_of_week)
        if schedule is None:
            return DaySchedule(day_of_week, unavailable=True)
        return schedule

    def copy(self) -> "WeeklySchedule":
        days = {
            key: replace(value, durations=list(value.durations), periods=list(value.periods))
            for key, value in self.days.items()
        }
        return WeeklySchedule(days=days, timezone=self.timezone, resolved=self.resolved)


class IntervalKind(enum.IntEnum):
    NONE = 0
    DAILY = 1
    WEEKLY = 2
    BIWEEKLY = 3
    MONTHLY = 4


class Frequency(str, enum.Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"


@dataclass(frozen=True)
class RecurrenceSelection:
    label: str
    interval_kind: IntervalKind
    frequency_unit: Optional[Frequency]
    repeat_interval: int = 1


@dataclass(frozen=True)
class ByDay:
    weekday: Weekday
    offset: Optional[int] = None

    def __str__(self) -> str:
        if self.offset is None:
            return self.weekday.code
        return f"{self.offset}{self.weekday.code}"


@dataclass(frozen=True)
class ServiceConfig:
    duration: int  # minutes
    padding: int = 0  # minutes either side of a booking
    interval: int = 15  # minutes between offered start times
    initial_padding: int = 0  # minimum lead time in minutes


class SeriesState(enum.Enum):
    NO_RULE = "no-rule"
    ACTIVE = "active"
    UP_TO_DATE = "up-to-date"
    TERMINATED = "terminated"


@dataclass
class BookingInstance:
    id: Optional[str]
    time_from: datetime
    time_to: datetime
    parent_id: Optional[str] = None
    provider_id: Optional[str] = None
    service_id: Optional[str] = None
    service_duration: int = 0
    service_padding: int = 0
    time_from_padded: Optional[datetime] = None
    time_to_padded: Optional[datetime] = None
    confirmed: bool = False
    client_created: bool = False
    deleted: bool = False
    recurrence_rules: List[str] = field(default_factory=list)
    recurrence_start: Optional[datetime] = None
    recurrence_instance_end: Optional[datetime] = None
    recurrence_error: Optional[str] = None
    processing_since: Optional[datetime] = None
    time_change: bool = field(default=False, compare=False)

    def __post_init__(self) -> None:
        if self.time_from_padded is None or self.time_to_padded is None:
            self.apply_padding()

    def apply_padding(self, padding: Optional[int] = None) -> None:
        if padding is not None:
            self.service_padding = padding
        delta = timedelta(minutes=self.service_padding)
        self.time_from_padded = self.time_from - delta
        self.time_to_padded = self.time_to + delta

    def set_time_from(self, value: datetime) -> None:
        if value != self.time_from:
            self.time_change = True
        self.time_from = value
        self.set_time_to(value + timedelta(minutes=self.service_duration))

    def set_time_to(self, value: datetime) -> None:
        if value != self.time_to:
            self.time_change = True
        self.time_to = value
        self.apply_padding()

    @property
    def is_recurring(self) -> bool:
        return bool(self.recurrence_rules)

    @property
    def is_series(self) -> bool:
        return self.is_recurring and self.id is not None and self.parent_id == self.id

    @property
    def is_terminated(self) -> bool:
        return self.recurrence_instance_end == MAX_TIME

    def period(self) -> TimePeriod:
        return TimePeriod(self.time_from, self.time_to)

    def padded_period(self) -> TimePeriod:
        return TimePeriod(self.time_from_padded, self.time_to_padded)
