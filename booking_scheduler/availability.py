"""Weekly working hours: resolution into absolute periods and slot validation."""

from __future__ import annotations

import logging
import math
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, List, Optional, Set, Tuple
from zoneinfo import ZoneInfo

from .errors import InvalidScheduleConfiguration, NoAvailabilityFound
from .models import (
    MINUTES_PER_DAY,
    DaySchedule,
    ServiceConfig,
    TimePeriod,
    Weekday,
    WeeklySchedule,
)
from .timeutil import (
    beginning_of_day,
    check_time_in,
    end_of_day,
    is_overlap,
    local_date,
    rebase,
    shift_to_date,
    start_of_week,
    utc_offset,
)
from .util import TimezoneLookup, default_zones

logger = logging.getLogger(__name__)

Conflict = Tuple[Weekday, int]


def _process_day(
    day_schedule: DaySchedule,
    day: date,
    tz: ZoneInfo,
    overflow_in: Optional[TimePeriod],
) -> Tuple[Optional[TimePeriod], Optional[int]]:
    """Place one day's blocks, returning the overflow into the next day.

    The second value is the index of the block that conflicted, if any; the
    day's periods then hold whatever was placed before the conflict.
    """
    if day_schedule.unavailable:
        day_schedule.periods = []
        return None, None

    periods: List[TimePeriod] = []
    if overflow_in is not None:
        periods.append(overflow_in)

    overflow: Optional[TimePeriod] = None
    crossed = False
    for index, duration in enumerate(day_schedule.durations):
        start = duration.get_start(day, tz)
        end = duration.get_end(day, tz)
        if any(is_overlap(period, start, end) for period in periods):
            day_schedule.periods = [p.to_utc() for p in periods]
            return None, index

        if end.date() != day:
            # only one block per day may run past midnight
            if crossed:
                day_schedule.periods = [p.to_utc() for p in periods]
                return None, index
            crossed = True
            periods.append(TimePeriod(start, end_of_day(start)))
            next_day = beginning_of_day(end)
            if next_day != end:
                overflow = TimePeriod(next_day, end)
        else:
            periods.append(TimePeriod(start, end))

    day_schedule.periods = sorted((p.to_utc() for p in periods), key=lambda p: p.start)
    return overflow, None


def _resolve(
    schedule: WeeklySchedule, reference: datetime, tz: ZoneInfo
) -> Tuple[WeeklySchedule, List[Conflict]]:
    resolved = schedule.copy()
    for day in Weekday:
        resolved.days.setdefault(day, DaySchedule(day, unavailable=True))

    monday = start_of_week(local_date(reference, tz))
    conflicts: List[Conflict] = []
    overflow: Optional[TimePeriod] = None
    for day in Weekday:
        overflow, index = _process_day(
            resolved.days[day], monday + timedelta(days=day), tz, overflow
        )
        if index is not None:
            conflicts.append((day, index))

    # the week wraps: Sunday's late block continues into Monday
    if overflow is not None:
        start = rebase(overflow.start, monday, tz)
        wrapped = TimePeriod(start, (start.astimezone(timezone.utc) + overflow.duration).astimezone(tz))
        _, index = _process_day(resolved.days[Weekday.MONDAY], monday, tz, wrapped)
        if index is not None and (Weekday.MONDAY, index) not in conflicts:
            conflicts.append((Weekday.MONDAY, index))

    for day, index in conflicts:
        logger.warning("Conflicting working hours on %s at block %d", day.name.title(), index)
    resolved.resolved = True
    return resolved, conflicts


def resolve(
    schedule: WeeklySchedule,
    reference: datetime,
    tz: Optional[str] = None,
    *,
    zones: TimezoneLookup = default_zones,
) -> Tuple[WeeklySchedule, Set[Weekday]]:
    """Resolve day-relative working hours into UTC periods for one week.

    Returns a new schedule and the days whose hours conflict.
    """
    zone = zones.get(tz if tz is not None else schedule.timezone)
    resolved, conflicts = _resolve(schedule, reference, zone)
    return resolved, {day for day, _ in conflicts}


def check_schedule(
    schedule: WeeklySchedule,
    reference: datetime,
    tz: Optional[str] = None,
    *,
    zones: TimezoneLookup = default_zones,
) -> WeeklySchedule:
    zone = zones.get(tz if tz is not None else schedule.timezone)
    resolved, conflicts = _resolve(schedule, reference, zone)
    if conflicts:
        raise InvalidScheduleConfiguration(
            (day.name.title(), index) for day, index in conflicts
        )
    return resolved


def adjust(
    schedule: WeeklySchedule,
    reference: datetime,
    from_tz: str,
    to_tz: str,
    *,
    zones: TimezoneLookup = default_zones,
) -> WeeklySchedule:
    """Carry a schedule over to a new timezone, keeping its local hours.

    Offsets are taken at ``reference`` for both zones, so a pair of zones that
    change daylight saving time on different dates is handled correctly.
    """
    offset = utc_offset(zones.get(from_tz), reference) - utc_offset(zones.get(to_tz), reference)
    adjusted = schedule.copy()
    for day_schedule in adjusted.days.values():
        day_schedule.periods = [period.shift(offset) for period in day_schedule.periods]
    adjusted.timezone = to_tz
    return adjusted


def _ensure_resolved(
    schedule: WeeklySchedule, reference: datetime, zones: TimezoneLookup
) -> WeeklySchedule:
    if schedule.resolved:
        return schedule
    resolved, _ = resolve(schedule, reference, zones=zones)
    return resolved


def _day_blocks(
    schedule: WeeklySchedule, reference: datetime, tz: ZoneInfo
) -> List[Tuple[datetime, datetime]]:
    ref = reference.astimezone(tz)
    day_schedule = schedule.day(Weekday.of(ref.date()))
    blocks: List[Tuple[datetime, datetime]] = []
    if not day_schedule.unavailable:
        for duration in day_schedule.durations:
            blocks.append(
                (duration.get_start(ref.date(), tz), duration.get_end(ref.date(), tz))
            )
    # resolved periods carry the part of yesterday's block that ran past midnight
    for period in day_schedule.periods:
        blocks.append(shift_to_date(ref, period.start, period.end))
    return blocks


def is_valid_period(
    schedule: Optional[WeeklySchedule],
    reference: datetime,
    candidate: TimePeriod,
    *,
    zones: TimezoneLookup = default_zones,
) -> bool:
    if schedule is None:
        return True
    tz = zones.get(schedule.timezone)
    schedule = _ensure_resolved(schedule, reference, zones)
    for start, end in _day_blocks(schedule, reference, tz):
        if check_time_in(candidate.start, start, end) and check_time_in(candidate.end, start, end):
            return True
    return False


def next_valid_start(
    schedule: WeeklySchedule,
    start: datetime,
    interval: int,
    *,
    zones: TimezoneLookup = default_zones,
) -> datetime:
    """Round ``start`` up to the interval and probe forward, up to a week."""
    if interval <= 0:
        raise ValueError(f"interval must be positive: {interval}")
    tz = zones.get(schedule.timezone)
    local = start.astimezone(tz)
    schedule = _ensure_resolved(schedule, local, zones)

    minutes = local.hour * 60 + local.minute
    if local.second or local.microsecond:
        minutes += 1
    rounded = math.ceil(minutes / interval) * interval
    naive = datetime.combine(local.date(), time.min) + timedelta(minutes=rounded)
    candidate = naive.replace(tzinfo=tz)

    step = timedelta(minutes=interval)
    for _ in range(math.ceil(7 * MINUTES_PER_DAY / interval)):
        if is_valid_period(schedule, candidate, TimePeriod(candidate, candidate), zones=zones):
            return candidate
        candidate = (candidate.astimezone(timezone.utc) + step).astimezone(tz)
    raise NoAvailabilityFound(f"provider has no open hours within a week of {start.isoformat()}")


def is_in_future(now: datetime, start: datetime) -> bool:
    return start > now


def check_valid_time(
    schedule: Optional[WeeklySchedule],
    now: datetime,
    start: datetime,
    end: datetime,
    min_start: Optional[datetime] = None,
    *,
    zones: TimezoneLookup = default_zones,
) -> bool:
    if not is_in_future(now, start):
        return False
    if min_start is not None and start < min_start:
        return False
    return is_valid_period(schedule, start, TimePeriod(start, end), zones=zones)


def compute_start_time(
    schedule: WeeklySchedule,
    service: ServiceConfig,
    now: datetime,
    *,
    zones: TimezoneLookup = default_zones,
) -> datetime:
    """Earliest bookable start for a service, honouring its lead time."""
    start = now + timedelta(minutes=service.initial_padding)
    return next_valid_start(schedule, start, service.interval, zones=zones)


def boundary_times(
    schedule: WeeklySchedule,
    reference: datetime,
    *,
    zones: TimezoneLookup = default_zones,
) -> Tuple[Optional[datetime], Optional[datetime]]:
    tz = zones.get(schedule.timezone)
    schedule = _ensure_resolved(schedule, reference, zones)
    ref = reference.astimezone(tz)
    periods = schedule.day(Weekday.of(ref.date())).periods
    if not periods:
        return None, None
    first = shift_to_date(ref, periods[0].start, periods[0].end)[0]
    last = shift_to_date(ref, periods[-1].start, periods[-1].end)[1]
    return first, last


def working_minutes(
    schedule: WeeklySchedule,
    reference: datetime,
    *,
    zones: TimezoneLookup = default_zones,
) -> timedelta:
    tz = zones.get(schedule.timezone)
    schedule = _ensure_resolved(schedule, reference, zones)
    day_schedule = schedule.day(Weekday.of(local_date(reference, tz)))
    return sum((period.duration for period in day_schedule.periods), timedelta(0))


def unavailable_days(schedule: WeeklySchedule) -> List[Weekday]:
    days: Dict[Weekday, bool] = {}
    for day in Weekday:
        day_schedule = schedule.day(day)
        if schedule.resolved:
            days[day] = not day_schedule.periods
        else:
            days[day] = day_schedule.unavailable or not day_schedule.durations
    return [day for day, closed in days.items() if closed]
