"""Day boundaries, span containment and re-basing of spans onto other dates."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone, tzinfo

from dateutil.relativedelta import relativedelta

from .models import TimePeriod


def beginning_of_day(t: datetime) -> datetime:
    return datetime.combine(t.date(), time.min, t.tzinfo)


def end_of_day(t: datetime) -> datetime:
    return datetime.combine(t.date(), time.max, t.tzinfo)


def local_date(t: datetime, tz: tzinfo) -> date:
    return t.astimezone(tz).date()


def start_of_week(day: date) -> date:
    return day - timedelta(days=day.weekday())


def rebase(t: datetime, day: date, tz: tzinfo) -> datetime:
    """Move ``t`` onto ``day`` keeping its local wall-clock time in ``tz``."""
    local = t.astimezone(tz)
    return datetime.combine(day, local.time(), tz)


def shift_to_date(reference: datetime, start: datetime, end: datetime) -> tuple[datetime, datetime]:
    """Shift a span forward or back so that it starts on ``reference``'s date.

    The start keeps its local wall clock; the end keeps the span's length.
    """
    tz = reference.tzinfo
    start_adj = rebase(start, reference.date(), tz)
    end_adj = start_adj.astimezone(timezone.utc) + (end - start)
    return start_adj, end_adj.astimezone(tz)


def check_time_in(t: datetime, start: datetime, end: datetime) -> bool:
    return start <= t <= end


def is_overlap(period: TimePeriod, start: datetime, end: datetime) -> bool:
    return period.is_overlap(start, end)


def add_months(t: datetime, months: int) -> datetime:
    return t + relativedelta(months=months)


def utc_offset(tz: tzinfo, instant: datetime) -> timedelta:
    return instant.astimezone(tz).utcoffset() or timedelta(0)
