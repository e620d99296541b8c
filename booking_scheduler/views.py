"""Plain-dict views of schedules and bookings in a display timezone."""

from __future__ import annotations

from datetime import tzinfo
from typing import Any, Dict, List

from .models import BookingInstance, Weekday, WeeklySchedule


def _hhmm(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def schedule_view(schedule: WeeklySchedule, tz: tzinfo) -> List[Dict[str, Any]]:
    rows = []
    for day in Weekday:
        day_schedule = schedule.day(day)
        row: Dict[str, Any] = {
            "day": day.name.title(),
            "unavailable": day_schedule.unavailable,
            "hours": [
                f"{d.start:%H:%M} +{_hhmm(d.duration_minutes)}" for d in day_schedule.durations
            ],
            "periods": [],
        }
        for period in day_schedule.periods:
            start = period.start.astimezone(tz)
            end = period.end.astimezone(tz)
            row["periods"].append(f"{start:%a %H:%M} - {end:%a %H:%M}")
        rows.append(row)
    return rows


def instance_view(instance: BookingInstance, tz: tzinfo) -> Dict[str, Any]:
    start = instance.time_from.astimezone(tz)
    end = instance.time_to.astimezone(tz)
    return {
        "id": instance.id,
        "series": instance.parent_id,
        "date": f"{start:%Y-%m-%d}",
        "time": f"{start:%H:%M} - {end:%H:%M}",
        "confirmed": instance.confirmed,
        "cancelled": instance.deleted,
        "recurring": instance.is_series,
    }
