"""Clock and schedule-provider ports, with simple adapters."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Protocol, Tuple

from .models import ServiceConfig, WeeklySchedule


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock:
    """A clock that only moves when told to."""

    def __init__(self, now: datetime) -> None:
        if now.tzinfo is None:
            raise ValueError("clock time must be timezone-aware")
        self._now = now

    def now(self) -> datetime:
        return self._now

    def set(self, now: datetime) -> None:
        self._now = now

    def advance(self, **kwargs: float) -> datetime:
        self._now = self._now + timedelta(**kwargs)
        return self._now


class ScheduleProvider(Protocol):
    def get_schedule(self, provider_id: Optional[str]) -> Optional[WeeklySchedule]: ...

    def get_service(self, provider_id: Optional[str], service_id: Optional[str]) -> Optional[ServiceConfig]: ...


class StaticScheduleProvider:
    def __init__(
        self,
        schedules: Optional[Dict[str, WeeklySchedule]] = None,
        services: Optional[Dict[Tuple[str, str], ServiceConfig]] = None,
    ) -> None:
        self.schedules = dict(schedules or {})
        self.services = dict(services or {})

    def get_schedule(self, provider_id: Optional[str]) -> Optional[WeeklySchedule]:
        if provider_id is None:
            return None
        return self.schedules.get(provider_id)

    def get_service(self, provider_id: Optional[str], service_id: Optional[str]) -> Optional[ServiceConfig]:
        if provider_id is None or service_id is None:
            return None
        return self.services.get((provider_id, service_id))
