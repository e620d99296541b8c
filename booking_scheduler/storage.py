"""Storage port for booking instances, with in-memory and JSON-file adapters."""

from __future__ import annotations

import copy
import json
import logging
import os
import threading
from contextlib import contextmanager
from datetime import datetime, time
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Protocol

from .errors import StorageError
from .models import (
    MAX_TIME,
    BookingInstance,
    DaySchedule,
    TimeDuration,
    Weekday,
    WeeklySchedule,
)
from .recurrence import join_rules, split_rules

logger = logging.getLogger(__name__)


class Storage(Protocol):
    def transaction(self) -> Any: ...

    def load_instance(self, instance_id: str) -> Optional[BookingInstance]: ...

    def list_instances(self, parent_id: str, include_deleted: bool = False) -> List[BookingInstance]: ...

    def load_series_due_for_generation(self, before_horizon: datetime, limit: int) -> List[BookingInstance]: ...

    def claim(self, series_ids: List[str], now: datetime) -> int: ...

    def release_stale_claims(self, older_than: datetime) -> int: ...

    def save_instance(self, instance: BookingInstance) -> None: ...

    def soft_delete_instances_after(
        self, parent_id: str, after: datetime, exclude_id: Optional[str] = None
    ) -> int: ...

    def update_series_horizon(self, parent_id: str, horizon: Optional[datetime]) -> None: ...

    def flag_series(self, parent_id: str, reason: str) -> None: ...

    def update_padding_for_service(self, service_id: str, padding: int, after: datetime) -> int: ...


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def instance_to_record(instance: BookingInstance) -> Dict[str, Any]:
    return {
        "id": instance.id,
        "parent_id": instance.parent_id,
        "provider_id": instance.provider_id,
        "service_id": instance.service_id,
        "service_duration": instance.service_duration,
        "service_padding": instance.service_padding,
        "time_from": _iso(instance.time_from),
        "time_to": _iso(instance.time_to),
        "time_from_padded": _iso(instance.time_from_padded),
        "time_to_padded": _iso(instance.time_to_padded),
        "confirmed": instance.confirmed,
        "client_created": instance.client_created,
        "deleted": instance.deleted,
        "recurrence_rules": join_rules(instance.recurrence_rules),
        "recurrence_start": _iso(instance.recurrence_start),
        "recurrence_instance_end": _iso(instance.recurrence_instance_end),
        "recurrence_error": instance.recurrence_error,
        "processing_since": _iso(instance.processing_since),
    }


def instance_from_record(record: Dict[str, Any]) -> BookingInstance:
    try:
        return BookingInstance(
            id=record.get("id"),
            parent_id=record.get("parent_id"),
            provider_id=record.get("provider_id"),
            service_id=record.get("service_id"),
            service_duration=int(record.get("service_duration", 0)),
            service_padding=int(record.get("service_padding", 0)),
            time_from=datetime.fromisoformat(record["time_from"]),
            time_to=datetime.fromisoformat(record["time_to"]),
            time_from_padded=_dt(record.get("time_from_padded")),
            time_to_padded=_dt(record.get("time_to_padded")),
            confirmed=bool(record.get("confirmed", False)),
            client_created=bool(record.get("client_created", False)),
            deleted=bool(record.get("deleted", False)),
            recurrence_rules=split_rules(record.get("recurrence_rules")),
            recurrence_start=_dt(record.get("recurrence_start")),
            recurrence_instance_end=_dt(record.get("recurrence_instance_end")),
            recurrence_error=record.get("recurrence_error"),
            processing_since=_dt(record.get("processing_since")),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise StorageError(f"bad booking record {record.get('id')!r}: {exc}") from exc


def schedule_from_record(record: Dict[str, Any]) -> WeeklySchedule:
    """Build a schedule from ``{"timezone": ..., "days": {"Monday": {...}}}``."""
    days: Dict[Weekday, DaySchedule] = {}
    try:
        for name, day in record.get("days", {}).items():
            weekday = Weekday[name.upper()]
            durations = [
                TimeDuration(time.fromisoformat(d["start"]), int(d["duration"]))
                for d in day.get("durations", [])
            ]
            days[weekday] = DaySchedule(
                weekday, durations, unavailable=bool(day.get("unavailable", False))
            )
    except (KeyError, TypeError, ValueError) as exc:
        raise StorageError(f"bad schedule record: {exc}") from exc
    return WeeklySchedule(days=days, timezone=record.get("timezone", "UTC"))


def schedule_to_record(schedule: WeeklySchedule) -> Dict[str, Any]:
    days: Dict[str, Any] = {}
    for weekday, day in sorted(schedule.days.items()):
        entry: Dict[str, Any] = {
            "unavailable": day.unavailable,
            "durations": [
                {"start": d.start.strftime("%H:%M"), "duration": d.duration_minutes}
                for d in day.durations
            ],
        }
        if day.periods:
            entry["periods"] = [
                {"start": _iso(p.start), "end": _iso(p.end)} for p in day.periods
            ]
        days[weekday.name.title()] = entry
    return {"timezone": schedule.timezone, "days": days}


class MemoryStorage:
    """Thread-safe in-process store.

    A transaction holds the store's lock and restores a snapshot if the block
    raises, so nothing written inside a failed attempt stays visible.
    """

    def __init__(self, instances: Optional[List[BookingInstance]] = None) -> None:
        self._instances: Dict[str, BookingInstance] = {}
        self._lock = threading.RLock()
        self._snapshots: List[Dict[str, BookingInstance]] = []
        for instance in instances or []:
            self._put(instance)

    def _put(self, instance: BookingInstance) -> None:
        if instance.id is None:
            raise StorageError("cannot store a booking without an id")
        self._instances[instance.id] = copy.deepcopy(instance)

    def _commit(self) -> None:
        pass

    @contextmanager
    def transaction(self) -> Iterator["MemoryStorage"]:
        with self._lock:
            self._snapshots.append(copy.deepcopy(self._instances))
            try:
                yield self
            except BaseException:
                self._instances = self._snapshots.pop()
                raise
            snapshot = self._snapshots.pop()
            if not self._snapshots:
                try:
                    self._commit()
                except Exception:
                    self._instances = snapshot
                    raise

    def load_instance(self, instance_id: str) -> Optional[BookingInstance]:
        with self._lock:
            instance = self._instances.get(instance_id)
            return copy.deepcopy(instance) if instance is not None else None

    def list_instances(self, parent_id: str, include_deleted: bool = False) -> List[BookingInstance]:
        with self._lock:
            found = [
                copy.deepcopy(i)
                for i in self._instances.values()
                if i.parent_id == parent_id and (include_deleted or not i.deleted)
            ]
        return sorted(found, key=lambda i: i.time_from)

    def load_series_due_for_generation(self, before_horizon: datetime, limit: int) -> List[BookingInstance]:
        with self._lock:
            due = [
                copy.deepcopy(i)
                for i in self._instances.values()
                if i.is_series
                and not i.deleted
                and i.recurrence_error is None
                and i.processing_since is None
                and i.recurrence_instance_end != MAX_TIME
                and (i.recurrence_instance_end is None or i.recurrence_instance_end < before_horizon)
            ]
        due.sort(key=lambda i: i.time_from)
        return due[:limit]

    def claim(self, series_ids: List[str], now: datetime) -> int:
        count = 0
        with self.transaction():
            for series_id in series_ids:
                instance = self._instances.get(series_id)
                if instance is None or instance.processing_since is not None:
                    continue
                instance.processing_since = now
                count += 1
        return count

    def release_stale_claims(self, older_than: datetime) -> int:
        count = 0
        with self.transaction():
            for instance in self._instances.values():
                if instance.processing_since is not None and instance.processing_since < older_than:
                    instance.processing_since = None
                    count += 1
        return count

    def save_instance(self, instance: BookingInstance) -> None:
        with self.transaction():
            self._put(instance)

    def soft_delete_instances_after(
        self, parent_id: str, after: datetime, exclude_id: Optional[str] = None
    ) -> int:
        count = 0
        with self.transaction():
            for instance in self._instances.values():
                if (
                    instance.parent_id == parent_id
                    and instance.id not in (parent_id, exclude_id)
                    and not instance.deleted
                    and instance.time_from > after
                ):
                    instance.deleted = True
                    count += 1
        return count

    def _series(self, parent_id: str) -> BookingInstance:
        instance = self._instances.get(parent_id)
        if instance is None:
            raise StorageError(f"unknown series: {parent_id}")
        return instance

    def update_series_horizon(self, parent_id: str, horizon: Optional[datetime]) -> None:
        with self.transaction():
            series = self._series(parent_id)
            series.recurrence_instance_end = horizon
            series.processing_since = None

    def flag_series(self, parent_id: str, reason: str) -> None:
        with self.transaction():
            series = self._series(parent_id)
            series.recurrence_error = reason
            series.processing_since = None

    def update_padding_for_service(self, service_id: str, padding: int, after: datetime) -> int:
        count = 0
        with self.transaction():
            for instance in self._instances.values():
                if instance.service_id == service_id and not instance.deleted and instance.time_from > after:
                    instance.apply_padding(padding)
                    count += 1
        return count


class JsonStorage(MemoryStorage):
    """Keeps bookings in ``<json_dir>/bookings.json``, rewritten on commit."""

    def __init__(self, json_dir: Path | str = Path("out/json")) -> None:
        self.json_dir = Path(json_dir)
        self.json_dir.mkdir(parents=True, exist_ok=True)
        super().__init__()
        path = self._json_path()
        if path.exists():
            with path.open("r", encoding="utf-8") as f:
                try:
                    records = json.load(f)
                except json.JSONDecodeError as exc:
                    raise StorageError(f"cannot read {path}: {exc}") from exc
            for record in records:
                self._put(instance_from_record(record))
            logger.debug("Loaded %d bookings from %s", len(records), path)

    def _json_path(self) -> Path:
        return self.json_dir / "bookings.json"

    def _commit(self) -> None:
        path = self._json_path()
        tmp = path.with_suffix(".json.tmp")
        records = [instance_to_record(i) for i in self._instances.values()]
        try:
            with tmp.open("w", encoding="utf-8") as f:
                json.dump(records, f, indent=2)
            os.replace(tmp, path)
        except OSError as exc:
            raise StorageError(f"cannot write {path}: {exc}") from exc


def load_schedules(json_dir: Path | str) -> Dict[str, WeeklySchedule]:
    """Read ``<json_dir>/schedules.json``: provider id to schedule record."""
    path = Path(json_dir) / "schedules.json"
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        data = json.load(f)
    return {provider_id: schedule_from_record(record) for provider_id, record in data.items()}
