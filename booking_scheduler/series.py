"""Recurring booking series: instance generation, edits and the periodic sweep."""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterator, List, Optional
from zoneinfo import ZoneInfo

from . import recurrence
from .availability import is_valid_period
from .config import EngineConfig
from .errors import (
    GenerationCancelled,
    GenerationPersistenceFailure,
    InvalidRuleFormat,
    StorageError,
)
from .models import (
    MAX_TIME,
    BookingInstance,
    Frequency,
    RecurrenceSelection,
    SeriesState,
    ServiceConfig,
    TimePeriod,
    WeeklySchedule,
)
from .ports import Clock, ScheduleProvider, SystemClock
from .storage import Storage
from .timeutil import add_months
from .util import UTC, TimezoneLookup, default_zones

logger = logging.getLogger(__name__)


@dataclass
class GenerationReport:
    """Outcome of one generation pass; unpacks as ``(instances, horizon)``."""

    instances: List[BookingInstance] = field(default_factory=list)
    horizon: Optional[datetime] = None
    warnings: List[str] = field(default_factory=list)

    def __iter__(self) -> Iterator:
        return iter((self.instances, self.horizon))


@dataclass
class SweepReport:
    processed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    flagged: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    released: int = 0
    instances: int = 0
    warnings: List[str] = field(default_factory=list)


def child_id(series_id: str, origin: datetime, occurrence: datetime) -> str:
    """Stable id of the instance a series produces at ``occurrence``."""
    name = f"booking:{series_id}/{origin.astimezone(UTC).isoformat()}/{occurrence.astimezone(UTC).isoformat()}"
    return str(uuid.uuid5(uuid.NAMESPACE_URL, name))


class SeriesGenerator:
    def __init__(
        self,
        storage: Storage,
        schedules: Optional[ScheduleProvider] = None,
        clock: Optional[Clock] = None,
        config: Optional[EngineConfig] = None,
        zones: TimezoneLookup = default_zones,
    ) -> None:
        self.storage = storage
        self.schedules = schedules
        self.clock = clock or SystemClock()
        self.config = config or EngineConfig()
        self.zones = zones

    def _schedule(self, instance: BookingInstance) -> Optional[WeeklySchedule]:
        if self.schedules is None:
            return None
        return self.schedules.get_schedule(instance.provider_id)

    def _service(self, instance: BookingInstance) -> Optional[ServiceConfig]:
        if self.schedules is None:
            return None
        return self.schedules.get_service(instance.provider_id, instance.service_id)

    def _zone(self, instance: BookingInstance) -> ZoneInfo:
        schedule = self._schedule(instance)
        if schedule is None:
            return UTC
        return self.zones.get(schedule.timezone)

    def _template(
        self, series: BookingInstance, confirmed: bool, client_created: bool
    ) -> BookingInstance:
        template = copy.deepcopy(series)
        template.parent_id = series.id
        template.confirmed = confirmed
        template.client_created = client_created
        template.deleted = False
        template.recurrence_rules = []
        template.recurrence_start = None
        template.recurrence_instance_end = None
        template.recurrence_error = None
        template.processing_since = None
        template.time_change = False
        return template

    def _check_cancelled(
        self, deadline: Optional[datetime], cancel: Optional[threading.Event]
    ) -> None:
        if cancel is not None and cancel.is_set():
            raise GenerationCancelled("generation cancelled")
        if deadline is not None and self.clock.now() >= deadline:
            raise GenerationCancelled(f"generation passed its deadline {deadline.isoformat()}")

    def generate(
        self,
        series: BookingInstance,
        rule_start: datetime,
        confirmed: bool,
        client_created: bool,
        *,
        deadline: Optional[datetime] = None,
        cancel: Optional[threading.Event] = None,
    ) -> GenerationReport:
        """Create the series' instances for one window starting at ``rule_start``.

        Every rule is expanded from the series origin in the provider's zone,
        so occurrences keep their local time of day across DST changes. Each
        instance lasts the service duration and carries its padding. An
        occurrence whose instance already exists is reported but not written
        again, unless that instance was cancelled, in which case it is written
        back fresh. One outside the provider's working hours is skipped with a
        warning. Both still count towards the horizon, which is the latest
        occurrence end, or ``MAX_TIME`` when the rules produced nothing.

        Writes happen in one storage transaction; on any failure none of them
        is kept.
        """
        report = GenerationReport()
        if not series.recurrence_rules:
            return report
        rules = [recurrence.parse(rule) for rule in series.recurrence_rules]

        zone = self._zone(series)
        origin = (series.recurrence_start or series.time_from).astimezone(zone)
        window_end = add_months(rule_start, self.config.generate_months)
        schedule = self._schedule(series)
        anchors = {series.time_from, origin}
        service = self._service(series)
        if service is not None:
            duration, padding = service.duration, service.padding
        else:
            duration, padding = series.service_duration, series.service_padding
        length = timedelta(minutes=duration) if duration > 0 else series.time_to - series.time_from
        template = self._template(series, confirmed, client_created)
        template.service_duration = duration
        template.service_padding = padding

        count = 0
        horizon: Optional[datetime] = None
        try:
            with self.storage.transaction():
                for rule in rules:
                    rule.dt_start = origin
                    for occurrence in recurrence.expand(rule, rule_start, window_end):
                        if occurrence in anchors:
                            continue
                        count += 1
                        end = occurrence + length
                        if horizon is None or end > horizon:
                            horizon = end

                        if schedule is not None and not is_valid_period(
                            schedule, occurrence, TimePeriod(occurrence, end), zones=self.zones
                        ):
                            message = f"series {series.id}: {occurrence.isoformat()} is outside working hours"
                            logger.warning("Skipping occurrence: %s", message)
                            report.warnings.append(message)
                            continue

                        instance_id = child_id(series.id, origin, occurrence)
                        existing = self.storage.load_instance(instance_id)
                        if existing is not None and not existing.deleted:
                            report.instances.append(existing)
                            continue

                        self._check_cancelled(deadline, cancel)
                        instance = copy.deepcopy(template)
                        instance.id = instance_id
                        instance.time_from = occurrence
                        instance.time_to = end
                        instance.apply_padding()
                        self.storage.save_instance(instance)
                        logger.debug(
                            "%s instance %s at %s",
                            "Restored" if existing is not None else "Created",
                            instance.id,
                            occurrence.isoformat(),
                        )
                        report.instances.append(instance)
        except StorageError as exc:
            raise GenerationPersistenceFailure(f"series {series.id}: {exc}") from exc

        report.horizon = MAX_TIME if count == 0 else horizon
        logger.info(
            "Generated %d instances for series %s up to %s",
            len(report.instances),
            series.id,
            report.horizon.isoformat(),
        )
        return report

    def _reanchor(self, rules: List[str], anchor: datetime) -> List[str]:
        """Move monthly rules onto the weekday and ordinal of ``anchor``."""
        moved = []
        for text in rules:
            rule = recurrence.parse(text)
            if rule.frequency == Frequency.MONTHLY:
                rule.by_day = recurrence.find_by_day(anchor)
            moved.append(str(rule))
        return moved

    def regenerate_on_change(
        self,
        series: BookingInstance,
        changed_from: datetime,
        cascade: bool,
        new_time: Optional[datetime] = None,
        new_rules: Optional[List[str]] = None,
        *,
        edited: Optional[BookingInstance] = None,
        cancelled: bool = False,
    ) -> List[BookingInstance]:
        """Rebuild a series after "this and all following" was edited.

        Siblings after ``changed_from`` are soft-deleted and the horizon is
        cleared. A re-timed parent is regenerated at once from its new time;
        a re-timed child becomes the new origin and the next sweep rebuilds
        the tail from it. A cancellation caps the rules just before
        ``changed_from``.

        The caller saves ``edited`` when it is not the series itself.
        """
        if not cascade:
            return []
        edited = edited if edited is not None else series
        if new_time is not None:
            edited.set_time_from(new_time)
        if new_rules is not None:
            series.recurrence_rules = list(new_rules)
        changed = edited.time_change or new_rules is not None

        instances: List[BookingInstance] = []
        zone = self._zone(series)
        with self.storage.transaction():
            deleted = self.storage.soft_delete_instances_after(series.id, changed_from, exclude_id=edited.id)
            logger.info("Cancelled %d instances of series %s after %s", deleted, series.id, changed_from.isoformat())
            series.recurrence_instance_end = None
            series.processing_since = None

            if cancelled:
                until = changed_from - timedelta(seconds=1)
                series.recurrence_rules = [recurrence.terminate(rule, until) for rule in series.recurrence_rules]
            elif changed:
                series.recurrence_start = edited.time_from
                series.recurrence_rules = self._reanchor(series.recurrence_rules, edited.time_from.astimezone(zone))
                if edited.id == series.id:
                    self.storage.save_instance(series)
                    report = self.generate(series, series.time_from, series.confirmed, series.client_created)
                    series.recurrence_instance_end = report.horizon
                    instances = report.instances
            self.storage.save_instance(series)
        return instances

    def save_booking(
        self,
        booking: BookingInstance,
        *,
        change_all_following: bool = False,
        deleted: bool = False,
    ) -> BookingInstance:
        """Persist a booking, creating or rebuilding its series as needed."""
        now = self.clock.now()
        create = booking.id is None
        with self.storage.transaction():
            if create:
                booking.id = str(uuid.uuid4())
                if booking.is_recurring:
                    booking.parent_id = booking.id
                    booking.recurrence_start = booking.recurrence_start or booking.time_from
            if deleted:
                booking.deleted = True

            if create:
                self.storage.save_instance(booking)
                if not booking.deleted and self.needs_generation(booking, now):
                    report = self.generate(booking, booking.time_from, booking.confirmed, booking.client_created)
                    booking.recurrence_instance_end = report.horizon
            elif change_all_following and booking.parent_id and (booking.time_change or booking.deleted):
                previous = self.storage.load_instance(booking.id)
                changed_from = booking.time_from
                if previous is not None and previous.time_from < changed_from:
                    changed_from = previous.time_from
                if booking.parent_id == booking.id:
                    series = booking
                else:
                    series = self.storage.load_instance(booking.parent_id)
                    if series is None:
                        raise StorageError(f"unknown series: {booking.parent_id}")
                self.regenerate_on_change(
                    series, changed_from, True, edited=booking, cancelled=booking.deleted
                )
            booking.time_change = False
            self.storage.save_instance(booking)
        return booking

    def set_recurrence(
        self,
        booking: BookingInstance,
        selection: Optional[RecurrenceSelection],
        reset_start: bool = False,
    ) -> None:
        rule = recurrence.to_rule_string(selection, booking.time_from.astimezone(self._zone(booking)))
        if not rule:
            booking.recurrence_rules = []
            booking.recurrence_start = None
            return
        booking.recurrence_rules = [rule]
        if reset_start or booking.recurrence_start is None:
            booking.recurrence_start = booking.time_from

    def needs_generation(self, series: BookingInstance, now: datetime) -> bool:
        if not series.is_recurring:
            return False
        horizon = series.recurrence_instance_end
        return horizon is None or now > horizon

    def series_state(self, series: BookingInstance, now: Optional[datetime] = None) -> SeriesState:
        if not series.is_recurring:
            return SeriesState.NO_RULE
        horizon = series.recurrence_instance_end
        if horizon == MAX_TIME:
            return SeriesState.TERMINATED
        now = now or self.clock.now()
        if horizon is None or horizon < add_months(now, self.config.look_ahead_months):
            return SeriesState.ACTIVE
        return SeriesState.UP_TO_DATE

    def repad_service(self, service_id: str, padding: int) -> int:
        count = self.storage.update_padding_for_service(service_id, padding, self.clock.now())
        logger.info("Updated padding of %d bookings for service %s", count, service_id)
        return count

    def _resume_from(self, series: BookingInstance) -> datetime:
        """Where to pick a series up again once its horizon was cleared.

        That is the end of its latest live instance, or its origin when no
        instance lies past the origin.
        """
        start = series.recurrence_start or series.time_from
        for instance in self.storage.list_instances(series.id):
            if instance.id != series.id and instance.time_to > start:
                start = instance.time_to
        return start

    def process_due_series(
        self,
        limit: Optional[int] = None,
        *,
        deadline: Optional[datetime] = None,
        cancel: Optional[threading.Event] = None,
    ) -> SweepReport:
        """Extend every series whose instances run out within the look-ahead.

        Each series is claimed before work starts, so concurrent sweeps never
        process the same one. A series with a broken rule is flagged and left
        alone from then on; one whose writes fail keeps its claim until it
        goes stale and is picked up again.
        """
        report = SweepReport()
        now = self.clock.now()
        report.released = self.storage.release_stale_claims(
            now - timedelta(minutes=self.config.claim_timeout_minutes)
        )
        if report.released:
            logger.warning("Released %d stale claims", report.released)

        before = add_months(now, self.config.look_ahead_months)
        due = self.storage.load_series_due_for_generation(before, limit or self.config.batch_size)
        logger.info("Found %d series due for generation", len(due))

        for series in due:
            if self.storage.claim([series.id], now) != 1:
                logger.debug("Series %s was claimed elsewhere", series.id)
                report.skipped.append(series.id)
                continue
            try:
                rule_start = series.recurrence_instance_end or self._resume_from(series)
                with self.storage.transaction():
                    generated = self.generate(
                        series,
                        rule_start,
                        series.confirmed,
                        series.client_created,
                        deadline=deadline,
                        cancel=cancel,
                    )
                    self.storage.update_series_horizon(series.id, generated.horizon)
            except InvalidRuleFormat as exc:
                logger.error("Flagging series %s: %s", series.id, exc)
                self.storage.flag_series(series.id, str(exc))
                report.flagged.append(series.id)
                continue
            except GenerationCancelled as exc:
                logger.warning("Stopping sweep at series %s: %s", series.id, exc)
                self.storage.update_series_horizon(series.id, series.recurrence_instance_end)
                report.skipped.append(series.id)
                break
            except (GenerationPersistenceFailure, StorageError) as exc:
                logger.error("Generation failed for series %s: %s", series.id, exc)
                report.failed.append(series.id)
                continue
            report.processed.append(series.id)
            report.instances += len(generated.instances)
            report.warnings.extend(generated.warnings)
        return report
