"""Exceptions raised by the scheduling engine."""

from __future__ import annotations

from typing import Iterable, List, Tuple


class SchedulerError(Exception):
    pass


class ConfigurationError(SchedulerError):
    pass


class InvalidScheduleConfiguration(SchedulerError):
    """Overlapping working hours, or more than one block crossing midnight."""

    def __init__(self, conflicts: Iterable[Tuple[str, int]]) -> None:
        self.conflicts: List[Tuple[str, int]] = list(conflicts)
        detail = ", ".join(f"{day} (block {index})" for day, index in self.conflicts)
        super().__init__(f"conflicting working hours: {detail}")


class InvalidRuleFormat(SchedulerError):
    def __init__(self, rule: str, reason: str) -> None:
        self.rule = rule
        self.reason = reason
        super().__init__(f"parse rule: {rule!r}: {reason}")


class NoAvailabilityFound(SchedulerError):
    pass


class StorageError(SchedulerError):
    pass


class GenerationPersistenceFailure(SchedulerError):
    pass


class GenerationCancelled(SchedulerError):
    pass
