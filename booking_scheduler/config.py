"""Engine settings with environment overrides."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Mapping, Optional

from .errors import ConfigurationError
from .models import MAX_TIME, Weekday

ENV_PREFIX = "BOOKING_SCHEDULER_"


@dataclass(frozen=True)
class EngineConfig:
    generate_months: int = 2
    look_ahead_months: int = 1
    batch_size: int = 100
    claim_timeout_minutes: int = 15
    default_interval_minutes: int = 15
    max_time: datetime = MAX_TIME
    work_week_start: Weekday = Weekday.MONDAY

    def __post_init__(self) -> None:
        if self.look_ahead_months < 0:
            raise ConfigurationError("look_ahead_months must not be negative")
        # series are picked up a month ahead; generating further than that
        # leaves headroom before their instances run out
        if self.generate_months <= self.look_ahead_months:
            raise ConfigurationError(
                f"generate_months ({self.generate_months}) must exceed "
                f"look_ahead_months ({self.look_ahead_months})"
            )
        if self.batch_size < 1:
            raise ConfigurationError("batch_size must be positive")
        if self.claim_timeout_minutes < 1:
            raise ConfigurationError("claim_timeout_minutes must be positive")
        if self.default_interval_minutes < 1:
            raise ConfigurationError("default_interval_minutes must be positive")
        if self.work_week_start != Weekday.MONDAY:
            raise ConfigurationError("the work week always starts on Monday")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides: int) -> "EngineConfig":
        environ = os.environ if environ is None else environ
        values = {}
        for f in fields(cls):
            if f.type not in ("int", int):
                continue
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            try:
                values[f.name] = int(raw)
            except ValueError:
                raise ConfigurationError(f"{ENV_PREFIX}{f.name.upper()} must be an integer: {raw!r}") from None
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
