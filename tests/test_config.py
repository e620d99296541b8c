import logging
from zoneinfo import ZoneInfo

import pytest

from booking_scheduler.config import EngineConfig
from booking_scheduler.errors import ConfigurationError
from booking_scheduler.util import TimezoneLookup


def test_defaults():
    config = EngineConfig()
    assert config.generate_months == 2
    assert config.look_ahead_months == 1
    assert config.max_time.year == 9999


def test_from_env_overrides():
    config = EngineConfig.from_env(
        {"BOOKING_SCHEDULER_GENERATE_MONTHS": "3", "BOOKING_SCHEDULER_BATCH_SIZE": "10"},
        look_ahead_months=2,
    )
    assert config.generate_months == 3
    assert config.look_ahead_months == 2
    assert config.batch_size == 10


def test_from_env_rejects_non_integers():
    with pytest.raises(ConfigurationError):
        EngineConfig.from_env({"BOOKING_SCHEDULER_BATCH_SIZE": "many"})


@pytest.mark.parametrize(
    "overrides",
    [
        {"generate_months": 1},
        {"look_ahead_months": -1},
        {"batch_size": 0},
        {"claim_timeout_minutes": 0},
    ],
)
def test_invalid_settings(overrides):
    with pytest.raises(ConfigurationError):
        EngineConfig(**overrides)


def test_timezone_lookup_falls_back_to_utc(caplog):
    zones = TimezoneLookup(maxsize=4)
    with caplog.at_level(logging.WARNING):
        assert zones.get("Mars/Olympus_Mons") == ZoneInfo("UTC")
    assert "Invalid timezone" in caplog.text
    assert zones.get("") == ZoneInfo("UTC")


def test_timezone_lookup_caches():
    zones = TimezoneLookup()
    assert zones.get("Europe/London") is zones.get("Europe/London")
    assert zones.cache_info().hits == 1
