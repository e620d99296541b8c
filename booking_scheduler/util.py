"""Utility helpers."""

from __future__ import annotations

import logging
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

UTC = ZoneInfo("UTC")


def configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(levelname)s:%(name)s:%(message)s")


def parse_timezone(tz: str) -> ZoneInfo:
    return ZoneInfo(tz)


class TimezoneLookup:
    """Loads zones by name, memoizing a bounded number of them.

    ``lru_cache`` is safe to share between threads, so a single lookup can be
    handed to every worker.
    """

    def __init__(self, maxsize: int = 64) -> None:
        self._load = lru_cache(maxsize=maxsize)(self._load_zone)

    def _load_zone(self, name: str) -> ZoneInfo:
        if not name:
            return UTC
        try:
            return parse_timezone(name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Invalid timezone %r, using UTC", name)
            return UTC

    def get(self, name: str) -> ZoneInfo:
        return self._load(name)

    def cache_info(self):
        return self._load.cache_info()


default_zones = TimezoneLookup()
