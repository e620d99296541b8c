"""Recurrence rules: selection to RFC5545 text, parsing and expansion."""

from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, Iterator, List, Optional, Union

from dateutil import rrule as du_rrule

from .errors import InvalidRuleFormat
from .models import ByDay, Frequency, IntervalKind, RecurrenceSelection, Weekday

logger = logging.getLogger(__name__)

RULE_SEPARATOR = "|"

ONE_TIME = RecurrenceSelection("One-Time Only", IntervalKind.NONE, None, 1)
DAILY = RecurrenceSelection("Daily", IntervalKind.DAILY, Frequency.DAILY, 1)
WEEKLY = RecurrenceSelection("Weekly", IntervalKind.WEEKLY, Frequency.WEEKLY, 1)
EVERY_TWO_WEEKS = RecurrenceSelection(
    "Every Two Weeks", IntervalKind.BIWEEKLY, Frequency.WEEKLY, 2
)
MONTHLY = RecurrenceSelection("Monthly", IntervalKind.MONTHLY, Frequency.MONTHLY, 1)

SELECTIONS = (ONE_TIME, DAILY, WEEKLY, EVERY_TWO_WEEKS, MONTHLY)

_DU_FREQ = {
    Frequency.DAILY: du_rrule.DAILY,
    Frequency.WEEKLY: du_rrule.WEEKLY,
    Frequency.MONTHLY: du_rrule.MONTHLY,
}
_KEYS = ("FREQ", "INTERVAL", "BYDAY", "WKST", "UNTIL")


def _format(dt: datetime) -> str:
    """Format a datetime in UTC with trailing Z."""
    return dt.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def _parse_until(rule: str, value: str) -> datetime:
    try:
        return datetime.strptime(value, "%Y%m%dT%H%M%SZ").replace(tzinfo=timezone.utc)
    except ValueError:
        raise InvalidRuleFormat(rule, f"bad UNTIL: {value}") from None


def selection_for(kind: IntervalKind) -> Optional[RecurrenceSelection]:
    for selection in SELECTIONS:
        if selection.interval_kind == kind:
            return selection
    return None


def parse_selection(label: Optional[str]) -> Optional[RecurrenceSelection]:
    if label is None:
        return None
    for selection in SELECTIONS:
        if selection.label == label:
            return selection
    return None


@dataclass
class RecurrenceRule:
    frequency: Frequency
    interval: int = 1
    by_day: Optional[ByDay] = None
    week_start: Weekday = Weekday.MONDAY
    until: Optional[datetime] = None
    dt_start: Optional[datetime] = field(default=None, compare=False)

    def __str__(self) -> str:
        parts = [f"FREQ={self.frequency.value}", f"INTERVAL={self.interval}"]
        if self.by_day is not None:
            parts.append(f"BYDAY={self.by_day}")
        parts.append(f"WKST={self.week_start.code}")
        if self.until is not None:
            parts.append(f"UNTIL={_format(self.until)}")
        return ";".join(parts)

    def to_rrule(self, dt_start: datetime) -> du_rrule.rrule:
        kwargs: Dict[str, object] = {
            "dtstart": dt_start,
            "interval": self.interval,
            "wkst": int(self.week_start),
        }
        if self.by_day is not None:
            kwargs["byweekday"] = du_rrule.weekday(int(self.by_day.weekday), self.by_day.offset)
        if self.until is not None:
            kwargs["until"] = self.until.astimezone(dt_start.tzinfo)
        return du_rrule.rrule(_DU_FREQ[self.frequency], **kwargs)


def find_by_day(anchor: datetime) -> ByDay:
    """Weekday of ``anchor`` with its ordinal in the month; the last one is -1."""
    weekday = Weekday.of(anchor.date())
    offset = (anchor.day - 1) // 7 + 1
    days_in_month = calendar.monthrange(anchor.year, anchor.month)[1]
    if offset > 4 or anchor.day + 7 > days_in_month:
        offset = -1
    return ByDay(weekday, offset)


def build_rule(selection: Optional[RecurrenceSelection], anchor: datetime) -> Optional[RecurrenceRule]:
    if selection is None or selection.frequency_unit is None:
        return None
    rule = RecurrenceRule(selection.frequency_unit, selection.repeat_interval)
    if rule.frequency == Frequency.MONTHLY:
        rule.by_day = find_by_day(anchor)
    return rule


def to_rule_string(selection: Optional[RecurrenceSelection], anchor: datetime) -> str:
    rule = build_rule(selection, anchor)
    return str(rule) if rule is not None else ""


def _parse_by_day(rule: str, value: str) -> ByDay:
    if "," in value:
        raise InvalidRuleFormat(rule, "only one BYDAY entry is supported")
    code = value[-2:]
    try:
        weekday = Weekday.from_code(code)
    except ValueError:
        raise InvalidRuleFormat(rule, f"bad BYDAY weekday: {value}") from None
    prefix = value[:-2]
    if not prefix:
        return ByDay(weekday)
    try:
        offset = int(prefix)
    except ValueError:
        raise InvalidRuleFormat(rule, f"bad BYDAY offset: {value}") from None
    if offset == 0 or not -5 <= offset <= 5:
        raise InvalidRuleFormat(rule, f"BYDAY offset out of range: {value}")
    return ByDay(weekday, offset)


def parse(rule_string: str) -> RecurrenceRule:
    text = rule_string.strip()
    if text.upper().startswith("RRULE:"):
        text = text[len("RRULE:"):]
    if not text:
        raise InvalidRuleFormat(rule_string, "empty rule")

    fields: Dict[str, str] = {}
    for part in text.split(";"):
        key, sep, value = part.partition("=")
        key = key.strip().upper()
        if not sep or not value:
            raise InvalidRuleFormat(rule_string, f"bad component: {part!r}")
        if key not in _KEYS:
            raise InvalidRuleFormat(rule_string, f"unsupported component: {key}")
        if key in fields:
            raise InvalidRuleFormat(rule_string, f"duplicate component: {key}")
        fields[key] = value.strip().upper()

    if "FREQ" not in fields:
        raise InvalidRuleFormat(rule_string, "missing FREQ")
    try:
        frequency = Frequency(fields["FREQ"])
    except ValueError:
        raise InvalidRuleFormat(rule_string, f"unsupported FREQ: {fields['FREQ']}") from None

    interval = 1
    if "INTERVAL" in fields:
        if not fields["INTERVAL"].isdigit() or int(fields["INTERVAL"]) < 1:
            raise InvalidRuleFormat(rule_string, f"bad INTERVAL: {fields['INTERVAL']}")
        interval = int(fields["INTERVAL"])

    by_day = _parse_by_day(rule_string, fields["BYDAY"]) if "BYDAY" in fields else None
    if frequency == Frequency.MONTHLY:
        if by_day is None or by_day.offset is None:
            raise InvalidRuleFormat(rule_string, "monthly rule needs one BYDAY with an ordinal")
    elif by_day is not None and by_day.offset is not None:
        raise InvalidRuleFormat(rule_string, "BYDAY ordinal is only valid for monthly rules")

    week_start = Weekday.MONDAY
    if "WKST" in fields:
        try:
            week_start = Weekday.from_code(fields["WKST"])
        except ValueError:
            raise InvalidRuleFormat(rule_string, f"bad WKST: {fields['WKST']}") from None

    until = _parse_until(rule_string, fields["UNTIL"]) if "UNTIL" in fields else None
    return RecurrenceRule(frequency, interval, by_day, week_start, until)


class Expansion:
    """Occurrences of a rule inside ``[window_start, window_end)``, in UTC.

    Iterating again restarts from the beginning of the window.
    """

    def __init__(self, rule: RecurrenceRule, window_start: datetime, window_end: datetime) -> None:
        self.rule = rule
        self.window_start = window_start
        self.window_end = window_end

    def __iter__(self) -> Iterator[datetime]:
        dt_start = self.rule.dt_start or self.window_start
        for occurrence in self.rule.to_rrule(dt_start):
            if occurrence >= self.window_end:
                break
            if occurrence >= self.window_start:
                yield occurrence.astimezone(timezone.utc)


def expand(rule: RecurrenceRule, window_start: datetime, window_end: datetime) -> Expansion:
    logger.debug(
        "Expanding rule %s from %s between %s and %s",
        rule,
        rule.dt_start,
        window_start,
        window_end,
    )
    return Expansion(rule, window_start, window_end)


def terminate(rule: Union[RecurrenceRule, str], until: datetime) -> str:
    """Cap a rule at ``until``, e.g. before handing it to an external calendar."""
    if isinstance(rule, str):
        rule = parse(rule)
    rule.until = until
    return str(rule)


def join_rules(rules: Iterable[str]) -> Optional[str]:
    rules = [r for r in rules if r]
    if not rules:
        return None
    return RULE_SEPARATOR.join(rules)


def split_rules(text: Optional[str]) -> List[str]:
    if not text:
        return []
    return [r for r in text.split(RULE_SEPARATOR) if r]
