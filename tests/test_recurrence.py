from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from booking_scheduler import recurrence
from booking_scheduler.errors import InvalidRuleFormat
from booking_scheduler.models import ByDay, Frequency, IntervalKind, Weekday

UTC = timezone.utc


def test_weekly_rules():
    anchor = datetime(2025, 3, 10, 9, 0, tzinfo=UTC)
    assert recurrence.to_rule_string(recurrence.WEEKLY, anchor) == "FREQ=WEEKLY;INTERVAL=1;WKST=MO"
    assert (
        recurrence.to_rule_string(recurrence.EVERY_TWO_WEEKS, anchor)
        == "FREQ=WEEKLY;INTERVAL=2;WKST=MO"
    )
    assert recurrence.to_rule_string(recurrence.DAILY, anchor) == "FREQ=DAILY;INTERVAL=1;WKST=MO"


def test_one_time_has_no_rule():
    anchor = datetime(2025, 3, 10, 9, 0, tzinfo=UTC)
    assert recurrence.to_rule_string(recurrence.ONE_TIME, anchor) == ""
    assert recurrence.to_rule_string(None, anchor) == ""


@pytest.mark.parametrize(
    "day, by_day",
    [
        (datetime(2025, 3, 11, 9, 0, tzinfo=UTC), "2TU"),
        (datetime(2025, 3, 19, 9, 0, tzinfo=UTC), "3WE"),
        (datetime(2025, 3, 1, 9, 0, tzinfo=UTC), "1SA"),
        # fifth Friday
        (datetime(2025, 1, 31, 9, 0, tzinfo=UTC), "-1FR"),
        # fourth and last Friday
        (datetime(2025, 2, 28, 9, 0, tzinfo=UTC), "-1FR"),
    ],
)
def test_monthly_rule_uses_weekday_ordinal(day, by_day):
    rule = recurrence.to_rule_string(recurrence.MONTHLY, day)
    assert rule == f"FREQ=MONTHLY;INTERVAL=1;BYDAY={by_day};WKST=MO"


def test_selection_lookups():
    assert recurrence.selection_for(IntervalKind.BIWEEKLY) is recurrence.EVERY_TWO_WEEKS
    assert recurrence.parse_selection("Monthly") is recurrence.MONTHLY
    assert recurrence.parse_selection("Yearly") is None


@pytest.mark.parametrize(
    "text",
    [
        "FREQ=WEEKLY;INTERVAL=1;WKST=MO",
        "FREQ=WEEKLY;INTERVAL=2;WKST=MO",
        "FREQ=DAILY;INTERVAL=3;WKST=MO",
        "FREQ=MONTHLY;INTERVAL=1;BYDAY=3WE;WKST=MO",
        "FREQ=MONTHLY;INTERVAL=1;BYDAY=-1FR;WKST=MO",
        "FREQ=WEEKLY;INTERVAL=2;WKST=MO;UNTIL=20250601T000000Z",
    ],
)
def test_canonical_rules_round_trip(text):
    assert str(recurrence.parse(text)) == text


def test_parse_fields():
    rule = recurrence.parse("RRULE:FREQ=MONTHLY;INTERVAL=1;BYDAY=-1FR;WKST=MO")
    assert rule.frequency == Frequency.MONTHLY
    assert rule.by_day == ByDay(Weekday.FRIDAY, -1)
    assert rule.week_start == Weekday.MONDAY
    assert rule.until is None


@pytest.mark.parametrize(
    "text",
    [
        "",
        "INTERVAL=1",
        "FREQ=YEARLY",
        "FREQ=WEEKLY;INTERVAL=0",
        "FREQ=WEEKLY;INTERVAL=x",
        "FREQ=WEEKLY;FOO=1",
        "FREQ=WEEKLY;FREQ=DAILY",
        "FREQ=WEEKLY;UNTIL=tomorrow",
        "FREQ=MONTHLY;INTERVAL=1",
        "FREQ=MONTHLY;BYDAY=MO",
        "FREQ=MONTHLY;BYDAY=6MO",
        "FREQ=MONTHLY;BYDAY=1MO,3MO",
        "FREQ=WEEKLY;BYDAY=2MO",
        "FREQ=WEEKLY;WKST=XX",
    ],
)
def test_parse_rejects_malformed_rules(text):
    with pytest.raises(InvalidRuleFormat):
        recurrence.parse(text)


def test_third_wednesday_each_month():
    anchor = datetime(2025, 3, 19, 10, 0, tzinfo=UTC)
    text = recurrence.to_rule_string(recurrence.MONTHLY, anchor)
    assert text == "FREQ=MONTHLY;INTERVAL=1;BYDAY=3WE;WKST=MO"

    rule = recurrence.parse(text)
    rule.dt_start = anchor
    window = recurrence.expand(rule, datetime(2025, 3, 20, tzinfo=UTC), datetime(2025, 7, 1, tzinfo=UTC))
    assert list(window) == [
        datetime(2025, 4, 16, 10, 0, tzinfo=UTC),
        datetime(2025, 5, 21, 10, 0, tzinfo=UTC),
        datetime(2025, 6, 18, 10, 0, tzinfo=UTC),
    ]


def test_last_friday_each_month():
    anchor = datetime(2025, 1, 31, 15, 0, tzinfo=UTC)
    rule = recurrence.build_rule(recurrence.MONTHLY, anchor)
    rule.dt_start = anchor
    occurrences = list(recurrence.expand(rule, anchor, datetime(2025, 5, 1, tzinfo=UTC)))
    assert [o.day for o in occurrences] == [31, 28, 28, 25]


def test_expansion_is_restartable_and_ascending():
    rule = recurrence.parse("FREQ=WEEKLY;INTERVAL=2;WKST=MO")
    rule.dt_start = datetime(2025, 3, 10, 9, 0, tzinfo=UTC)
    window = recurrence.expand(rule, rule.dt_start, datetime(2025, 5, 10, tzinfo=UTC))
    first = list(window)
    assert first == list(window)
    assert first == sorted(first)
    assert len(first) == 5


def test_expansion_keeps_phase_of_origin():
    rule = recurrence.parse("FREQ=WEEKLY;INTERVAL=2;WKST=MO")
    rule.dt_start = datetime(2025, 3, 10, 9, 0, tzinfo=UTC)
    window = recurrence.expand(rule, datetime(2025, 3, 18, tzinfo=UTC), datetime(2025, 4, 10, tzinfo=UTC))
    assert list(window) == [
        datetime(2025, 3, 24, 9, 0, tzinfo=UTC),
        datetime(2025, 4, 7, 9, 0, tzinfo=UTC),
    ]


def test_expansion_follows_local_time_across_dst():
    london = ZoneInfo("Europe/London")
    rule = recurrence.parse("FREQ=WEEKLY;INTERVAL=1;WKST=MO")
    rule.dt_start = datetime(2025, 3, 24, 9, 0, tzinfo=london)
    occurrences = list(recurrence.expand(rule, rule.dt_start, datetime(2025, 4, 15, tzinfo=UTC)))
    assert occurrences == [
        datetime(2025, 3, 24, 9, 0, tzinfo=UTC),
        datetime(2025, 3, 31, 8, 0, tzinfo=UTC),
        datetime(2025, 4, 7, 8, 0, tzinfo=UTC),
        datetime(2025, 4, 14, 8, 0, tzinfo=UTC),
    ]
    assert all(o.tzinfo == UTC for o in occurrences)


def test_terminate_caps_rule():
    until = datetime(2025, 4, 1, tzinfo=UTC)
    text = recurrence.terminate("FREQ=WEEKLY;INTERVAL=1;WKST=MO", until)
    assert text == "FREQ=WEEKLY;INTERVAL=1;WKST=MO;UNTIL=20250401T000000Z"

    rule = recurrence.parse(text)
    rule.dt_start = datetime(2025, 3, 10, 9, 0, tzinfo=UTC)
    occurrences = list(recurrence.expand(rule, rule.dt_start, datetime(2025, 6, 1, tzinfo=UTC)))
    assert occurrences[-1] == datetime(2025, 3, 31, 9, 0, tzinfo=UTC)


def test_rule_lists():
    assert recurrence.join_rules([]) is None
    assert recurrence.join_rules(["A", "", "B"]) == "A|B"
    assert recurrence.split_rules("A|B") == ["A", "B"]
    assert recurrence.split_rules(None) == []
