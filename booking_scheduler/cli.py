"""Command line interface for the booking scheduler."""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import datetime, timezone, tzinfo
from pathlib import Path
from typing import List

from . import availability, recurrence, storage, util, views
from .config import EngineConfig
from .errors import SchedulerError
from .ports import StaticScheduleProvider
from .series import SeriesGenerator

logger = logging.getLogger(__name__)


def _parse_time(value: str, tz: tzinfo) -> datetime:
    t = datetime.fromisoformat(value)
    if t.tzinfo is None:
        t = t.replace(tzinfo=tz)
    return t


def parse_args(argv: List[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Booking availability and recurrence tools")
    parser.add_argument("--tz", default="UTC", help="Zone for input and output times")
    parser.add_argument("--data-dir", default="out/json", help="Directory of JSON fixtures")
    parser.add_argument("--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    rule = sub.add_parser("rule", help="Print the rule for a recurrence selection")
    rule.add_argument("selection", help='e.g. "Weekly" or "Every Two Weeks"')
    rule.add_argument("--anchor", required=True)

    expand = sub.add_parser("expand", help="List occurrences of a rule")
    expand.add_argument("rule")
    expand.add_argument("--origin", required=True)
    expand.add_argument("--start")
    expand.add_argument("--end", required=True)

    resolve = sub.add_parser("resolve", help="Resolve a provider's weekly hours")
    resolve.add_argument("provider")
    resolve.add_argument("--reference")

    instances = sub.add_parser("instances", help="List the bookings of a stored series")
    instances.add_argument("series")
    instances.add_argument("--all", action="store_true", help="Include cancelled bookings")

    sweep = sub.add_parser("sweep", help="Run one generation pass over stored series")
    sweep.add_argument("--limit", type=int)
    return parser.parse_args(argv)


def _rule(args: argparse.Namespace, tz: tzinfo) -> None:
    selection = recurrence.parse_selection(args.selection)
    if selection is None:
        labels = ", ".join(s.label for s in recurrence.SELECTIONS)
        raise SystemExit(f"unknown selection {args.selection!r}; expected one of: {labels}")
    print(recurrence.to_rule_string(selection, _parse_time(args.anchor, tz).astimezone(tz)))


def _expand(args: argparse.Namespace, tz: tzinfo) -> None:
    rule = recurrence.parse(args.rule)
    rule.dt_start = _parse_time(args.origin, tz).astimezone(tz)
    start = _parse_time(args.start, tz) if args.start else rule.dt_start
    end = _parse_time(args.end, tz)
    for occurrence in recurrence.expand(rule, start, end):
        print(f"{occurrence.astimezone(tz):%Y-%m-%d %H:%M %a}")


def _resolve(args: argparse.Namespace, tz: tzinfo) -> None:
    schedules = storage.load_schedules(args.data_dir)
    schedule = schedules.get(args.provider)
    if schedule is None:
        raise SystemExit(f"no schedule for provider {args.provider!r} in {args.data_dir}")
    reference = _parse_time(args.reference, tz) if args.reference else datetime.now(timezone.utc)
    resolved, unresolved = availability.resolve(schedule, reference)
    for row in views.schedule_view(resolved, tz):
        state = "closed" if row["unavailable"] else ", ".join(row["periods"]) or "-"
        print(f"{row['day']:<10} {state}")
    if unresolved:
        days = ", ".join(day.name.title() for day in sorted(unresolved))
        print(f"conflicting hours on: {days}", file=sys.stderr)
        raise SystemExit(1)


def _instances(args: argparse.Namespace, tz: tzinfo) -> None:
    store = storage.JsonStorage(Path(args.data_dir))
    found = store.list_instances(args.series, include_deleted=args.all)
    if not found:
        raise SystemExit(f"no bookings for series {args.series!r} in {args.data_dir}")
    for instance in found:
        row = views.instance_view(instance, tz)
        flags = [name for name in ("recurring", "confirmed", "cancelled") if row[name]]
        print(f"{row['date']} {row['time']}  {row['id']}  {' '.join(flags)}".rstrip())


def _sweep(args: argparse.Namespace, tz: tzinfo) -> None:
    store = storage.JsonStorage(Path(args.data_dir))
    generator = SeriesGenerator(
        store,
        schedules=StaticScheduleProvider(storage.load_schedules(args.data_dir)),
        config=EngineConfig.from_env(),
    )
    report = generator.process_due_series(args.limit)
    print(
        f"processed {len(report.processed)} series, {report.instances} instances; "
        f"failed {len(report.failed)}, flagged {len(report.flagged)}, skipped {len(report.skipped)}"
    )
    for warning in report.warnings:
        print(f"warning: {warning}")


COMMANDS = {
    "rule": _rule,
    "expand": _expand,
    "resolve": _resolve,
    "instances": _instances,
    "sweep": _sweep,
}


def main(argv: List[str] | None = None) -> None:
    args = parse_args(argv)
    util.configure_logging(args.verbose)
    tz = util.parse_timezone(args.tz)
    try:
        COMMANDS[args.command](args, tz)
    except SchedulerError as exc:
        logger.error("%s", exc)
        raise SystemExit(1) from exc


if __name__ == "__main__":  # pragma: no cover
    main()
