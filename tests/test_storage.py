import json
from datetime import datetime, time, timedelta, timezone

import pytest

from booking_scheduler import storage
from booking_scheduler.errors import StorageError
from booking_scheduler.models import MAX_TIME, BookingInstance, Weekday

UTC = timezone.utc
START = datetime(2025, 3, 10, 9, 0, tzinfo=UTC)


def make_instance(**overrides):
    values = dict(
        id="series-1",
        parent_id="series-1",
        time_from=START,
        time_to=START + timedelta(hours=1),
        service_id="s1",
        service_duration=60,
        recurrence_rules=["FREQ=WEEKLY;INTERVAL=1;WKST=MO"],
        recurrence_start=START,
    )
    values.update(overrides)
    return BookingInstance(**values)


def make_child(day, **overrides):
    t = START + timedelta(days=day)
    values = dict(id=f"child-{day}", time_from=t, time_to=t + timedelta(hours=1), recurrence_rules=[])
    values.update(overrides)
    return make_instance(**values)


def test_stored_instances_are_copies():
    store = storage.MemoryStorage()
    instance = make_instance()
    store.save_instance(instance)
    instance.confirmed = True
    loaded = store.load_instance("series-1")
    assert loaded.confirmed is False
    loaded.deleted = True
    assert store.load_instance("series-1").deleted is False


def test_save_without_id_fails():
    with pytest.raises(StorageError):
        storage.MemoryStorage().save_instance(make_instance(id=None))


def test_failed_transaction_rolls_back():
    store = storage.MemoryStorage([make_instance()])
    with pytest.raises(RuntimeError):
        with store.transaction():
            store.save_instance(make_child(7))
            store.update_series_horizon("series-1", START)
            raise RuntimeError("boom")
    assert store.load_instance("child-7") is None
    assert store.load_instance("series-1").recurrence_instance_end is None


def test_nested_transaction_rolls_back_inner_part_only():
    store = storage.MemoryStorage()
    with store.transaction():
        store.save_instance(make_instance())
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.save_instance(make_child(7))
                raise RuntimeError("boom")
    assert store.load_instance("series-1") is not None
    assert store.load_instance("child-7") is None


def test_due_series_selection():
    store = storage.MemoryStorage(
        [
            make_instance(),
            make_instance(id="later", parent_id="later", recurrence_instance_end=START + timedelta(days=90)),
            make_instance(id="soon", parent_id="soon", recurrence_instance_end=START + timedelta(days=5)),
            make_instance(id="done", parent_id="done", recurrence_instance_end=MAX_TIME),
            make_instance(id="broken", parent_id="broken", recurrence_error="bad rule"),
            make_instance(id="gone", parent_id="gone", deleted=True),
            make_instance(id="busy", parent_id="busy", processing_since=START),
            make_instance(id="single", parent_id=None, recurrence_rules=[]),
            make_child(7),
        ]
    )
    due = store.load_series_due_for_generation(START + timedelta(days=30), 10)
    assert sorted(s.id for s in due) == ["series-1", "soon"]
    assert len(store.load_series_due_for_generation(START + timedelta(days=30), 1)) == 1


def test_claim_is_exclusive():
    store = storage.MemoryStorage([make_instance()])
    assert store.claim(["series-1"], START) == 1
    assert store.claim(["series-1", "missing"], START) == 0
    assert store.release_stale_claims(START) == 0
    assert store.release_stale_claims(START + timedelta(minutes=1)) == 1
    assert store.load_instance("series-1").processing_since is None


def test_soft_delete_after():
    store = storage.MemoryStorage([make_instance(), make_child(7), make_child(14), make_child(21)])
    count = store.soft_delete_instances_after("series-1", START + timedelta(days=7), exclude_id="child-21")
    assert count == 1
    assert [i.id for i in store.list_instances("series-1")] == ["series-1", "child-7", "child-21"]
    assert len(store.list_instances("series-1", include_deleted=True)) == 4


def test_update_horizon_releases_claim():
    store = storage.MemoryStorage([make_instance(processing_since=START)])
    store.update_series_horizon("series-1", MAX_TIME)
    stored = store.load_instance("series-1")
    assert stored.is_terminated
    assert stored.processing_since is None
    with pytest.raises(StorageError):
        store.update_series_horizon("missing", MAX_TIME)


def test_json_storage_persists_on_commit(tmp_path):
    store = storage.JsonStorage(tmp_path)
    series = make_instance(service_padding=10, recurrence_instance_end=START + timedelta(days=30))
    store.save_instance(series)
    store.save_instance(make_child(7, deleted=True))

    reloaded = storage.JsonStorage(tmp_path)
    assert reloaded.load_instance("series-1") == series
    assert reloaded.load_instance("child-7").deleted is True
    data = json.loads((tmp_path / "bookings.json").read_text(encoding="utf-8"))
    assert {r["id"] for r in data} == {"series-1", "child-7"}


def test_json_storage_keeps_file_on_rollback(tmp_path):
    store = storage.JsonStorage(tmp_path)
    store.save_instance(make_instance())
    with pytest.raises(RuntimeError):
        with store.transaction():
            store.save_instance(make_child(7))
            raise RuntimeError("boom")
    assert storage.JsonStorage(tmp_path).load_instance("child-7") is None


def test_bad_booking_record():
    with pytest.raises(StorageError):
        storage.instance_from_record({"id": "x", "time_from": "not a date"})


def test_schedule_records(tmp_path):
    (tmp_path / "schedules.json").write_text(
        json.dumps(
            {
                "p1": {
                    "timezone": "Europe/London",
                    "days": {
                        "Monday": {"durations": [{"start": "09:00", "duration": 480}]},
                        "Sunday": {"unavailable": True},
                    },
                }
            }
        ),
        encoding="utf-8",
    )
    schedules = storage.load_schedules(tmp_path)
    schedule = schedules["p1"]
    assert schedule.timezone == "Europe/London"
    assert schedule.days[Weekday.MONDAY].durations[0].start == time(9, 0)
    assert schedule.days[Weekday.SUNDAY].unavailable
    record = storage.schedule_to_record(schedule)
    assert record["days"]["Monday"]["durations"] == [{"start": "09:00", "duration": 480}]
    assert storage.load_schedules(tmp_path / "missing") == {}
