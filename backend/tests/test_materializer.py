import logging
import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from app.models import RecurrenceRule
from app.services.event_store import (
    EventStore,
    EventStorePersistenceError,
    EventStoreValidationError,
    InstanceAlreadyExistsError,
)
from app.services.materializer import InstanceMaterializer

UTC = timezone.utc
JAN_1 = datetime(2024, 1, 1, tzinfo=UTC)


def _utc(*args) -> datetime:
    return datetime(*args, tzinfo=UTC)


@pytest.fixture()
def store(tmp_path):
    return EventStore(db_path=str(tmp_path / "events.sqlite3"))


@pytest.fixture()
def materializer(store):
    return InstanceMaterializer(store=store, clock=lambda: JAN_1)


def _run_club(store, days=(1, 3, 5), end_date=_utc(2024, 1, 15), minutes=90, organizer_id="coach"):
    start = _utc(2024, 1, 1, 10, 0)
    return store.create_template(
        organizer_id=organizer_id,
        title="Run club",
        description="Easy 5k",
        location_id="park",
        rule=RecurrenceRule(pattern="weekly", days=list(days), start_time=start, end_date=end_date),
        end_time=start + timedelta(minutes=minutes),
    )


def _starts(store, template_id):
    return [instance.start_time for instance in store.find_instances(template_id)]


def test_materialize_window_creates_each_occurrence_once(store, materializer):
    template = _run_club(store)

    first = materializer.materialize_window(template, JAN_1, _utc(2024, 1, 15))
    second = materializer.materialize_window(template, JAN_1, _utc(2024, 1, 15))

    assert len(first) == 6
    assert second == []
    assert _starts(store, template.id) == [
        _utc(2024, 1, 1, 10, 0),
        _utc(2024, 1, 3, 10, 0),
        _utc(2024, 1, 5, 10, 0),
        _utc(2024, 1, 8, 10, 0),
        _utc(2024, 1, 10, 10, 0),
        _utc(2024, 1, 12, 10, 0),
    ]


def test_instances_copy_template_fields_and_duration(store, materializer):
    template = _run_club(store)
    assert template.duration_ms == 90 * 60 * 1000

    materializer.materialize_window(template, JAN_1, _utc(2024, 1, 15))

    for instance in store.find_instances(template.id):
        assert instance.parent_event_id == template.id
        assert instance.title == "Run club"
        assert instance.location_id == "park"
        assert instance.organizer_id == "coach"
        assert instance.end_time - instance.start_time == timedelta(minutes=90)
        assert instance.attendee_count == 1


def test_instances_keep_template_utc_offset(store, materializer):
    pacific = timezone(timedelta(hours=-8))
    start = datetime(2024, 1, 1, 18, 0, tzinfo=pacific)
    template = store.create_template(
        organizer_id="coach",
        title="Evening ride",
        rule=RecurrenceRule(pattern="weekly", days=[1], start_time=start, end_date=_utc(2024, 1, 20)),
    )

    materializer.materialize_window(template, JAN_1, _utc(2024, 1, 20))

    instances = store.find_instances(template.id)
    assert [i.start_time.utcoffset() for i in instances] == [timedelta(hours=-8)] * 3
    assert all((i.start_time.hour, i.start_time.weekday()) == (18, 0) for i in instances)
    assert all(i.end_time is None for i in instances)


def test_store_rejects_duplicate_instance(store):
    template = _run_club(store)
    store.create_instance(template, _utc(2024, 1, 1, 10, 0))

    with pytest.raises(InstanceAlreadyExistsError):
        store.create_instance(template, _utc(2024, 1, 1, 10, 0))
    assert len(store.find_instances(template.id)) == 1


def test_concurrent_writer_duplicates_are_skipped(store, materializer, monkeypatch):
    template = _run_club(store)
    materializer.materialize_window(template, JAN_1, _utc(2024, 1, 15))

    # Simulate a second worker whose existence check ran before the first one committed.
    monkeypatch.setattr(store, "find_instances", lambda *args, **kwargs: [])
    assert materializer.materialize_window(template, JAN_1, _utc(2024, 1, 15)) == []
    monkeypatch.undo()

    assert len(store.find_instances(template.id)) == 6


def test_persistence_failure_skips_occurrence_and_continues(store, materializer, monkeypatch, caplog):
    template = _run_club(store)
    real_create = store.create_instance

    def flaky_create(tpl, start_time):
        if start_time.day == 3:
            raise EventStorePersistenceError("disk I/O error")
        return real_create(tpl, start_time)

    monkeypatch.setattr(store, "create_instance", flaky_create)
    with caplog.at_level(logging.ERROR):
        created = materializer.materialize_window(template, JAN_1, _utc(2024, 1, 15))

    assert len(created) == 5
    assert _utc(2024, 1, 3, 10, 0) not in [i.start_time for i in created]
    assert "Failed to materialize" in caplog.text


def test_materialize_window_respects_instance_cap(store):
    template = _run_club(store, days=(0, 1, 2, 3, 4, 5, 6), end_date=None)
    capped = InstanceMaterializer(store=store, clock=lambda: JAN_1, max_instances=10)

    created = capped.materialize_window(template, JAN_1, _utc(2024, 6, 1))

    assert len(created) == 10
    assert created[-1].start_time == _utc(2024, 1, 10, 10, 0)


def test_materialize_initial_uses_rule_end_date(store, materializer):
    template = _run_club(store, end_date=_utc(2024, 1, 22))

    created = materializer.materialize_initial(template, now=_utc(2024, 1, 6))

    assert [i.start_time.day for i in created] == [8, 10, 12, 15, 17, 19]


def test_top_up_extends_templates_running_out(store):
    template = _run_club(store, end_date=None)
    topper = InstanceMaterializer(store=store, clock=lambda: JAN_1, buffer_days=30)

    assert topper.top_up() == {template.id: 13}
    assert topper.top_up() == {template.id: 0}

    # Latest instance (Jan 29) already lies beyond a one week buffer.
    short_buffer = InstanceMaterializer(store=store, clock=lambda: JAN_1, buffer_days=7)
    assert short_buffer.top_up() == {}


def test_top_up_ignores_ended_templates(store, materializer):
    _run_club(store, end_date=_utc(2024, 1, 15))

    assert materializer.top_up(now=_utc(2024, 2, 1)) == {}


def test_top_up_isolates_failures_per_template(store, materializer, monkeypatch, caplog):
    broken = _run_club(store, end_date=None, organizer_id="broken")
    healthy = _run_club(store, end_date=None, organizer_id="healthy")
    real_latest = store.latest_instance_start

    def latest(template_id):
        if template_id == broken.id:
            raise RuntimeError("corrupt row")
        return real_latest(template_id)

    monkeypatch.setattr(store, "latest_instance_start", latest)
    with caplog.at_level(logging.ERROR):
        results = materializer.top_up()

    assert results == {healthy.id: 13}
    assert store.find_instances(broken.id) == []
    assert "Error generating recurring instances" in caplog.text


def test_rule_change_replaces_only_future_instances(store, materializer):
    before = _run_club(store)
    materializer.materialize_window(before, JAN_1, _utc(2024, 1, 15))
    store.set_attendance(store.find_instances(before.id)[4].id, "runner", attending=True)

    new_rule = before.recurrence.model_copy(update={"days": [2, 4]})
    after = store.update_template(before.id, fields={}, rule=new_rule)
    now = _utc(2024, 1, 8)
    result = materializer.apply_template_update(before, after, now=now)

    assert result.rule_changed is True
    assert result.deleted == 3
    assert result.created == 2
    assert result.affected_attendees == {"coach", "runner"}
    assert [s.day for s in _starts(store, before.id)] == [1, 3, 5, 9, 11]


def test_display_change_propagates_to_future_instances(store, materializer):
    before = _run_club(store)
    materializer.materialize_window(before, JAN_1, _utc(2024, 1, 15))

    after = store.update_template(before.id, fields={"title": "Tempo run", "location_id": "track"})
    result = materializer.apply_template_update(before, after, now=_utc(2024, 1, 8))

    assert result.rule_changed is False
    assert result.updated == 3
    instances = store.find_instances(before.id)
    assert [i.title for i in instances] == ["Run club"] * 3 + ["Tempo run"] * 3
    assert [i.location_id for i in instances] == ["park"] * 3 + ["track"] * 3


def test_duration_change_recomputes_future_end_times(store, materializer):
    before = _run_club(store)
    materializer.materialize_window(before, JAN_1, _utc(2024, 1, 15))

    after = store.update_template(before.id, fields={"end_time": _utc(2024, 1, 1, 12, 0)})
    result = materializer.apply_template_update(before, after, now=_utc(2024, 1, 8))

    assert result.updated == 3
    durations = [i.end_time - i.start_time for i in store.find_instances(before.id)]
    assert durations == [timedelta(minutes=90)] * 3 + [timedelta(hours=2)] * 3


def test_display_change_can_leave_instances_untouched(store, materializer):
    before = _run_club(store)
    materializer.materialize_window(before, JAN_1, _utc(2024, 1, 15))

    after = store.update_template(before.id, fields={"title": "Tempo run"})
    result = materializer.apply_template_update(before, after, update_instances=False, now=_utc(2024, 1, 8))

    assert result.updated == 0
    assert {i.title for i in store.find_instances(before.id)} == {"Run club"}


def test_preview_is_bounded_by_end_date(store, materializer):
    template = _run_club(store, end_date=_utc(2024, 1, 10))

    previews = materializer.preview(template)

    assert [p.start_time.day for p in previews] == [1, 3, 5, 8]
    assert store.find_instances(template.id) == []


def test_templates_cannot_be_attended(store):
    template = _run_club(store)

    with pytest.raises(EventStoreValidationError):
        store.set_attendance(template.id, "runner", attending=True)


def test_delete_template_cascades_to_instances(store, materializer):
    template = _run_club(store)
    materializer.materialize_window(template, JAN_1, _utc(2024, 1, 15))

    assert store.delete_template(template.id, cascade=True) == 6
    assert store.get_template(template.id) is None
    assert store.find_instances(template.id) == []


def test_deleted_instance_is_not_recreated_by_top_up(store):
    template = _run_club(store, days=(1,), end_date=_utc(2024, 1, 29))
    topper = InstanceMaterializer(store=store, clock=lambda: JAN_1, buffer_days=30)
    topper.materialize_initial(template)
    cancelled = store.find_instances(template.id)[1]
    assert cancelled.start_time == _utc(2024, 1, 8, 10, 0)

    store.delete_event(cancelled.id)
    results = topper.top_up()

    assert results == {template.id: 0}
    assert _starts(store, template.id) == [_utc(2024, 1, 1, 10, 0), _utc(2024, 1, 15, 10, 0), _utc(2024, 1, 22, 10, 0)]


def test_moved_instance_does_not_leave_its_slot_open(store, materializer):
    template = _run_club(store, days=(1,), end_date=_utc(2024, 1, 29))
    materializer.materialize_initial(template)
    moved = store.find_instances(template.id)[1]

    store.update_event(moved.id, {"start_time": _utc(2024, 1, 9, 18, 0), "end_time": _utc(2024, 1, 9, 19, 30)})
    assert materializer.materialize_window(template, JAN_1, _utc(2024, 1, 29)) == []

    assert _starts(store, template.id) == [
        _utc(2024, 1, 1, 10, 0),
        _utc(2024, 1, 9, 18, 0),
        _utc(2024, 1, 15, 10, 0),
        _utc(2024, 1, 22, 10, 0),
    ]


def test_rule_change_clears_future_exclusions(store, materializer):
    before = _run_club(store, days=(1,), end_date=_utc(2024, 1, 29))
    materializer.materialize_initial(before)
    store.delete_event(store.find_instances(before.id)[0].id)
    store.delete_event(store.find_instances(before.id)[0].id)

    new_rule = before.recurrence.model_copy(update={"days": [1, 5]})
    after = store.update_template(before.id, fields={}, rule=new_rule)
    result = materializer.apply_template_update(before, after, now=_utc(2024, 1, 6))

    # The Jan 1 cancellation predates the change and is kept; Jan 8 is regenerated.
    assert result.deleted == 2
    assert result.created == 6
    assert [s.day for s in _starts(store, before.id)] == [8, 12, 15, 19, 22, 26]
    assert store.excluded_starts(before.id) == {_utc(2024, 1, 1, 10, 0)}


def test_list_events_hides_other_groups_before_limiting(store):
    for hour in range(3):
        store.create_event(
            organizer_id="coach", title=f"Members {hour}", start_time=_utc(2024, 1, 2, hour), group_id="g_private"
        )
    store.create_event(organizer_id="coach", title="Open track", start_time=_utc(2024, 1, 3, 9), group_id="g_public")
    store.create_event(organizer_id="coach", title="Open run", start_time=_utc(2024, 1, 4, 9))

    listed = store.list_events(start=JAN_1, end=_utc(2024, 2, 1), visible_group_ids={"g_public"}, limit=2)
    assert [e.title for e in listed] == ["Open track", "Open run"]
    assert [e.title for e in store.list_events(start=JAN_1, end=_utc(2024, 2, 1), visible_group_ids=set())] == ["Open run"]
    assert len(store.list_events(start=JAN_1, end=_utc(2024, 2, 1))) == 5
