import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query

from app.config import (
    INSTANCES_DEFAULT_DAYS_AHEAD,
    INSTANCES_MAX_DAYS_AHEAD,
    INSTANCES_MAX_PAGE_SIZE,
)
from app.models import (
    AttendanceRequest,
    EventCreateRequest,
    EventInstance,
    EventTemplate,
    EventUpdateRequest,
    EventUpdateResponse,
    EventView,
    InstanceListResponse,
    InstancePage,
    OccurrencePreviewView,
    RecurrenceRule,
    RecurringEventCreateRequest,
    RecurringEventCreateResponse,
)
from app.services.event_store import (
    EventStoreConflictError,
    EventStoreError,
    EventStoreNotFoundError,
    EventStorePermissionError,
    event_store,
)
from app.services.group_store import group_directory
from app.services.materializer import materializer
from app.services.notification_store import notification_store
from app.services.recurrence import RecurrenceRuleError, preview_occurrences, validate_rule
from app.timeutils import as_utc

router = APIRouter(prefix="/events", tags=["events"])
MAX_LIST_LIMIT = 50
DEFAULT_LIST_DAYS_AHEAD = 90


def _raise_event_http_error(exc: EventStoreError) -> None:
    if isinstance(exc, EventStoreNotFoundError):
        raise HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, EventStorePermissionError):
        raise HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, EventStoreConflictError):
        raise HTTPException(status_code=409, detail=str(exc))
    raise HTTPException(status_code=400, detail=str(exc))


def _duration_ms(start_time: datetime, end_time: Optional[datetime]) -> int:
    if end_time is None or end_time <= start_time:
        return 0
    return int((end_time - start_time).total_seconds() * 1000)


def _event_view(event: EventInstance, user_id: Optional[str], attending_ids: Optional[set] = None) -> EventView:
    if attending_ids is None:
        attending_ids = event_store.attending_event_ids(user_id, [event.id]) if user_id else set()
    return EventView(
        **event.model_dump(),
        is_attending=event.id in attending_ids,
        is_organizer=bool(user_id) and event.organizer_id == user_id,
    )


def _can_manage(organizer_id: str, group_id: Optional[str], user_id: str) -> bool:
    return organizer_id == user_id or group_directory.is_admin(group_id, user_id)


def _assert_group_access(group_id: Optional[str], user_id: Optional[str], detail: str) -> None:
    if group_id and not group_directory.has_access(group_id, user_id):
        raise HTTPException(status_code=403, detail=detail)


def _notify_group_owner(group_id: Optional[str], actor_user_id: str, title: str, event_id: str) -> None:
    if not group_id:
        return
    group = group_directory.get(group_id)
    if group and group.owner_user_id != actor_user_id:
        notification_store.create(
            user_id=group.owner_user_id,
            title="New group event",
            body=f"{actor_user_id} created {title} in {group.name}",
            category="event",
            deep_link=f"event:{event_id}",
        )


@router.post("", response_model=EventView)
def create_event(payload: EventCreateRequest):
    if payload.is_recurring or payload.recurring_pattern:
        raise HTTPException(
            status_code=400,
            detail="Recurring events should be created using the /events/recurring endpoint",
        )
    if payload.group_id:
        if not group_directory.get(payload.group_id):
            raise HTTPException(status_code=404, detail="Group not found")
        if not group_directory.has_access(payload.group_id, payload.user_id, require_membership=True):
            raise HTTPException(status_code=403, detail="You don't have permission to create events in this group")
    try:
        event = event_store.create_event(
            organizer_id=payload.user_id,
            title=payload.title.strip(),
            description=payload.description,
            start_time=payload.start_time,
            end_time=payload.end_time,
            image=payload.image,
            group_id=payload.group_id,
            location_id=payload.location_id,
        )
    except EventStoreError as exc:
        _raise_event_http_error(exc)
    _notify_group_owner(event.group_id, payload.user_id, event.title, event.id)
    return _event_view(event, payload.user_id)


@router.post("/recurring", response_model=RecurringEventCreateResponse)
def create_recurring_event(payload: RecurringEventCreateRequest):
    now = materializer.clock()
    if payload.end_time is not None and payload.end_time < payload.start_time:
        raise HTTPException(status_code=400, detail="End time must be after start time")
    rule = RecurrenceRule(
        pattern=payload.recurring_pattern,
        days=payload.recurring_days,
        start_time=payload.start_time,
        end_date=payload.recurring_end_date,
        duration_ms=_duration_ms(payload.start_time, payload.end_time),
    )
    try:
        validate_rule(rule, now, max_instances=materializer.max_instances)
    except RecurrenceRuleError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    if payload.group_id:
        if not group_directory.get(payload.group_id):
            raise HTTPException(status_code=404, detail="Group not found")
        if not group_directory.has_access(payload.group_id, payload.user_id, require_membership=True):
            raise HTTPException(status_code=403, detail="You don't have permission to create events in this group")

    try:
        template = event_store.create_template(
            organizer_id=payload.user_id,
            title=payload.title.strip(),
            rule=rule,
            end_time=payload.end_time,
            description=payload.description,
            image=payload.image,
            group_id=payload.group_id,
            location_id=payload.location_id,
        )
    except EventStoreError as exc:
        _raise_event_http_error(exc)

    created = materializer.materialize_initial(template, now=now)
    _notify_group_owner(template.group_id, payload.user_id, template.title, template.id)
    return RecurringEventCreateResponse(
        event=template,
        instances=materializer.preview(template, now=now),
        materialized_count=len(created),
    )


@router.get("/recurring/{template_id}", response_model=EventTemplate)
def get_recurring_event(template_id: str, user_id: Optional[str] = Query(default=None)):
    template = event_store.get_template(template_id)
    if not template:
        raise HTTPException(status_code=404, detail="Recurring event not found")
    _assert_group_access(template.group_id, user_id, "You don't have access to this event")
    return template


@router.get("/recurring/{template_id}/instances", response_model=InstanceListResponse)
def list_recurring_instances(
    template_id: str,
    user_id: str = Query(...),
    start_date: Optional[datetime] = Query(default=None),
    days_ahead: int = Query(default=INSTANCES_DEFAULT_DAYS_AHEAD),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1),
):
    if limit > INSTANCES_MAX_PAGE_SIZE:
        raise HTTPException(status_code=400, detail=f"Limit cannot exceed {INSTANCES_MAX_PAGE_SIZE}")
    if days_ahead < 1:
        days_ahead = INSTANCES_DEFAULT_DAYS_AHEAD
    days_ahead = min(days_ahead, INSTANCES_MAX_DAYS_AHEAD)

    template = event_store.get_template(template_id)
    if not template:
        raise HTTPException(status_code=404, detail="Recurring event not found")
    _assert_group_access(template.group_id, user_id, "You don't have access to this event's instances")

    window_start = as_utc(start_date) if start_date else materializer.clock()
    window_end = window_start + timedelta(days=days_ahead)
    try:
        previews = preview_occurrences(template, window_start, window_end)
    except RecurrenceRuleError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    offset = (page - 1) * limit
    page_items = previews[offset : offset + limit]
    stored = {
        as_utc(instance.start_time): instance.id
        for instance in event_store.find_instances(template.id, window_start, window_end)
    }
    attending = event_store.attending_event_ids(user_id, stored.values())
    views = [
        OccurrencePreviewView(
            **item.model_dump(),
            user_response="attending" if stored.get(as_utc(item.start_time)) in attending else None,
        )
        for item in page_items
    ]
    total_pages = math.ceil(len(previews) / limit)
    return InstanceListResponse(
        instances=views,
        pagination=InstancePage(
            page=page,
            limit=limit,
            total_instances=len(previews),
            total_pages=total_pages,
            has_more=page < total_pages,
        ),
    )


@router.get("", response_model=List[EventView])
def list_events(
    user_id: Optional[str] = Query(default=None),
    group_id: Optional[str] = Query(default=None),
    organizer_id: Optional[str] = Query(default=None),
    include_recurring: bool = Query(default=False),
    start_date: Optional[datetime] = Query(default=None),
    end_date: Optional[datetime] = Query(default=None),
    limit: int = Query(default=20, ge=1),
):
    now = materializer.clock()
    if include_recurring:
        materializer.top_up(now=now)

    window_start = as_utc(start_date) if start_date else now
    window_end = as_utc(end_date) if end_date else now + timedelta(days=DEFAULT_LIST_DAYS_AHEAD)
    events = event_store.list_events(
        start=window_start,
        end=window_end,
        group_id=group_id,
        organizer_id=organizer_id,
        include_instances=include_recurring,
        visible_group_ids=group_directory.accessible_group_ids(user_id),
        limit=min(limit, MAX_LIST_LIMIT),
    )
    attending = event_store.attending_event_ids(user_id, [e.id for e in events]) if user_id else set()
    return [_event_view(event, user_id, attending) for event in events]


@router.get("/{event_id}", response_model=EventView)
def get_event(event_id: str, user_id: Optional[str] = Query(default=None)):
    event = event_store.get_event(event_id)
    if not event:
        raise HTTPException(status_code=404, detail="Event not found")
    _assert_group_access(event.group_id, user_id, "You don't have access to this event")
    return _event_view(event, user_id)


def _requested_fields(payload: EventUpdateRequest, names: tuple) -> Dict[str, Any]:
    return {name: getattr(payload, name) for name in names if name in payload.model_fields_set}


def _update_template(template: EventTemplate, payload: EventUpdateRequest) -> EventUpdateResponse:
    now = materializer.clock()
    fields = _requested_fields(payload, ("title", "description", "image", "location_id", "start_time", "end_time"))
    start_time = fields.get("start_time", template.start_time)
    end_time = fields.get("end_time", template.end_time)
    if end_time is not None and end_time < start_time:
        raise HTTPException(status_code=400, detail="End time must be after start time")

    rule_fields = _requested_fields(payload, ("recurring_pattern", "recurring_days", "recurring_end_date"))
    rule = RecurrenceRule(
        pattern=rule_fields.get("recurring_pattern") or template.recurrence.pattern,
        days=rule_fields["recurring_days"] if rule_fields.get("recurring_days") is not None else template.recurrence.days,
        start_time=start_time,
        end_date=rule_fields.get("recurring_end_date", template.recurrence.end_date),
        duration_ms=_duration_ms(start_time, end_time),
    )
    if rule_fields or "start_time" in fields:
        try:
            validate_rule(rule, now, max_instances=materializer.max_instances, since=now)
        except RecurrenceRuleError as exc:
            raise HTTPException(status_code=400, detail=str(exc))

    try:
        updated = event_store.update_template(template.id, fields=fields, rule=rule)
    except EventStoreError as exc:
        _raise_event_http_error(exc)
    sync = materializer.apply_template_update(
        template,
        updated,
        update_instances=payload.update_all_instances,
        now=now,
    )
    if sync.rule_changed:
        notification_store.broadcast(
            sync.affected_attendees,
            title="Event schedule updated",
            body=f"The schedule for {updated.title} changed. Please check the new dates.",
            deep_link=f"event:{updated.id}",
            exclude=payload.user_id,
        )
    return EventUpdateResponse(
        template=updated,
        instances_deleted=sync.deleted,
        instances_created=sync.created,
        instances_updated=sync.updated,
    )


@router.patch("/{event_id}", response_model=EventUpdateResponse)
def update_event(event_id: str, payload: EventUpdateRequest):
    template = event_store.get_template(event_id)
    if template:
        if not _can_manage(template.organizer_id, template.group_id, payload.user_id):
            raise HTTPException(status_code=403, detail="Only the organizer or group owner can update this event")
        return _update_template(template, payload)

    event = event_store.get_event(event_id)
    if not event:
        raise HTTPException(status_code=404, detail="Event not found")
    if not _can_manage(event.organizer_id, event.group_id, payload.user_id):
        raise HTTPException(status_code=403, detail="Only the organizer or group owner can update this event")
    if _requested_fields(payload, ("recurring_pattern", "recurring_days", "recurring_end_date")):
        raise HTTPException(status_code=400, detail="Only recurring templates have a recurrence rule")
    fields = _requested_fields(payload, ("title", "description", "image", "location_id", "start_time", "end_time"))
    try:
        updated = event_store.update_event(event_id, fields)
    except EventStoreError as exc:
        _raise_event_http_error(exc)
    return EventUpdateResponse(event=_event_view(updated, payload.user_id))


@router.delete("/{event_id}", response_model=dict)
def delete_event(
    event_id: str,
    user_id: str = Query(...),
    cascade: bool = Query(default=False),
):
    template = event_store.get_template(event_id)
    try:
        if template:
            if not _can_manage(template.organizer_id, template.group_id, user_id):
                raise EventStorePermissionError("Only the organizer or group owner can delete this event")
            removed = event_store.delete_template(event_id, cascade=cascade)
            return {"status": "deleted", "instances_deleted": removed}

        event = event_store.get_event(event_id)
        if not event:
            raise EventStoreNotFoundError("Event not found")
        if not _can_manage(event.organizer_id, event.group_id, user_id):
            raise EventStorePermissionError("Only the organizer or group owner can delete this event")
        event_store.delete_event(event_id)
        return {"status": "deleted", "instances_deleted": 0}
    except EventStoreError as exc:
        _raise_event_http_error(exc)


@router.post("/{event_id}/attend", response_model=EventView)
def attend_event(event_id: str, payload: AttendanceRequest):
    event = event_store.get_event(event_id)
    if event and event.group_id and not group_directory.has_access(event.group_id, payload.user_id):
        raise HTTPException(status_code=403, detail="You don't have access to this event")
    try:
        updated = event_store.set_attendance(event_id, payload.user_id, attending=payload.operation == "join")
    except EventStoreError as exc:
        _raise_event_http_error(exc)
    if updated.organizer_id != payload.user_id:
        notification_store.create(
            user_id=updated.organizer_id,
            title="Event attendance update",
            body=f"{payload.user_id} {'joined' if payload.operation == 'join' else 'left'} {updated.title}",
            category="event",
            deep_link=f"event:{updated.id}",
        )
    return _event_view(updated, payload.user_id)
