"""Turns generated occurrences into stored event instances.

Idempotence rests on the store's unique (parent_event_id, start_time) index:
the existing-instance lookup only avoids pointless inserts, and a concurrent
writer that wins the race surfaces as ``InstanceAlreadyExistsError``.
Occurrences that were deleted or moved one at a time are recorded by the
store as excluded and are never generated again until the rule changes.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set

from app.config import RECURRING_MAX_INSTANCES, RECURRING_PREVIEW_DAYS, RECURRING_TOPUP_BUFFER_DAYS
from app.models import EventInstance, EventTemplate, OccurrencePreview
from app.services.event_store import (
    INSTANCE_DISPLAY_FIELDS,
    EventStore,
    EventStorePersistenceError,
    InstanceAlreadyExistsError,
    event_store,
)
from app.services.recurrence import eager_window, generate_occurrences, preview_occurrences
from app.timeutils import as_utc, utc_now

logger = logging.getLogger(__name__)


@dataclass
class InstanceSyncResult:
    deleted: int = 0
    created: int = 0
    updated: int = 0
    rule_changed: bool = False
    affected_attendees: Set[str] = field(default_factory=set)


def recurrence_changed(before: EventTemplate, after: EventTemplate) -> bool:
    old_rule = before.recurrence
    new_rule = after.recurrence
    if old_rule.pattern != new_rule.pattern or sorted(set(old_rule.days)) != sorted(set(new_rule.days)):
        return True
    if old_rule.end_date != new_rule.end_date:
        return True
    return old_rule.start_time != new_rule.start_time


def changed_display_fields(before: EventTemplate, after: EventTemplate) -> Dict[str, object]:
    return {
        name: getattr(after, name)
        for name in INSTANCE_DISPLAY_FIELDS
        if getattr(before, name) != getattr(after, name)
    }


class InstanceMaterializer:
    def __init__(
        self,
        store: EventStore,
        clock: Callable[[], datetime] = utc_now,
        max_instances: int = RECURRING_MAX_INSTANCES,
        buffer_days: int = RECURRING_TOPUP_BUFFER_DAYS,
    ):
        self.store = store
        self.clock = clock
        self.max_instances = max_instances
        self.buffer_days = buffer_days

    def materialize_window(
        self,
        template: EventTemplate,
        window_start: datetime,
        window_end: datetime,
    ) -> List[EventInstance]:
        """Create the missing instances of ``template`` in the window; returns only new ones."""
        occurrences = list(
            generate_occurrences(template.recurrence, window_start, window_end, limit=self.max_instances)
        )
        if not occurrences:
            return []

        existing = {
            as_utc(instance.start_time)
            for instance in self.store.find_instances(template.id, window_start, window_end)
        }
        # Individually deleted or moved occurrences stay gone.
        existing |= self.store.excluded_starts(template.id, window_start, window_end)
        created: List[EventInstance] = []
        for occurrence in occurrences:
            if as_utc(occurrence) in existing:
                continue
            try:
                created.append(self.store.create_instance(template, occurrence))
            except InstanceAlreadyExistsError:
                logger.debug("Instance of %s at %s already materialized", template.id, occurrence.isoformat())
            except EventStorePersistenceError:
                logger.exception("Failed to materialize %s at %s", template.id, occurrence.isoformat())
        if created:
            logger.info(
                "Materialized %d instance(s) of %s between %s and %s",
                len(created),
                template.id,
                window_start.isoformat(),
                window_end.isoformat(),
            )
        return created

    def materialize_initial(self, template: EventTemplate, now: Optional[datetime] = None) -> List[EventInstance]:
        window_start, window_end = eager_window(template.recurrence, now or self.clock())
        return self.materialize_window(template, window_start, window_end)

    def top_up(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Extend every active template whose instances run out within the buffer."""
        now = now or self.clock()
        horizon = now + timedelta(days=self.buffer_days)
        results: Dict[str, int] = {}
        for template in self.store.list_active_templates(now):
            try:
                latest = self.store.latest_instance_start(template.id)
                if latest is not None and latest >= horizon:
                    continue
                results[template.id] = len(self.materialize_window(template, now, horizon))
            except Exception:
                logger.exception("Error generating recurring instances for %s", template.id)
        return results

    def apply_template_update(
        self,
        before: EventTemplate,
        after: EventTemplate,
        update_instances: bool = True,
        now: Optional[datetime] = None,
    ) -> InstanceSyncResult:
        """Bring future instances in line with an updated template; past instances are left alone."""
        now = now or self.clock()
        result = InstanceSyncResult()
        if recurrence_changed(before, after):
            result.rule_changed = True
            result.affected_attendees = self.store.attendees_of_instances(after.id, since=now)
            result.deleted = self.store.delete_instances(after.id, since=now)
            result.created = len(self.materialize_initial(after, now=now))
            return result

        if not update_instances:
            return result
        fields = changed_display_fields(before, after)
        duration_ms = after.duration_ms if after.duration_ms != before.duration_ms else None
        if fields or duration_ms is not None:
            result.updated = self.store.update_future_instances(after.id, now, fields, duration_ms=duration_ms)
        return result

    def preview(
        self,
        template: EventTemplate,
        now: Optional[datetime] = None,
        days: int = RECURRING_PREVIEW_DAYS,
    ) -> List[OccurrencePreview]:
        now = now or self.clock()
        return preview_occurrences(template, now, now + timedelta(days=days))


materializer = InstanceMaterializer(store=event_store)
