import json
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterable, List, Optional, Set
from uuid import uuid4

from app.config import EVENTS_DB_PATH
from app.models import EventInstance, EventTemplate, RecurrenceRule
from app.timeutils import from_db, to_db, utc_now

# Fields copied from a template onto each of its instances.
INSTANCE_DISPLAY_FIELDS = ("title", "description", "image", "location_id")
TEMPLATE_UPDATABLE_FIELDS = INSTANCE_DISPLAY_FIELDS + ("start_time", "end_time")


class EventStoreError(ValueError):
    """Base class for user-visible event-store errors."""


class EventStoreValidationError(EventStoreError):
    pass


class EventStoreNotFoundError(EventStoreError):
    pass


class EventStoreConflictError(EventStoreError):
    pass


class EventStorePermissionError(EventStoreError):
    pass


class EventStorePersistenceError(EventStoreError):
    pass


class InstanceAlreadyExistsError(EventStoreConflictError):
    """Another writer already materialized this (template, start_time)."""


def _offset_minutes(value: datetime) -> int:
    offset = value.utcoffset()
    return int(offset.total_seconds() // 60) if offset else 0


def _localize(value: Optional[datetime], offset_minutes: int) -> Optional[datetime]:
    if value is None:
        return None
    return value.astimezone(timezone(timedelta(minutes=offset_minutes)))


@dataclass
class EventStore:
    db_path: str

    def __post_init__(self) -> None:
        self._lock = Lock()
        path = Path(self.db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS events (
                        id TEXT PRIMARY KEY,
                        title TEXT NOT NULL,
                        description TEXT,
                        image TEXT,
                        group_id TEXT,
                        location_id TEXT,
                        organizer_id TEXT NOT NULL,
                        start_time TEXT NOT NULL,
                        end_time TEXT,
                        utc_offset_minutes INTEGER NOT NULL DEFAULT 0,
                        is_recurring INTEGER NOT NULL DEFAULT 0,
                        recurring_pattern TEXT,
                        recurring_days_json TEXT NOT NULL DEFAULT '[]',
                        recurring_end_date TEXT,
                        parent_event_id TEXT,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE UNIQUE INDEX IF NOT EXISTS events_parent_start_key
                    ON events (parent_event_id, start_time)
                    """
                )
                conn.execute("CREATE INDEX IF NOT EXISTS events_start_time_idx ON events (start_time)")
                conn.execute("CREATE INDEX IF NOT EXISTS events_is_recurring_idx ON events (is_recurring)")
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS event_attendees (
                        event_id TEXT NOT NULL,
                        user_id TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        PRIMARY KEY (event_id, user_id)
                    )
                    """
                )
                # Occurrences removed or moved away from their generated slot; never re-materialized.
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS excluded_occurrences (
                        parent_event_id TEXT NOT NULL,
                        start_time TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        PRIMARY KEY (parent_event_id, start_time)
                    )
                    """
                )
                conn.commit()

    def _row_to_template(self, row: sqlite3.Row) -> EventTemplate:
        offset = int(row["utc_offset_minutes"])
        start_time = _localize(from_db(row["start_time"]), offset)
        end_time = _localize(from_db(row["end_time"]), offset)
        duration_ms = 0
        if end_time is not None and end_time > start_time:
            duration_ms = int((end_time - start_time).total_seconds() * 1000)
        rule = RecurrenceRule(
            pattern=row["recurring_pattern"],
            days=json.loads(row["recurring_days_json"] or "[]"),
            start_time=start_time,
            end_date=_localize(from_db(row["recurring_end_date"]), offset),
            duration_ms=duration_ms,
        )
        return EventTemplate(
            id=row["id"],
            title=row["title"],
            description=row["description"],
            image=row["image"],
            group_id=row["group_id"],
            location_id=row["location_id"],
            organizer_id=row["organizer_id"],
            start_time=start_time,
            end_time=end_time,
            recurrence=rule,
            created_at=from_db(row["created_at"]),
        )

    def _row_to_instance(self, row: sqlite3.Row) -> EventInstance:
        offset = int(row["utc_offset_minutes"])
        return EventInstance(
            id=row["id"],
            parent_event_id=row["parent_event_id"],
            title=row["title"],
            description=row["description"],
            image=row["image"],
            group_id=row["group_id"],
            location_id=row["location_id"],
            organizer_id=row["organizer_id"],
            start_time=_localize(from_db(row["start_time"]), offset),
            end_time=_localize(from_db(row["end_time"]), offset),
            attendee_count=int(row["attendee_count"]),
            created_at=from_db(row["created_at"]),
        )

    _INSTANCE_SELECT = """
        SELECT e.*, (SELECT COUNT(*) FROM event_attendees a WHERE a.event_id = e.id) AS attendee_count
        FROM events e
    """

    def _add_attendee(self, conn: sqlite3.Connection, event_id: str, user_id: str) -> None:
        conn.execute(
            "INSERT OR IGNORE INTO event_attendees (event_id, user_id, created_at) VALUES (?, ?, ?)",
            (event_id, user_id, to_db(utc_now())),
        )

    def _exclude_occurrence(self, conn: sqlite3.Connection, parent_event_id: str, start_time: str) -> None:
        conn.execute(
            """
            INSERT OR IGNORE INTO excluded_occurrences (parent_event_id, start_time, created_at)
            VALUES (?, ?, ?)
            """,
            (parent_event_id, start_time, to_db(utc_now())),
        )

    def create_event(
        self,
        *,
        organizer_id: str,
        title: str,
        start_time: datetime,
        end_time: Optional[datetime] = None,
        description: Optional[str] = None,
        image: Optional[str] = None,
        group_id: Optional[str] = None,
        location_id: Optional[str] = None,
    ) -> EventInstance:
        if end_time is not None and end_time < start_time:
            raise EventStoreValidationError("End time must be after start time")
        event_id = f"evt_{uuid4().hex[:10]}"
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO events (
                        id, title, description, image, group_id, location_id, organizer_id,
                        start_time, end_time, utc_offset_minutes, is_recurring, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
                    """,
                    (
                        event_id,
                        title,
                        description,
                        image,
                        group_id,
                        location_id,
                        organizer_id,
                        to_db(start_time),
                        to_db(end_time),
                        _offset_minutes(start_time),
                        to_db(utc_now()),
                    ),
                )
                self._add_attendee(conn, event_id, organizer_id)
                conn.commit()
        created = self.get_event(event_id)
        assert created is not None
        return created

    def create_template(
        self,
        *,
        organizer_id: str,
        title: str,
        rule: RecurrenceRule,
        end_time: Optional[datetime] = None,
        description: Optional[str] = None,
        image: Optional[str] = None,
        group_id: Optional[str] = None,
        location_id: Optional[str] = None,
    ) -> EventTemplate:
        if end_time is not None and end_time < rule.start_time:
            raise EventStoreValidationError("End time must be after start time")
        template_id = f"evt_{uuid4().hex[:10]}"
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO events (
                        id, title, description, image, group_id, location_id, organizer_id,
                        start_time, end_time, utc_offset_minutes, is_recurring, recurring_pattern,
                        recurring_days_json, recurring_end_date, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?, ?)
                    """,
                    (
                        template_id,
                        title,
                        description,
                        image,
                        group_id,
                        location_id,
                        organizer_id,
                        to_db(rule.start_time),
                        to_db(end_time),
                        _offset_minutes(rule.start_time),
                        rule.pattern,
                        json.dumps(sorted(set(rule.days))),
                        to_db(rule.end_date),
                        to_db(utc_now()),
                    ),
                )
                conn.commit()
        created = self.get_template(template_id)
        assert created is not None
        return created

    def get_template(self, template_id: str) -> Optional[EventTemplate]:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM events WHERE id = ? AND is_recurring = 1",
                    (template_id,),
                ).fetchone()
        return self._row_to_template(row) if row else None

    def get_event(self, event_id: str) -> Optional[EventInstance]:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    self._INSTANCE_SELECT + " WHERE e.id = ? AND e.is_recurring = 0",
                    (event_id,),
                ).fetchone()
        return self._row_to_instance(row) if row else None

    def update_template(
        self,
        template_id: str,
        *,
        fields: Dict[str, Any],
        rule: Optional[RecurrenceRule] = None,
    ) -> EventTemplate:
        assignments: List[str] = []
        params: List[Any] = []
        for name, value in fields.items():
            if name not in TEMPLATE_UPDATABLE_FIELDS:
                raise EventStoreValidationError(f"Field cannot be updated: {name}")
            assignments.append(f"{name} = ?")
            params.append(to_db(value) if isinstance(value, datetime) else value)
        if "start_time" in fields:
            assignments.append("utc_offset_minutes = ?")
            params.append(_offset_minutes(fields["start_time"]))
        if rule is not None:
            assignments.extend(["recurring_pattern = ?", "recurring_days_json = ?", "recurring_end_date = ?"])
            params.extend([rule.pattern, json.dumps(sorted(set(rule.days))), to_db(rule.end_date)])

        with self._lock:
            with self._connect() as conn:
                exists = conn.execute(
                    "SELECT 1 FROM events WHERE id = ? AND is_recurring = 1",
                    (template_id,),
                ).fetchone()
                if not exists:
                    raise EventStoreNotFoundError("Recurring event not found")
                if assignments:
                    conn.execute(
                        f"UPDATE events SET {', '.join(assignments)} WHERE id = ?",
                        (*params, template_id),
                    )
                    conn.commit()
        updated = self.get_template(template_id)
        assert updated is not None
        return updated

    def update_event(self, event_id: str, fields: Dict[str, Any]) -> EventInstance:
        existing = self.get_event(event_id)
        if not existing:
            raise EventStoreNotFoundError("Event not found")
        start_time = fields.get("start_time", existing.start_time)
        end_time = fields.get("end_time", existing.end_time)
        if end_time is not None and end_time < start_time:
            raise EventStoreValidationError("End time must be after start time")

        assignments: List[str] = []
        params: List[Any] = []
        for name, value in fields.items():
            if name not in TEMPLATE_UPDATABLE_FIELDS:
                raise EventStoreValidationError(f"Field cannot be updated: {name}")
            assignments.append(f"{name} = ?")
            params.append(to_db(value) if isinstance(value, datetime) else value)
        if not assignments:
            return existing
        moved = existing.parent_event_id is not None and to_db(start_time) != to_db(existing.start_time)
        with self._lock:
            with self._connect() as conn:
                try:
                    conn.execute(
                        f"UPDATE events SET {', '.join(assignments)} WHERE id = ?",
                        (*params, event_id),
                    )
                except sqlite3.IntegrityError as exc:
                    raise EventStoreConflictError("Another instance already starts at that time") from exc
                if moved:
                    self._exclude_occurrence(conn, existing.parent_event_id, to_db(existing.start_time))
                conn.commit()
        updated = self.get_event(event_id)
        assert updated is not None
        return updated

    def list_active_templates(self, now: datetime) -> List[EventTemplate]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT * FROM events
                    WHERE is_recurring = 1
                      AND recurring_pattern IS NOT NULL
                      AND recurring_days_json != '[]'
                      AND (recurring_end_date IS NULL OR recurring_end_date > ?)
                    ORDER BY created_at
                    """,
                    (to_db(now),),
                ).fetchall()
        return [self._row_to_template(row) for row in rows]

    def create_instance(self, template: EventTemplate, start_time: datetime) -> EventInstance:
        end_time = None
        if template.duration_ms > 0:
            end_time = start_time + timedelta(milliseconds=template.duration_ms)
        instance_id = f"evt_{uuid4().hex[:10]}"
        with self._lock:
            try:
                with self._connect() as conn:
                    conn.execute(
                        """
                        INSERT INTO events (
                            id, title, description, image, group_id, location_id, organizer_id,
                            start_time, end_time, utc_offset_minutes, is_recurring, parent_event_id, created_at
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
                        """,
                        (
                            instance_id,
                            template.title,
                            template.description,
                            template.image,
                            template.group_id,
                            template.location_id,
                            template.organizer_id,
                            to_db(start_time),
                            to_db(end_time),
                            _offset_minutes(start_time),
                            template.id,
                            to_db(utc_now()),
                        ),
                    )
                    self._add_attendee(conn, instance_id, template.organizer_id)
                    conn.commit()
            except sqlite3.IntegrityError as exc:
                raise InstanceAlreadyExistsError(
                    f"Instance of {template.id} at {to_db(start_time)} already exists"
                ) from exc
            except sqlite3.Error as exc:
                raise EventStorePersistenceError(f"Failed to store instance of {template.id}: {exc}") from exc
        return EventInstance(
            id=instance_id,
            parent_event_id=template.id,
            title=template.title,
            description=template.description,
            image=template.image,
            group_id=template.group_id,
            location_id=template.location_id,
            organizer_id=template.organizer_id,
            start_time=start_time,
            end_time=end_time,
            attendee_count=1,
        )

    def find_instances(
        self,
        template_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[EventInstance]:
        clauses = ["e.parent_event_id = ?"]
        params: List[Any] = [template_id]
        if start is not None:
            clauses.append("e.start_time >= ?")
            params.append(to_db(start))
        if end is not None:
            clauses.append("e.start_time < ?")
            params.append(to_db(end))
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    self._INSTANCE_SELECT + f" WHERE {' AND '.join(clauses)} ORDER BY e.start_time",
                    params,
                ).fetchall()
        return [self._row_to_instance(row) for row in rows]

    def latest_instance_start(self, template_id: str) -> Optional[datetime]:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT MAX(start_time) AS latest FROM events WHERE parent_event_id = ?",
                    (template_id,),
                ).fetchone()
        return from_db(row["latest"]) if row else None

    def attendees_of_instances(self, template_id: str, since: datetime) -> Set[str]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT DISTINCT a.user_id
                    FROM event_attendees a
                    JOIN events e ON e.id = a.event_id
                    WHERE e.parent_event_id = ? AND e.start_time >= ?
                    """,
                    (template_id, to_db(since)),
                ).fetchall()
        return {row["user_id"] for row in rows}

    def delete_instances(self, template_id: str, since: Optional[datetime] = None) -> int:
        clause = "parent_event_id = ?"
        params: List[Any] = [template_id]
        if since is not None:
            clause += " AND start_time >= ?"
            params.append(to_db(since))
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    f"DELETE FROM event_attendees WHERE event_id IN (SELECT id FROM events WHERE {clause})",
                    params,
                )
                deleted = conn.execute(f"DELETE FROM events WHERE {clause}", params).rowcount
                conn.execute(f"DELETE FROM excluded_occurrences WHERE {clause}", params)
                conn.commit()
        return deleted

    def excluded_starts(
        self,
        template_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Set[datetime]:
        clauses = ["parent_event_id = ?"]
        params: List[Any] = [template_id]
        if start is not None:
            clauses.append("start_time >= ?")
            params.append(to_db(start))
        if end is not None:
            clauses.append("start_time < ?")
            params.append(to_db(end))
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"SELECT start_time FROM excluded_occurrences WHERE {' AND '.join(clauses)}",
                    params,
                ).fetchall()
        return {from_db(row["start_time"]) for row in rows}

    def update_future_instances(
        self,
        template_id: str,
        since: datetime,
        fields: Dict[str, Any],
        duration_ms: Optional[int] = None,
    ) -> int:
        """Copy display fields (and optionally a new duration) to instances starting at or after ``since``."""
        unknown = set(fields) - set(INSTANCE_DISPLAY_FIELDS)
        if unknown:
            raise EventStoreValidationError(f"Fields cannot be propagated to instances: {sorted(unknown)}")
        if not fields and duration_ms is None:
            return 0

        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT id, start_time FROM events WHERE parent_event_id = ? AND start_time >= ?",
                    (template_id, to_db(since)),
                ).fetchall()
                for row in rows:
                    assignments = [f"{name} = ?" for name in fields]
                    params: List[Any] = list(fields.values())
                    if duration_ms is not None:
                        start_time = from_db(row["start_time"])
                        end_time = start_time + timedelta(milliseconds=duration_ms) if duration_ms > 0 else None
                        assignments.append("end_time = ?")
                        params.append(to_db(end_time))
                    conn.execute(
                        f"UPDATE events SET {', '.join(assignments)} WHERE id = ?",
                        (*params, row["id"]),
                    )
                conn.commit()
        return len(rows)

    def delete_event(self, event_id: str) -> None:
        """Delete a one-off event or a single instance; a deleted instance stays cancelled."""
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT parent_event_id, start_time FROM events WHERE id = ? AND is_recurring = 0",
                    (event_id,),
                ).fetchone()
                if not row:
                    raise EventStoreNotFoundError("Event not found")
                conn.execute("DELETE FROM events WHERE id = ?", (event_id,))
                if row["parent_event_id"]:
                    self._exclude_occurrence(conn, row["parent_event_id"], row["start_time"])
                conn.execute("DELETE FROM event_attendees WHERE event_id = ?", (event_id,))
                conn.commit()

    def delete_template(self, template_id: str, cascade: bool = False) -> int:
        """Delete a template; returns the number of instances removed with it."""
        removed = self.delete_instances(template_id) if cascade else 0
        with self._lock:
            with self._connect() as conn:
                deleted = conn.execute(
                    "DELETE FROM events WHERE id = ? AND is_recurring = 1",
                    (template_id,),
                ).rowcount
                conn.commit()
        if not deleted:
            raise EventStoreNotFoundError("Recurring event not found")
        return removed

    def list_events(
        self,
        *,
        start: datetime,
        end: datetime,
        group_id: Optional[str] = None,
        organizer_id: Optional[str] = None,
        include_instances: bool = True,
        visible_group_ids: Optional[Iterable[str]] = None,
        limit: int = 50,
    ) -> List[EventInstance]:
        """List one-off events and instances; ``visible_group_ids`` restricts group-bound rows before the limit."""
        clauses = ["e.is_recurring = 0", "e.start_time >= ?", "e.start_time < ?"]
        params: List[Any] = [to_db(start), to_db(end)]
        if visible_group_ids is not None:
            visible = sorted(set(visible_group_ids))
            if visible:
                placeholders = ", ".join("?" for _ in visible)
                clauses.append(f"(e.group_id IS NULL OR e.group_id IN ({placeholders}))")
                params.extend(visible)
            else:
                clauses.append("e.group_id IS NULL")
        if group_id:
            clauses.append("e.group_id = ?")
            params.append(group_id)
        if organizer_id:
            clauses.append("e.organizer_id = ?")
            params.append(organizer_id)
        if not include_instances:
            clauses.append("e.parent_event_id IS NULL")
        params.append(limit)
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    self._INSTANCE_SELECT + f" WHERE {' AND '.join(clauses)} ORDER BY e.start_time LIMIT ?",
                    params,
                ).fetchall()
        return [self._row_to_instance(row) for row in rows]

    def set_attendance(self, event_id: str, user_id: str, attending: bool) -> EventInstance:
        if self.get_template(event_id):
            raise EventStoreValidationError("Recurring templates cannot be attended; choose an instance")
        if not self.get_event(event_id):
            raise EventStoreNotFoundError("Event not found")
        with self._lock:
            with self._connect() as conn:
                if attending:
                    self._add_attendee(conn, event_id, user_id)
                else:
                    conn.execute(
                        "DELETE FROM event_attendees WHERE event_id = ? AND user_id = ?",
                        (event_id, user_id),
                    )
                conn.commit()
        updated = self.get_event(event_id)
        assert updated is not None
        return updated

    def attending_event_ids(self, user_id: str, event_ids: Iterable[str]) -> Set[str]:
        ids = list(event_ids)
        if not ids:
            return set()
        placeholders = ", ".join("?" for _ in ids)
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"SELECT event_id FROM event_attendees WHERE user_id = ? AND event_id IN ({placeholders})",
                    (user_id, *ids),
                ).fetchall()
        return {row["event_id"] for row in rows}


event_store = EventStore(db_path=EVENTS_DB_PATH)
