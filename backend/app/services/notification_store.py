from datetime import datetime, timezone
from threading import Lock
from typing import Iterable, List, Optional
from uuid import uuid4

from app.models import NotificationRecord


class NotificationStore:
    def __init__(self):
        self._lock = Lock()
        self._notifications: List[NotificationRecord] = []

    def create(
        self,
        user_id: str,
        title: str,
        body: str,
        category: str = "system",
        deep_link: Optional[str] = None,
    ) -> NotificationRecord:
        record = NotificationRecord(
            id=f"ntf_{uuid4().hex[:10]}",
            user_id=user_id,
            title=title,
            body=body,
            category=category,  # type: ignore[arg-type]
            read=False,
            created_at=datetime.now(timezone.utc).isoformat(),
            deep_link=deep_link,
        )
        with self._lock:
            self._notifications.insert(0, record)
        return record

    def broadcast(
        self,
        user_ids: Iterable[str],
        title: str,
        body: str,
        category: str = "event",
        deep_link: Optional[str] = None,
        exclude: Optional[str] = None,
    ) -> List[NotificationRecord]:
        return [
            self.create(user_id=user_id, title=title, body=body, category=category, deep_link=deep_link)
            for user_id in sorted(set(user_ids))
            if user_id != exclude
        ]

    def list_for_user(
        self,
        user_id: str,
        unread_only: bool = False,
        category: Optional[str] = None,
        limit: int = 100,
    ) -> List[NotificationRecord]:
        with self._lock:
            rows = [
                n
                for n in self._notifications
                if n.user_id == user_id
                and not (unread_only and n.read)
                and (category is None or n.category == category)
            ]
        return rows[:limit]

    def mark_read(self, user_id: str, notification_id: str) -> Optional[NotificationRecord]:
        with self._lock:
            idx = next(
                (i for i, n in enumerate(self._notifications) if n.id == notification_id and n.user_id == user_id),
                None,
            )
            if idx is None:
                return None
            self._notifications[idx] = self._notifications[idx].model_copy(update={"read": True})
            return self._notifications[idx]


notification_store = NotificationStore()
