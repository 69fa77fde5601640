from typing import List, Literal, Optional

from fastapi import APIRouter, HTTPException, Query

from app.models import NotificationRecord
from app.services.notification_store import notification_store

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=List[NotificationRecord])
def list_notifications(
    user_id: str = Query(...),
    unread_only: bool = Query(default=False),
    category: Optional[Literal["event", "group", "system"]] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=100),
):
    return notification_store.list_for_user(
        user_id=user_id,
        unread_only=unread_only,
        category=category,
        limit=limit,
    )


@router.post("/{notification_id}/read", response_model=NotificationRecord)
def mark_notification_read(notification_id: str, user_id: str = Query(...)):
    updated = notification_store.mark_read(user_id=user_id, notification_id=notification_id)
    if not updated:
        raise HTTPException(status_code=404, detail="Notification not found")
    return updated
