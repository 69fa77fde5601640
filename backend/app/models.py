from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from app.timeutils import as_utc


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return as_utc(value)


class RecurrenceRule(BaseModel):
    pattern: Literal["weekly", "monthly"]
    days: List[int] = Field(default_factory=list)
    start_time: datetime
    end_date: Optional[datetime] = None
    duration_ms: int = 0

    @field_validator("start_time", "end_date")
    @classmethod
    def normalize_datetimes(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _aware(value)


class EventTemplate(BaseModel):
    id: str
    title: str
    description: Optional[str] = None
    image: Optional[str] = None
    group_id: Optional[str] = None
    location_id: Optional[str] = None
    organizer_id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    recurrence: RecurrenceRule
    created_at: Optional[datetime] = None

    @property
    def duration_ms(self) -> int:
        return self.recurrence.duration_ms


class EventInstance(BaseModel):
    id: str
    parent_event_id: Optional[str] = None
    title: str
    description: Optional[str] = None
    image: Optional[str] = None
    group_id: Optional[str] = None
    location_id: Optional[str] = None
    organizer_id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    attendee_count: int = 0
    created_at: Optional[datetime] = None


class EventView(EventInstance):
    is_attending: bool = False
    is_organizer: bool = False


class OccurrencePreview(BaseModel):
    id: str
    parent_event_id: str
    title: str
    description: Optional[str] = None
    start_time: datetime
    end_time: Optional[datetime] = None


class OccurrencePreviewView(OccurrencePreview):
    user_response: Optional[Literal["attending"]] = None


class EventCreateRequest(BaseModel):
    user_id: str
    title: str
    description: Optional[str] = None
    start_time: datetime
    end_time: Optional[datetime] = None
    image: Optional[str] = None
    group_id: Optional[str] = None
    location_id: Optional[str] = None
    is_recurring: bool = False
    recurring_pattern: Optional[str] = None

    @field_validator("start_time", "end_time")
    @classmethod
    def normalize_datetimes(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _aware(value)


class RecurringEventCreateRequest(BaseModel):
    user_id: str
    title: str = Field(min_length=3)
    description: Optional[str] = None
    start_time: datetime
    end_time: Optional[datetime] = None
    image: Optional[str] = None
    group_id: Optional[str] = None
    location_id: Optional[str] = None
    recurring_pattern: Literal["weekly", "monthly"]
    recurring_days: List[int]
    recurring_end_date: Optional[datetime] = None

    @field_validator("start_time", "end_time", "recurring_end_date")
    @classmethod
    def normalize_datetimes(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _aware(value)


class RecurringEventCreateResponse(BaseModel):
    event: EventTemplate
    instances: List[OccurrencePreview]
    materialized_count: int
    message: str = "Recurring event created successfully"


class EventUpdateRequest(BaseModel):
    user_id: str
    title: Optional[str] = None
    description: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    image: Optional[str] = None
    location_id: Optional[str] = None
    recurring_pattern: Optional[Literal["weekly", "monthly"]] = None
    recurring_days: Optional[List[int]] = None
    recurring_end_date: Optional[datetime] = None
    update_all_instances: bool = True

    @field_validator("start_time", "end_time", "recurring_end_date")
    @classmethod
    def normalize_datetimes(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _aware(value)


class EventUpdateResponse(BaseModel):
    event: Optional[EventView] = None
    template: Optional[EventTemplate] = None
    instances_deleted: int = 0
    instances_created: int = 0
    instances_updated: int = 0


class AttendanceRequest(BaseModel):
    user_id: str
    operation: Literal["join", "leave"] = "join"


class InstancePage(BaseModel):
    page: int
    limit: int
    total_instances: int
    total_pages: int
    has_more: bool


class InstanceListResponse(BaseModel):
    instances: List[OccurrencePreviewView]
    pagination: InstancePage


class Group(BaseModel):
    id: str
    name: str
    owner_user_id: str
    is_private: bool = False
    member_count: int = 1


class GroupView(Group):
    membership_status: Literal["none", "pending", "member"] = "none"
    is_admin: bool = False


class GroupCreateRequest(BaseModel):
    user_id: str
    name: str
    is_private: bool = False


class GroupJoinRequest(BaseModel):
    user_id: str


class GroupAddMemberRequest(BaseModel):
    requester_user_id: str
    member_user_id: str


class GroupJoinRecord(BaseModel):
    group_id: str
    user_id: str
    status: Literal["pending", "member"]


class NotificationRecord(BaseModel):
    id: str
    user_id: str
    title: str
    body: str
    category: Literal["event", "group", "system"] = "system"
    read: bool = False
    created_at: str
    deep_link: Optional[str] = None
