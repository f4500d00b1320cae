from datetime import datetime
from enum import Enum

from sqlmodel import Field, SQLModel

from app.models.user import _utc_naive_now


class NotificationType(str, Enum):
    APPOINTMENT_ASSIGNED = "appointment_assigned"
    APPOINTMENT_CANCELLED = "appointment_cancelled"
    APPOINTMENT_COMPLETED = "appointment_completed"
    ALTERNATE_OFFERED = "alternate_offered"
    WAITLIST_ADDED = "waitlist_added"
    WAITLIST_MATCHED = "waitlist_matched"
    SLOT_UNAVAILABLE = "slot_unavailable"
    AVAILABILITY_CANCELLED = "availability_cancelled"
    FEEDBACK_RECEIVED = "feedback_received"
    SYSTEM = "system"


class Notification(SQLModel, table=True):
    __tablename__ = "notifications"
    id: int | None = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)
    title: str
    message: str
    type: str = Field(default=NotificationType.SYSTEM.value)
    # Weak reference (slot/request/feedback id); never cascades
    related_id: str | None = None
    is_read: bool = Field(default=False, index=True)
    created_at: datetime = Field(default_factory=_utc_naive_now, index=True)


class NotificationPublic(SQLModel):
    id: int
    user_id: int
    title: str
    message: str
    type: str
    related_id: str | None = None
    is_read: bool
    created_at: datetime
