from pydantic import BaseModel

from app.models.notification import NotificationType


class UnreadCount(BaseModel):
    count: int


class MarkAllReadResponse(BaseModel):
    updated: int


class NotificationTestRequest(BaseModel):
    user_id: int
    title: str = "Test Notification"
    message: str = "This is a test notification."
    type: NotificationType = NotificationType.SYSTEM
