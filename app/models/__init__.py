from app.models.user import User, UserCreate, UserPublic, UserRole
from app.models.slot import Slot, SlotPublic, SlotStatus
from app.models.student_request import MatchStatus, StudentRequest, StudentRequestPublic
from app.models.feedback import Feedback, FeedbackPublic
from app.models.notification import Notification, NotificationPublic, NotificationType

__all__ = [
    "User",
    "UserCreate",
    "UserPublic",
    "UserRole",
    "Slot",
    "SlotPublic",
    "SlotStatus",
    "StudentRequest",
    "StudentRequestPublic",
    "MatchStatus",
    "Feedback",
    "FeedbackPublic",
    "Notification",
    "NotificationPublic",
    "NotificationType",
]
