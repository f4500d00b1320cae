from datetime import datetime

from sqlalchemy import CheckConstraint
from sqlmodel import Field, SQLModel

from app.models.user import _utc_naive_now


class Feedback(SQLModel, table=True):
    __tablename__ = "feedback"
    __table_args__ = (CheckConstraint("rating >= 1 AND rating <= 5", name="ck_feedback_rating"),)
    id: int | None = Field(default=None, primary_key=True)
    # One feedback per appointment
    appointment_id: int = Field(foreign_key="slots.id", unique=True, index=True)
    student_id: int = Field(foreign_key="users.id", index=True)
    therapist_id: int = Field(foreign_key="users.id", index=True)
    rating: int
    comments: str | None = None
    created_at: datetime = Field(default_factory=_utc_naive_now)


class FeedbackPublic(SQLModel):
    id: int
    appointment_id: int
    student_id: int
    therapist_id: int
    rating: int
    comments: str | None = None
    created_at: datetime
