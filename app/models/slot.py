import datetime as dt
from enum import Enum

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from app.models.user import _utc_naive_now

WEEKDAYS = ("MON", "TUE", "WED", "THU", "FRI", "SAT", "SUN")


class SlotStatus(str, Enum):
    AVAILABLE = "available"
    PENDING = "pending"
    BOOKED = "booked"
    # Only ever reported on virtual slots built from open waitlist entries
    WAITLISTED = "waitlisted"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Slots a request may still be booked into
OPEN_STATUSES = (SlotStatus.AVAILABLE.value, SlotStatus.PENDING.value)
CLOSED_STATUSES = (SlotStatus.COMPLETED.value, SlotStatus.CANCELLED.value)


def weekday_code(day: dt.date) -> str:
    return WEEKDAYS[day.weekday()]


class SlotInvariantError(ValueError):
    pass


def check_slot_state(status: str, therapist_id: int | None, student_id: int | None) -> None:
    """Raise SlotInvariantError when status and assignment disagree."""
    if status == SlotStatus.BOOKED.value:
        if therapist_id is None or student_id is None:
            raise SlotInvariantError("booked slot requires both therapist and student")
    elif status in OPEN_STATUSES:
        if therapist_id is None:
            raise SlotInvariantError(f"{status} slot requires a therapist")
        if student_id is not None:
            raise SlotInvariantError(f"{status} slot cannot have a student")
    elif status == SlotStatus.WAITLISTED.value:
        raise SlotInvariantError("waitlisted slots are not persisted")


class Slot(SQLModel, table=True):
    __tablename__ = "slots"
    id: int | None = Field(default=None, primary_key=True)
    date: dt.date = Field(index=True)
    day: str
    start_time: dt.time
    end_time: dt.time
    therapist_id: int | None = Field(default=None, foreign_key="users.id", index=True)
    student_id: int | None = Field(default=None, foreign_key="users.id", index=True)
    status: str = Field(default=SlotStatus.AVAILABLE.value, index=True)
    notes: str | None = None
    is_recurring: bool = False
    recurring_days: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    # Bumped on every conditional transition (see slot_service.transition_slot)
    version: int = Field(default=0)
    created_at: dt.datetime = Field(default_factory=_utc_naive_now)
    updated_at: dt.datetime = Field(default_factory=_utc_naive_now)

    @property
    def starts_at(self) -> dt.datetime:
        return dt.datetime.combine(self.date, self.start_time)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES and self.student_id is None

    def check_invariants(self) -> None:
        if self.end_time <= self.start_time:
            raise SlotInvariantError("end_time must be after start_time")
        check_slot_state(self.status, self.therapist_id, self.student_id)


class SlotPublic(SQLModel):
    id: int | None = None
    date: dt.date
    day: str
    start_time: dt.time
    end_time: dt.time
    therapist_id: int | None = None
    student_id: int | None = None
    status: str
    notes: str | None = None
    is_recurring: bool = False
    recurring_days: list[str] = []
    # Set on virtual waitlist entries shown to students
    request_id: int | None = None
    created_at: dt.datetime | None = None
    updated_at: dt.datetime | None = None
