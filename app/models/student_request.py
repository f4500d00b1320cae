import datetime as dt
from enum import Enum

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from app.models.user import _utc_naive_now


class MatchStatus(str, Enum):
    PENDING = "pending"
    MATCHED = "matched"
    ALTERNATE_OFFERED = "alternate_offered"
    WAITLISTED = "waitlisted"
    NO_MATCH = "no_match"
    CANCELLED = "cancelled"


CLOSED_MATCH_STATUSES = (
    MatchStatus.MATCHED.value,
    MatchStatus.NO_MATCH.value,
    MatchStatus.CANCELLED.value,
)


class StudentRequest(SQLModel, table=True):
    __tablename__ = "student_requests"
    id: int | None = Field(default=None, primary_key=True)
    student_id: int = Field(foreign_key="users.id", index=True)
    preferred_days: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    preferred_times: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    preferred_therapist_id: int | None = Field(default=None, foreign_key="users.id")
    requested_date: dt.date | None = Field(default=None, index=True)
    requested_time: dt.time | None = None
    # Booked slot when matched, held slot when alternate_offered, awaited slot when waitlisted
    slot_id: int | None = Field(default=None, foreign_key="slots.id", index=True)
    match_status: str = Field(default=MatchStatus.PENDING.value, index=True)
    notes: str | None = None
    created_at: dt.datetime = Field(default_factory=_utc_naive_now, index=True)
    updated_at: dt.datetime = Field(default_factory=_utc_naive_now)

    @property
    def is_closed(self) -> bool:
        return self.match_status in CLOSED_MATCH_STATUSES


class StudentRequestPublic(SQLModel):
    id: int
    student_id: int
    preferred_days: list[str] = []
    preferred_times: list[str] = []
    preferred_therapist_id: int | None = None
    requested_date: dt.date | None = None
    requested_time: dt.time | None = None
    slot_id: int | None = None
    match_status: str
    notes: str | None = None
    created_at: dt.datetime
