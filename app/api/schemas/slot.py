import datetime as dt

from pydantic import BaseModel, Field

from app.models.slot import SlotPublic, SlotStatus
from app.models.student_request import StudentRequestPublic


class AvailabilityRequest(BaseModel):
    date: dt.date
    start_time: dt.time
    end_time: dt.time | None = None  # defaults to start + slot_duration_minutes
    notes: str | None = None
    is_recurring: bool = False
    recurring_days: list[str] = []
    # Admins open availability on a therapist's behalf
    therapist_id: int | None = None


class AvailabilityResponse(BaseModel):
    message: str
    slots: list[SlotPublic]


class AppointmentRequest(BaseModel):
    preferred_days: list[str] = []
    preferred_times: list[str] = []
    specific_date: dt.date | None = None
    specific_time: dt.time | None = None
    preferred_therapist_id: int | None = None
    notes: str | None = None
    # Admins may file a request for a student
    student_id: int | None = None


class AlternativeRequest(BaseModel):
    option: str  # "auto" or "other"; checked by the matching service
    request_id: int | None = None
    preferred_therapist_id: int | None = None


class AdminAssignRequest(BaseModel):
    student_id: int
    slot_id: int | None = None
    therapist_id: int | None = None
    date: dt.date | None = None
    start_time: dt.time | None = None
    notes: str | None = None


class CancelSlotRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)
    reassign: bool = True


class SlotStatusUpdate(BaseModel):
    status: SlotStatus
    notes: str | None = None


class MatchResponse(BaseModel):
    status: str
    message: str
    request: StudentRequestPublic | None = None
    slot: SlotPublic | None = None
    waitlist_position: int | None = None


class ProcessPendingResponse(BaseModel):
    processed: int
    outcomes: dict[str, int]


class WeeklySchedule(BaseModel):
    start_date: dt.date
    end_date: dt.date
    therapists: dict[int, list[SlotPublic]]
