import datetime as dt
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user, get_emitter, require_roles
from app.api.schemas.slot import (
    AdminAssignRequest,
    AlternativeRequest,
    AppointmentRequest,
    AvailabilityRequest,
    AvailabilityResponse,
    CancelSlotRequest,
    MatchResponse,
    ProcessPendingResponse,
    SlotStatusUpdate,
    WeeklySchedule,
)
from app.core.db import get_session
from app.models.slot import SlotPublic, SlotStatus
from app.models.student_request import StudentRequestPublic
from app.models.user import User, UserRole
from app.services.appointment_service import (
    cancel_slot,
    complete_slot,
    get_slot_waitlist,
    get_visible_slot,
    list_visible_slots,
    mark_availability,
    update_slot_status,
)
from app.services.auth_service import get_user_with_role
from app.services.matching_service import (
    MatchOutcome,
    accept_alternate,
    admin_assign,
    decline_alternate,
    process_pending_requests,
    request_alternative,
    request_appointment,
    request_to_public,
)
from app.services.notification_service import NotificationEmitter
from app.services.slot_service import slot_to_public, weekly_schedule

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/slots", tags=["slots"])


def _to_response(outcome: MatchOutcome) -> MatchResponse:
    return MatchResponse(
        status=outcome.status,
        message=outcome.message,
        request=request_to_public(outcome.request) if outcome.request else None,
        slot=slot_to_public(outcome.slot) if outcome.slot else None,
        waitlist_position=outcome.waitlist_position,
    )


async def _resolve_student(session: AsyncSession, current_user: User, student_id: int | None) -> int:
    """Students act for themselves; admins must name the student."""
    if current_user.is_admin:
        if student_id is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="student_id is required when acting as admin",
            )
        await get_user_with_role(session, student_id, UserRole.STUDENT)
        return student_id
    if student_id is not None and student_id != current_user.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Students can only act for themselves",
        )
    return current_user.id


@router.get("", response_model=list[SlotPublic])
async def list_slots(
    therapist_id: int | None = Query(None),
    student_id: int | None = Query(None),
    status_filter: SlotStatus | None = Query(None, alias="status"),
    start_date: dt.date | None = Query(None),
    end_date: dt.date | None = Query(None),
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
) -> list[SlotPublic]:
    return await list_visible_slots(
        session,
        current_user,
        therapist_id=therapist_id,
        student_id=student_id,
        status=status_filter.value if status_filter else None,
        start_date=start_date,
        end_date=end_date,
    )


@router.post("", response_model=AvailabilityResponse, status_code=status.HTTP_201_CREATED)
@router.post("/therapist/availability", response_model=AvailabilityResponse, status_code=status.HTTP_201_CREATED)
async def mark_therapist_availability(
    body: AvailabilityRequest,
    session: AsyncSession = Depends(get_session),
    emitter: NotificationEmitter = Depends(get_emitter),
    current_user: User = Depends(require_roles(UserRole.THERAPIST, UserRole.ADMIN)),
) -> AvailabilityResponse:
    if current_user.is_admin:
        if body.therapist_id is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="therapist_id is required when acting as admin",
            )
        await get_user_with_role(session, body.therapist_id, UserRole.THERAPIST)
        therapist_id = body.therapist_id
    else:
        if body.therapist_id not in (None, current_user.id):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Therapists can only mark their own availability",
            )
        therapist_id = current_user.id

    slots = await mark_availability(
        session,
        emitter,
        therapist_id,
        body.date,
        body.start_time,
        body.end_time,
        notes=body.notes,
        is_recurring=body.is_recurring,
        recurring_days=body.recurring_days,
    )
    logger.info("Therapist %s opened %d slot(s) starting %s", therapist_id, len(slots), body.date)
    booked = sum(1 for s in slots if s.status == SlotStatus.BOOKED.value)
    message = f"Created {len(slots)} slot(s)"
    if booked:
        message += f"; {booked} assigned from the waitlist"
    return AvailabilityResponse(message=message, slots=[slot_to_public(s) for s in slots])


@router.get("/schedule/weekly", response_model=WeeklySchedule)
async def get_weekly_schedule(
    start_date: dt.date | None = Query(None),
    session: AsyncSession = Depends(get_session),
    _: User = Depends(require_roles(UserRole.ADMIN)),
) -> WeeklySchedule:
    start = start_date or dt.date.today()
    schedule = await weekly_schedule(session, start)
    return WeeklySchedule(
        start_date=start,
        end_date=start + dt.timedelta(days=6),
        therapists={tid: [slot_to_public(s) for s in slots] for tid, slots in schedule.items()},
    )


@router.post("/student/request", response_model=MatchResponse, status_code=status.HTTP_201_CREATED)
async def request_student_appointment(
    body: AppointmentRequest,
    session: AsyncSession = Depends(get_session),
    emitter: NotificationEmitter = Depends(get_emitter),
    current_user: User = Depends(require_roles(UserRole.STUDENT, UserRole.ADMIN)),
) -> MatchResponse:
    student_id = await _resolve_student(session, current_user, body.student_id)
    outcome = await request_appointment(
        session,
        emitter,
        student_id,
        preferred_days=body.preferred_days,
        preferred_times=body.preferred_times,
        specific_date=body.specific_date,
        specific_time=body.specific_time,
        preferred_therapist_id=body.preferred_therapist_id,
        notes=body.notes,
    )
    return _to_response(outcome)


@router.post("/student/request-alternative", response_model=MatchResponse)
async def request_student_alternative(
    body: AlternativeRequest,
    session: AsyncSession = Depends(get_session),
    emitter: NotificationEmitter = Depends(get_emitter),
    current_user: User = Depends(require_roles(UserRole.STUDENT)),
) -> MatchResponse:
    outcome = await request_alternative(
        session,
        emitter,
        current_user.id,
        body.option,
        request_id=body.request_id,
        preferred_therapist_id=body.preferred_therapist_id,
    )
    return _to_response(outcome)


@router.post("/student/requests/{request_id}/accept", response_model=MatchResponse)
async def accept_alternate_offer(
    request_id: int,
    session: AsyncSession = Depends(get_session),
    emitter: NotificationEmitter = Depends(get_emitter),
    current_user: User = Depends(require_roles(UserRole.STUDENT, UserRole.ADMIN)),
) -> MatchResponse:
    return _to_response(await accept_alternate(session, emitter, request_id, current_user))


@router.post("/student/requests/{request_id}/decline", response_model=MatchResponse)
async def decline_alternate_offer(
    request_id: int,
    session: AsyncSession = Depends(get_session),
    emitter: NotificationEmitter = Depends(get_emitter),
    current_user: User = Depends(require_roles(UserRole.STUDENT, UserRole.ADMIN)),
) -> MatchResponse:
    return _to_response(await decline_alternate(session, emitter, request_id, current_user))


@router.post("/admin/assign", response_model=MatchResponse)
async def assign_student(
    body: AdminAssignRequest,
    session: AsyncSession = Depends(get_session),
    emitter: NotificationEmitter = Depends(get_emitter),
    _: User = Depends(require_roles(UserRole.ADMIN)),
) -> MatchResponse:
    outcome = await admin_assign(
        session,
        emitter,
        body.student_id,
        slot_id=body.slot_id,
        therapist_id=body.therapist_id,
        date=body.date,
        start_time=body.start_time,
        notes=body.notes,
    )
    return _to_response(outcome)


@router.post("/admin/process-pending", response_model=ProcessPendingResponse)
async def process_pending(
    session: AsyncSession = Depends(get_session),
    emitter: NotificationEmitter = Depends(get_emitter),
    _: User = Depends(require_roles(UserRole.ADMIN)),
) -> ProcessPendingResponse:
    counts = await process_pending_requests(session, emitter)
    return ProcessPendingResponse(processed=sum(counts.values()), outcomes=counts)


@router.get("/{slot_id}", response_model=SlotPublic)
async def get_slot_details(
    slot_id: int,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
) -> SlotPublic:
    return slot_to_public(await get_visible_slot(session, slot_id, current_user))


@router.get("/{slot_id}/waitlist", response_model=list[StudentRequestPublic])
async def get_waitlist(
    slot_id: int,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(require_roles(UserRole.THERAPIST, UserRole.ADMIN)),
) -> list[StudentRequestPublic]:
    return [request_to_public(r) for r in await get_slot_waitlist(session, slot_id, current_user)]


@router.post("/{slot_id}/cancel", response_model=SlotPublic)
async def cancel(
    slot_id: int,
    body: CancelSlotRequest | None = None,
    session: AsyncSession = Depends(get_session),
    emitter: NotificationEmitter = Depends(get_emitter),
    current_user: User = Depends(get_current_user),
) -> SlotPublic:
    """Cancel a booking or withdraw open availability.

    A student cancelling, or ``reassign`` (the default), reopens a booked slot
    for the waitlist. With ``reassign=false`` a therapist or admin closes it as
    ``cancelled``; it keeps its student and is not offered to anyone else.
    """
    body = body or CancelSlotRequest()
    slot = await cancel_slot(
        session, emitter, slot_id, current_user, reason=body.reason, reassign=body.reassign
    )
    return slot_to_public(slot)


@router.post("/{slot_id}/complete", response_model=SlotPublic)
async def complete(
    slot_id: int,
    session: AsyncSession = Depends(get_session),
    emitter: NotificationEmitter = Depends(get_emitter),
    current_user: User = Depends(get_current_user),
) -> SlotPublic:
    return slot_to_public(await complete_slot(session, emitter, slot_id, current_user))


@router.patch("/{slot_id}/status", response_model=SlotPublic)
async def change_status(
    slot_id: int,
    body: SlotStatusUpdate,
    session: AsyncSession = Depends(get_session),
    emitter: NotificationEmitter = Depends(get_emitter),
    current_user: User = Depends(require_roles(UserRole.THERAPIST, UserRole.ADMIN)),
) -> SlotPublic:
    slot = await update_slot_status(
        session, emitter, slot_id, current_user, body.status, notes=body.notes
    )
    return slot_to_public(slot)
