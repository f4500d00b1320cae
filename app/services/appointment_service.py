import datetime as dt
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import ConflictError, InvalidRequestError, PermissionDeniedError
from app.models.notification import NotificationType
from app.models.slot import CLOSED_STATUSES, OPEN_STATUSES, Slot, SlotPublic, SlotStatus, weekday_code
from app.models.student_request import MatchStatus, StudentRequest
from app.models.user import User, _utc_naive_now
from app.services.matching_service import next_occurrence, normalize_days, withdraw_offer
from app.services.notification_service import NotificationEmitter
from app.services.slot_service import (
    create_slot,
    default_end_time,
    find_overlapping_slot,
    get_slot,
    list_slots,
    release_slot,
    slot_to_public,
    transition_slot,
)
from app.services.waitlist_service import detach_waiters, find_waitlist_candidates, promote_waitlist

logger = logging.getLogger(__name__)


def _describe(slot: Slot) -> str:
    return f"{slot.date:%A %d %b %Y} at {slot.start_time:%H:%M}"


def _recurring_dates(first: dt.date, days: list[str], weeks: int) -> list[dt.date]:
    dates: set[dt.date] = set()
    for code in days:
        start = next_occurrence(code, first)
        for week in range(weeks):
            dates.add(start + dt.timedelta(weeks=week))
    dates.discard(first)
    return sorted(dates)


async def mark_availability(
    session: AsyncSession,
    emitter: NotificationEmitter,
    therapist_id: int,
    date: dt.date,
    start_time: dt.time,
    end_time: dt.time | None = None,
    *,
    notes: str | None = None,
    is_recurring: bool = False,
    recurring_days: list[str] | None = None,
    today: dt.date | None = None,
) -> list[Slot]:
    """Open a therapist slot (and its recurring copies); waiters are booked straight in."""
    today = today or dt.date.today()
    if date < today:
        raise InvalidRequestError("Cannot mark availability for past dates")
    end_time = end_time or default_end_time(start_time)
    days = normalize_days(recurring_days or []) if is_recurring else []
    if is_recurring and not days:
        days = [weekday_code(date)]

    created = [
        await create_slot(
            session,
            therapist_id,
            date,
            start_time,
            end_time,
            notes=notes,
            is_recurring=is_recurring,
            recurring_days=days,
        )
    ]
    if is_recurring:
        for extra in _recurring_dates(date, days, settings.recurring_weeks):
            if await find_overlapping_slot(session, therapist_id, extra, start_time, end_time):
                logger.info("Skipping recurring slot on %s for therapist %s: overlap", extra, therapist_id)
                continue
            created.append(
                await create_slot(
                    session,
                    therapist_id,
                    extra,
                    start_time,
                    end_time,
                    notes=notes,
                    is_recurring=True,
                    recurring_days=days,
                )
            )

    for slot in created:
        await promote_waitlist(session, emitter, slot)
    return created


def _actor(slot: Slot, user: User) -> str:
    if user.is_admin:
        return "admin"
    if slot.therapist_id == user.id:
        return "therapist"
    if slot.student_id == user.id:
        return "student"
    raise PermissionDeniedError("Not authorized to modify this slot")


async def _close_matched_requests(session: AsyncSession, slot: Slot) -> None:
    result = await session.execute(
        select(StudentRequest).where(
            StudentRequest.slot_id == slot.id,
            StudentRequest.match_status == MatchStatus.MATCHED.value,
        )
    )
    for request in result.scalars().all():
        request.match_status = MatchStatus.CANCELLED.value
        request.updated_at = _utc_naive_now()
        session.add(request)


def _with_reason(notes: str | None, reason: str | None) -> str | None:
    if not reason:
        return notes
    line = f"Cancelled: {reason}"
    return f"{notes}\n{line}" if notes else line


async def cancel_slot(
    session: AsyncSession,
    emitter: NotificationEmitter,
    slot_id: int,
    user: User,
    *,
    reason: str | None = None,
    reassign: bool = True,
) -> Slot:
    """Cancel a booked appointment or withdraw open availability.

    A booked slot cancelled by its student, or with ``reassign``, reopens and
    goes to the first waiter; otherwise it is closed as cancelled.
    """
    slot = await get_slot(session, slot_id)
    actor = _actor(slot, user)
    if slot.status in CLOSED_STATUSES:
        raise ConflictError(f"Slot is already {slot.status}")
    when = _describe(slot)

    if slot.status == SlotStatus.BOOKED.value:
        student_id = slot.student_id
        await _close_matched_requests(session, slot)
        if actor == "student" or reassign:
            await release_slot(session, slot)
        else:
            await transition_slot(
                session,
                slot,
                expected=(SlotStatus.BOOKED.value,),
                status=SlotStatus.CANCELLED.value,
                notes=_with_reason(slot.notes, reason),
            )
        logger.info("Slot %s cancelled by %s %s (reason=%s, reassign=%s)", slot.id, actor, user.id, reason, reassign)

        by = {"student": "the student", "therapist": "your therapist", "admin": "an administrator"}[actor]
        suffix = f" Reason: {reason}" if reason else ""
        await emitter.emit(
            student_id,
            "Appointment Cancelled",
            f"Your appointment on {when} was cancelled by {by}.{suffix}",
            NotificationType.APPOINTMENT_CANCELLED,
            slot.id,
        )
        await emitter.emit(
            slot.therapist_id,
            "Appointment Cancelled",
            f"The appointment on {when} was cancelled by {'you' if actor == 'therapist' else by}.{suffix}",
            NotificationType.APPOINTMENT_CANCELLED,
            slot.id,
        )
        if slot.status == SlotStatus.AVAILABLE.value:
            await promote_waitlist(session, emitter, slot, released_by=student_id)
        else:
            await detach_waiters(session, emitter, slot)
        return slot

    if slot.status == SlotStatus.PENDING.value:
        await withdraw_offer(session, emitter, slot, keep_request_id=None)
    await transition_slot(
        session,
        slot,
        expected=OPEN_STATUSES,
        require_unassigned=True,
        status=SlotStatus.CANCELLED.value,
        notes=_with_reason(slot.notes, reason),
    )
    logger.info("Availability slot %s withdrawn by %s %s", slot.id, actor, user.id)
    await emitter.emit(
        slot.therapist_id,
        "Availability Cancelled",
        f"Your availability on {when} has been cancelled.",
        NotificationType.AVAILABILITY_CANCELLED,
        slot.id,
    )
    await detach_waiters(session, emitter, slot)
    return slot


async def complete_slot(
    session: AsyncSession,
    emitter: NotificationEmitter,
    slot_id: int,
    user: User,
    *,
    now: dt.datetime | None = None,
) -> Slot:
    slot = await get_slot(session, slot_id)
    _actor(slot, user)
    if slot.status != SlotStatus.BOOKED.value:
        raise ConflictError("Only booked appointments can be marked completed")
    now = now or dt.datetime.now()
    if slot.starts_at > now:
        raise InvalidRequestError("Cannot mark a future appointment as completed")
    await transition_slot(
        session,
        slot,
        expected=(SlotStatus.BOOKED.value,),
        status=SlotStatus.COMPLETED.value,
    )
    when = _describe(slot)
    await emitter.emit(
        slot.student_id,
        "Appointment Completed",
        f"Your appointment on {when} is complete. Please leave feedback for your therapist.",
        NotificationType.APPOINTMENT_COMPLETED,
        slot.id,
    )
    await emitter.emit(
        slot.therapist_id,
        "Appointment Completed",
        f"The appointment on {when} has been marked completed.",
        NotificationType.APPOINTMENT_COMPLETED,
        slot.id,
    )
    return slot


async def reopen_slot(session: AsyncSession, emitter: NotificationEmitter, slot: Slot) -> Slot:
    if slot.status != SlotStatus.CANCELLED.value:
        raise InvalidRequestError("Only cancelled slots can be reopened")
    overlap = await find_overlapping_slot(
        session, slot.therapist_id, slot.date, slot.start_time, slot.end_time, exclude_id=slot.id
    )
    if overlap:
        raise ConflictError(f"Reopening would overlap slot {overlap.id}")
    await transition_slot(
        session,
        slot,
        expected=(SlotStatus.CANCELLED.value,),
        status=SlotStatus.AVAILABLE.value,
        student_id=None,
    )
    await promote_waitlist(session, emitter, slot)
    return slot


async def update_slot_status(
    session: AsyncSession,
    emitter: NotificationEmitter,
    slot_id: int,
    user: User,
    status: SlotStatus,
    *,
    notes: str | None = None,
) -> Slot:
    slot = await get_slot(session, slot_id)
    if not user.is_admin and slot.therapist_id != user.id:
        raise PermissionDeniedError("Only the slot's therapist or an admin can change its status")
    if notes is not None:
        slot.notes = notes
        session.add(slot)

    if status == SlotStatus.CANCELLED:
        return await cancel_slot(session, emitter, slot_id, user, reassign=False)
    if status == SlotStatus.COMPLETED:
        return await complete_slot(session, emitter, slot_id, user)
    if status == SlotStatus.AVAILABLE:
        return await reopen_slot(session, emitter, slot)
    raise InvalidRequestError(
        f"Status '{status.value}' is set through the booking workflow, not directly"
    )


def _virtual_waitlist_slot(request: StudentRequest, slot: Slot | None) -> SlotPublic | None:
    if slot is not None:
        date, start, end, therapist_id = slot.date, slot.start_time, slot.end_time, slot.therapist_id
    elif request.requested_date is not None and request.requested_time is not None:
        date, start = request.requested_date, request.requested_time
        end, therapist_id = default_end_time(start), request.preferred_therapist_id
    else:
        return None
    return SlotPublic(
        id=None,
        date=date,
        day=weekday_code(date),
        start_time=start,
        end_time=end,
        therapist_id=therapist_id,
        student_id=request.student_id,
        status=SlotStatus.WAITLISTED.value,
        notes=request.notes,
        request_id=request.id,
        created_at=request.created_at,
        updated_at=request.updated_at,
    )


async def list_visible_slots(
    session: AsyncSession,
    user: User,
    *,
    therapist_id: int | None = None,
    student_id: int | None = None,
    status: str | None = None,
    start_date: dt.date | None = None,
    end_date: dt.date | None = None,
) -> list[SlotPublic]:
    """Role-filtered slot listing; students also get their open waitlist entries."""
    if user.is_admin:
        slots = await list_slots(
            session,
            therapist_id=therapist_id,
            student_id=student_id,
            status=status,
            start_date=start_date,
            end_date=end_date,
        )
        return [slot_to_public(s) for s in slots]
    if user.is_therapist:
        slots = await list_slots(
            session, therapist_id=user.id, status=status, start_date=start_date, end_date=end_date
        )
        return [slot_to_public(s) for s in slots]

    slots = await list_slots(session, student_id=user.id, status=status, start_date=start_date, end_date=end_date)
    visible = [slot_to_public(s) for s in slots]
    if status and status != SlotStatus.WAITLISTED.value:
        return visible
    result = await session.execute(
        select(StudentRequest, Slot)
        .outerjoin(Slot, StudentRequest.slot_id == Slot.id)
        .where(
            StudentRequest.student_id == user.id,
            StudentRequest.match_status == MatchStatus.WAITLISTED.value,
        )
        .order_by(StudentRequest.created_at, StudentRequest.id)
    )
    for request, slot in result.all():
        virtual = _virtual_waitlist_slot(request, slot)
        if virtual is None:
            continue
        if start_date and virtual.date < start_date:
            continue
        if end_date and virtual.date > end_date:
            continue
        visible.append(virtual)
    visible.sort(key=lambda s: (s.date, s.start_time))
    return visible


async def is_waiting_on(session: AsyncSession, slot: Slot, user_id: int) -> bool:
    return any(r.student_id == user_id for r in await find_waitlist_candidates(session, slot))


async def get_visible_slot(session: AsyncSession, slot_id: int, user: User) -> Slot:
    slot = await get_slot(session, slot_id)
    if user.is_admin or user.id in (slot.therapist_id, slot.student_id):
        return slot
    if user.is_student and await is_waiting_on(session, slot, user.id):
        return slot
    raise PermissionDeniedError("Not authorized to view this slot")


async def get_slot_waitlist(session: AsyncSession, slot_id: int, user: User) -> list[StudentRequest]:
    slot = await get_slot(session, slot_id)
    if not user.is_admin and slot.therapist_id != user.id:
        raise PermissionDeniedError("Not authorized to view this waitlist")
    return await find_waitlist_candidates(session, slot)
