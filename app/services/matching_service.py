"""Resolve student appointment requests against therapist availability.

A request ends up in one of the MatchStatus outcomes:

* ``matched``: an open slot was booked for the student;
* ``alternate_offered``: the preferred therapist had no exact fit, so their
  nearest slot satisfying the preferences is held (``pending``) for the
  student to accept or decline;
* ``waitlisted``: the wanted slot is booked by someone else, or no therapist
  has opened the specific time yet;
* ``pending``: nothing fits yet; an admin batch re-runs matching later;
* ``no_match``: an explicit re-query found nothing viable.
"""
import datetime as dt
import logging
from dataclasses import dataclass

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ConflictError, InvalidRequestError, NotFoundError, PermissionDeniedError
from app.models.notification import NotificationType
from app.models.slot import WEEKDAYS, Slot, SlotStatus
from app.models.student_request import MatchStatus, StudentRequest, StudentRequestPublic
from app.models.user import User, UserRole, _utc_naive_now
from app.services.auth_service import get_user_with_role
from app.services.notification_service import NotificationEmitter
from app.services.slot_service import (
    book_slot,
    create_slot,
    find_open_slots,
    find_slots_at,
    get_slot,
    hold_slot,
    parse_time,
    release_slot,
)
from app.services.waitlist_service import find_waitlist_candidates, promote_waitlist

logger = logging.getLogger(__name__)

ALTERNATIVE_OPTIONS = ("auto", "other")


@dataclass
class MatchOutcome:
    status: str
    message: str
    request: StudentRequest | None = None
    slot: Slot | None = None
    waitlist_position: int | None = None


def normalize_days(days: list[str]) -> list[str]:
    """Map "monday"/"Mon"/"MON" to weekday codes, keeping order and dropping repeats."""
    codes: list[str] = []
    for day in days:
        code = day.strip()[:3].upper()
        if code not in WEEKDAYS:
            raise InvalidRequestError(f"Unknown weekday '{day}'")
        if code not in codes:
            codes.append(code)
    return codes


def next_occurrence(day_code: str, today: dt.date) -> dt.date:
    days_ahead = (WEEKDAYS.index(day_code) - today.weekday()) % 7
    return today + dt.timedelta(days=days_ahead)


def candidate_starts(days: list[str], times: list[str], today: dt.date) -> list[tuple[dt.date, dt.time]]:
    """(date, start_time) pairs for the next occurrence of each preferred day, soonest first."""
    parsed_times = [parse_time(t) for t in times]
    pairs = {(next_occurrence(day, today), t) for day in days for t in parsed_times}
    return sorted(pairs)


def _describe(slot: Slot) -> str:
    return f"{slot.date:%A %d %b %Y} at {slot.start_time:%H:%M}"


def _touch(request: StudentRequest, status: MatchStatus, slot_id: int | None) -> None:
    request.match_status = status.value
    request.slot_id = slot_id
    request.updated_at = _utc_naive_now()


async def withdraw_offer(
    session: AsyncSession, emitter: NotificationEmitter, slot: Slot, keep_request_id: int | None
) -> None:
    """Another booking took a held slot: return the offered request to pending."""
    result = await session.execute(
        select(StudentRequest).where(
            StudentRequest.slot_id == slot.id,
            StudentRequest.match_status == MatchStatus.ALTERNATE_OFFERED.value,
        )
    )
    for offered in result.scalars().all():
        if offered.id == keep_request_id:
            continue
        _touch(offered, MatchStatus.PENDING, None)
        session.add(offered)
        await emitter.emit(
            offered.student_id,
            "Offered Slot No Longer Available",
            f"The alternate slot on {_describe(slot)} offered to you has been taken. "
            "Your request is pending again.",
            NotificationType.SLOT_UNAVAILABLE,
            offered.id,
        )


async def _book(
    session: AsyncSession,
    emitter: NotificationEmitter,
    request: StudentRequest,
    slot: Slot,
) -> MatchOutcome:
    if slot.status == SlotStatus.PENDING.value:
        await withdraw_offer(session, emitter, slot, keep_request_id=request.id)
    await book_slot(session, slot, request.student_id)
    _touch(request, MatchStatus.MATCHED, slot.id)
    session.add(request)
    await session.flush()

    when = _describe(slot)
    await emitter.emit(
        request.student_id,
        "Appointment Confirmed",
        f"Your appointment on {when} has been booked.",
        NotificationType.APPOINTMENT_ASSIGNED,
        slot.id,
    )
    await emitter.emit(
        slot.therapist_id,
        "New Appointment Assigned",
        f"A student has been booked into your slot on {when}.",
        NotificationType.APPOINTMENT_ASSIGNED,
        slot.id,
    )
    return MatchOutcome(MatchStatus.MATCHED.value, f"Appointment booked for {when}.", request, slot)


async def _waitlist(
    session: AsyncSession,
    emitter: NotificationEmitter,
    request: StudentRequest,
    slot: Slot | None,
) -> MatchOutcome:
    _touch(request, MatchStatus.WAITLISTED, slot.id if slot else None)
    session.add(request)
    await session.flush()

    position = None
    if slot is not None:
        queue = await find_waitlist_candidates(session, slot)
        position = next((i for i, r in enumerate(queue, start=1) if r.id == request.id), None)
        message = f"The slot on {_describe(slot)} is booked; you are #{position} on its waitlist."
    else:
        message = (
            f"No slot is open on {request.requested_date:%d %b %Y} at {request.requested_time:%H:%M} yet; "
            "you will be booked when a therapist makes it available."
        )
    await emitter.emit(
        request.student_id,
        "Added to Waitlist",
        message,
        NotificationType.WAITLIST_ADDED,
        request.id,
    )
    logger.info("Request %s waitlisted (slot %s, position %s)", request.id, request.slot_id, position)
    return MatchOutcome(MatchStatus.WAITLISTED.value, message, request, slot, position)


async def _ensure_not_waiting_already(
    session: AsyncSession, request: StudentRequest, slot: Slot | None
) -> None:
    """One open waitlist entry per student and date/start time, attached to a slot or not."""
    date = slot.date if slot is not None else request.requested_date
    start = slot.start_time if slot is not None else request.requested_time
    same_time = and_(StudentRequest.requested_date == date, StudentRequest.requested_time == start)
    q = select(StudentRequest.id).where(
        StudentRequest.student_id == request.student_id,
        StudentRequest.match_status == MatchStatus.WAITLISTED.value,
        StudentRequest.id != request.id,
    )
    if slot is not None:
        q = q.where(or_(StudentRequest.slot_id == slot.id, same_time))
    else:
        q = q.where(same_time)
    result = await session.execute(q)
    if result.first() is not None:
        raise ConflictError("You are already on the waitlist for this time")


async def _match_specific(
    session: AsyncSession, emitter: NotificationEmitter, request: StudentRequest
) -> MatchOutcome:
    slots = await find_slots_at(
        session, request.requested_date, request.requested_time, request.preferred_therapist_id
    )
    for slot in slots:
        if slot.is_open:
            return await _book(session, emitter, request, slot)
    for slot in slots:
        if slot.status != SlotStatus.BOOKED.value:
            continue
        if slot.student_id == request.student_id:
            raise ConflictError("You have already booked this slot")
        await _ensure_not_waiting_already(session, request, slot)
        return await _waitlist(session, emitter, request, slot)
    await _ensure_not_waiting_already(session, request, None)
    return await _waitlist(session, emitter, request, None)


async def _match_preferences(
    session: AsyncSession,
    emitter: NotificationEmitter,
    request: StudentRequest,
    today: dt.date,
) -> MatchOutcome:
    days = request.preferred_days
    starts = candidate_starts(days, request.preferred_times, today)
    therapist_id = request.preferred_therapist_id

    booked_by_others: list[Slot] = []
    for date, start_time in starts:
        for slot in await find_slots_at(session, date, start_time, therapist_id):
            if slot.is_open:
                return await _book(session, emitter, request, slot)
            if slot.status == SlotStatus.BOOKED.value and slot.student_id != request.student_id:
                booked_by_others.append(slot)

    if therapist_id is not None:
        wanted_times = {parse_time(t) for t in request.preferred_times}
        for slot in await find_open_slots(session, today, therapist_id):
            if slot.day in days or slot.start_time in wanted_times:
                await hold_slot(session, slot)
                _touch(request, MatchStatus.ALTERNATE_OFFERED, slot.id)
                session.add(request)
                await session.flush()
                message = (
                    f"Your preferred times are taken; an alternate slot on {_describe(slot)} "
                    "is held for you. Accept or decline the offer."
                )
                await emitter.emit(
                    request.student_id,
                    "Alternate Slot Offered",
                    message,
                    NotificationType.ALTERNATE_OFFERED,
                    request.id,
                )
                logger.info("Request %s offered alternate slot %s", request.id, slot.id)
                return MatchOutcome(MatchStatus.ALTERNATE_OFFERED.value, message, request, slot)

        if booked_by_others:
            slot = booked_by_others[0]
            await _ensure_not_waiting_already(session, request, slot)
            return await _waitlist(session, emitter, request, slot)

    return MatchOutcome(
        MatchStatus.PENDING.value,
        "No matching slot is open yet; your request has been recorded as pending.",
        request,
    )


async def _run_matching(
    session: AsyncSession,
    emitter: NotificationEmitter,
    request: StudentRequest,
    today: dt.date,
) -> MatchOutcome:
    if request.requested_date is not None and request.requested_time is not None:
        return await _match_specific(session, emitter, request)
    return await _match_preferences(session, emitter, request, today)


async def request_appointment(
    session: AsyncSession,
    emitter: NotificationEmitter,
    student_id: int,
    *,
    preferred_days: list[str] | None = None,
    preferred_times: list[str] | None = None,
    specific_date: dt.date | None = None,
    specific_time: str | dt.time | None = None,
    preferred_therapist_id: int | None = None,
    notes: str | None = None,
    today: dt.date | None = None,
) -> MatchOutcome:
    today = today or dt.date.today()
    preferred_days = normalize_days(preferred_days or [])
    preferred_times = [parse_time(t).strftime("%H:%M") for t in (preferred_times or [])]

    if (specific_date is None) != (specific_time is None):
        raise InvalidRequestError("Both specific_date and specific_time are required together")
    if specific_date is None and (not preferred_days or not preferred_times):
        raise InvalidRequestError(
            "Provide preferred_days and preferred_times, or a specific_date and specific_time"
        )
    if specific_date is not None and specific_date < today:
        raise InvalidRequestError("Cannot request an appointment in the past")
    if preferred_therapist_id is not None:
        await get_user_with_role(session, preferred_therapist_id, UserRole.THERAPIST)

    request = StudentRequest(
        student_id=student_id,
        preferred_days=preferred_days,
        preferred_times=preferred_times,
        preferred_therapist_id=preferred_therapist_id,
        requested_date=specific_date,
        requested_time=parse_time(specific_time) if specific_time is not None else None,
        notes=notes,
    )
    session.add(request)
    await session.flush()
    await session.refresh(request)

    outcome = await _run_matching(session, emitter, request, today)
    logger.info("Request %s from student %s -> %s", request.id, student_id, outcome.status)
    return outcome


async def get_request(session: AsyncSession, request_id: int) -> StudentRequest:
    request = await session.get(StudentRequest, request_id)
    if request is None:
        raise NotFoundError("Student request not found")
    return request


def _check_owner(request: StudentRequest, user: User) -> None:
    if not user.is_admin and request.student_id != user.id:
        raise PermissionDeniedError("Not authorized to act on this request")


async def accept_alternate(
    session: AsyncSession, emitter: NotificationEmitter, request_id: int, user: User
) -> MatchOutcome:
    request = await get_request(session, request_id)
    _check_owner(request, user)
    if request.match_status != MatchStatus.ALTERNATE_OFFERED.value or request.slot_id is None:
        raise ConflictError("This request has no outstanding alternate offer")
    slot = await get_slot(session, request.slot_id)
    return await _book(session, emitter, request, slot)


async def decline_alternate(
    session: AsyncSession, emitter: NotificationEmitter, request_id: int, user: User
) -> MatchOutcome:
    request = await get_request(session, request_id)
    _check_owner(request, user)
    if request.match_status != MatchStatus.ALTERNATE_OFFERED.value or request.slot_id is None:
        raise ConflictError("This request has no outstanding alternate offer")
    slot = await get_slot(session, request.slot_id)
    _touch(request, MatchStatus.PENDING, None)
    session.add(request)
    if slot.status == SlotStatus.PENDING.value:
        await release_slot(session, slot)
        await promote_waitlist(session, emitter, slot)
    await session.flush()
    await emitter.emit(
        request.student_id,
        "Offer Declined",
        "You declined the alternate slot. Your request stays pending.",
        NotificationType.SYSTEM,
        request.id,
    )
    return MatchOutcome(MatchStatus.PENDING.value, "Alternate offer declined.", request)


async def request_alternative(
    session: AsyncSession,
    emitter: NotificationEmitter,
    student_id: int,
    option: str,
    *,
    request_id: int | None = None,
    preferred_therapist_id: int | None = None,
    today: dt.date | None = None,
) -> MatchOutcome:
    """Follow-up after a failed request: ``auto`` books the earliest open slot."""
    today = today or dt.date.today()
    if option not in ALTERNATIVE_OPTIONS:
        raise InvalidRequestError(f"Unknown option '{option}', expected one of {', '.join(ALTERNATIVE_OPTIONS)}")

    request = None
    if request_id is not None:
        request = await get_request(session, request_id)
        if request.student_id != student_id:
            raise PermissionDeniedError("Not authorized to act on this request")
        if request.match_status == MatchStatus.MATCHED.value:
            raise ConflictError("This request is already matched")

    if option == "other":
        return MatchOutcome(
            MatchStatus.PENDING.value,
            "Please submit a new request with your other availability.",
            request,
        )

    therapist_id = preferred_therapist_id or (request.preferred_therapist_id if request else None)
    open_slots = await find_open_slots(session, today, therapist_id)
    if not open_slots and therapist_id is not None:
        open_slots = await find_open_slots(session, today)
    if not open_slots:
        if request is not None:
            _touch(request, MatchStatus.NO_MATCH, None)
            session.add(request)
            await session.flush()
            await emitter.emit(
                student_id,
                "No Slots Available",
                "No open slots were found for your request.",
                NotificationType.SLOT_UNAVAILABLE,
                request.id,
            )
        return MatchOutcome(MatchStatus.NO_MATCH.value, "No open slots are available right now.", request)

    slot = open_slots[0]
    if request is None:
        request = StudentRequest(
            student_id=student_id,
            preferred_therapist_id=therapist_id,
            requested_date=slot.date,
            requested_time=slot.start_time,
        )
        session.add(request)
        await session.flush()
        await session.refresh(request)
    elif request.match_status == MatchStatus.ALTERNATE_OFFERED.value and request.slot_id not in (None, slot.id):
        held = await get_slot(session, request.slot_id)
        if held.status == SlotStatus.PENDING.value:
            await release_slot(session, held)
    return await _book(session, emitter, request, slot)


async def rematch_request(
    session: AsyncSession,
    emitter: NotificationEmitter,
    request: StudentRequest,
    today: dt.date | None = None,
) -> MatchOutcome:
    """Re-query a pending request; finding nothing viable closes it as no_match."""
    outcome = await _run_matching(session, emitter, request, today or dt.date.today())
    if outcome.status == MatchStatus.PENDING.value:
        _touch(request, MatchStatus.NO_MATCH, None)
        session.add(request)
        await session.flush()
        await emitter.emit(
            request.student_id,
            "No Match Found",
            "We could not find a slot matching your preferences. Please submit new availability.",
            NotificationType.SLOT_UNAVAILABLE,
            request.id,
        )
        outcome = MatchOutcome(MatchStatus.NO_MATCH.value, "No viable slot found.", request)
    return outcome


async def process_pending_requests(
    session: AsyncSession, emitter: NotificationEmitter, today: dt.date | None = None
) -> dict[str, int]:
    result = await session.execute(
        select(StudentRequest)
        .where(StudentRequest.match_status == MatchStatus.PENDING.value)
        .order_by(StudentRequest.created_at, StudentRequest.id)
    )
    counts: dict[str, int] = {}
    for request in result.scalars().all():
        outcome = await rematch_request(session, emitter, request, today)
        counts[outcome.status] = counts.get(outcome.status, 0) + 1
    logger.info("Processed pending requests: %s", counts)
    return counts


async def admin_assign(
    session: AsyncSession,
    emitter: NotificationEmitter,
    student_id: int,
    *,
    slot_id: int | None = None,
    therapist_id: int | None = None,
    date: dt.date | None = None,
    start_time: str | dt.time | None = None,
    notes: str | None = None,
    today: dt.date | None = None,
) -> MatchOutcome:
    """Admin placement: an existing slot, a new slot for a therapist, or the waitlist."""
    await get_user_with_role(session, student_id, UserRole.STUDENT)

    if slot_id is not None:
        slot = await get_slot(session, slot_id)
        if not slot.is_open:
            raise ConflictError("Slot is not available for assignment")
        request = StudentRequest(
            student_id=student_id,
            preferred_therapist_id=slot.therapist_id,
            requested_date=slot.date,
            requested_time=slot.start_time,
            notes=notes,
        )
        session.add(request)
        await session.flush()
        return await _book(session, emitter, request, slot)

    if date is None or start_time is None:
        raise InvalidRequestError("Provide slot_id, or date and start_time")
    start = parse_time(start_time)

    if therapist_id is not None:
        await get_user_with_role(session, therapist_id, UserRole.THERAPIST)
        existing = [s for s in await find_slots_at(session, date, start, therapist_id) if s.is_open]
        slot = existing[0] if existing else await create_slot(session, therapist_id, date, start, notes=notes)
        request = StudentRequest(
            student_id=student_id,
            preferred_therapist_id=therapist_id,
            requested_date=date,
            requested_time=start,
            notes=notes,
        )
        session.add(request)
        await session.flush()
        return await _book(session, emitter, request, slot)

    return await request_appointment(
        session,
        emitter,
        student_id,
        specific_date=date,
        specific_time=start,
        notes=notes,
        today=today,
    )


async def list_requests(
    session: AsyncSession,
    *,
    student_id: int | None = None,
    slot_id: int | None = None,
    preferred_therapist_id: int | None = None,
    match_status: str | None = None,
) -> list[StudentRequest]:
    q = select(StudentRequest)
    if student_id is not None:
        q = q.where(StudentRequest.student_id == student_id)
    if slot_id is not None:
        q = q.where(StudentRequest.slot_id == slot_id)
    if preferred_therapist_id is not None:
        q = q.where(StudentRequest.preferred_therapist_id == preferred_therapist_id)
    if match_status:
        q = q.where(StudentRequest.match_status == match_status)
    result = await session.execute(q.order_by(StudentRequest.created_at.desc(), StudentRequest.id.desc()))
    return list(result.scalars().all())


async def drop_request(
    session: AsyncSession, emitter: NotificationEmitter, request_id: int, user: User
) -> None:
    """Student withdraws a request (e.g. leaves a waitlist); a held slot is released."""
    request = await get_request(session, request_id)
    _check_owner(request, user)
    if request.match_status == MatchStatus.MATCHED.value:
        raise ConflictError("Matched requests are cancelled through their slot")
    if request.match_status == MatchStatus.ALTERNATE_OFFERED.value and request.slot_id is not None:
        slot = await get_slot(session, request.slot_id)
        if slot.status == SlotStatus.PENDING.value:
            await release_slot(session, slot)
            await promote_waitlist(session, emitter, slot)
    await session.delete(request)
    await session.flush()
    logger.info("Request %s dropped by user %s", request_id, user.id)


def request_to_public(r: StudentRequest) -> StudentRequestPublic:
    return StudentRequestPublic(
        id=r.id,
        student_id=r.student_id,
        preferred_days=list(r.preferred_days or []),
        preferred_times=list(r.preferred_times or []),
        preferred_therapist_id=r.preferred_therapist_id,
        requested_date=r.requested_date,
        requested_time=r.requested_time,
        slot_id=r.slot_id,
        match_status=r.match_status,
        notes=r.notes,
        created_at=r.created_at,
    )
