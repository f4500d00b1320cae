import datetime as dt
import logging

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.notification import NotificationType
from app.models.slot import Slot, SlotStatus
from app.models.student_request import MatchStatus, StudentRequest
from app.models.user import _utc_naive_now
from app.services.notification_service import NotificationEmitter
from app.services.slot_service import book_slot, release_slot

logger = logging.getLogger(__name__)


def _describe(slot: Slot) -> str:
    return f"{slot.date:%A %d %b %Y} at {slot.start_time:%H:%M}"


async def find_waitlist_candidates(session: AsyncSession, slot: Slot) -> list[StudentRequest]:
    """Open waitlist entries for a slot, earliest first.

    Includes entries attached to the slot and entries still waiting for a
    therapist to open the same date/start time (for this therapist or any).
    """
    q = (
        select(StudentRequest)
        .where(
            StudentRequest.match_status == MatchStatus.WAITLISTED.value,
            or_(
                StudentRequest.slot_id == slot.id,
                and_(
                    StudentRequest.slot_id.is_(None),
                    StudentRequest.requested_date == slot.date,
                    StudentRequest.requested_time == slot.start_time,
                    or_(
                        StudentRequest.preferred_therapist_id.is_(None),
                        StudentRequest.preferred_therapist_id == slot.therapist_id,
                    ),
                ),
            ),
        )
        .order_by(StudentRequest.created_at, StudentRequest.id)
    )
    result = await session.execute(q)
    return list(result.scalars().all())


async def promote_waitlist(
    session: AsyncSession,
    emitter: NotificationEmitter,
    slot: Slot,
    released_by: int | None = None,
) -> StudentRequest | None:
    """Book the earliest waiting student into a freed slot.

    Remaining waiters stay waitlisted, re-attached to this slot. Leftover
    entries of the winner, or of ``released_by`` (the student who just gave
    the slot up), are closed as cancelled instead.
    """
    if slot.status != SlotStatus.AVAILABLE.value or slot.student_id is not None:
        return None
    candidates = await find_waitlist_candidates(session, slot)
    if not candidates:
        return None

    now = _utc_naive_now()
    eligible = [c for c in candidates if c.student_id != released_by]
    winner = eligible[0] if eligible else None
    skip = {released_by, winner.student_id if winner else None}
    others = [c for c in eligible[1:] if c.student_id not in skip]
    stale = [c for c in candidates if c is not winner and c.student_id in skip]
    for entry in stale:
        entry.match_status = MatchStatus.CANCELLED.value
        entry.updated_at = now
        session.add(entry)
    if stale:
        logger.info("Closed %d leftover waitlist entries on slot %s", len(stale), slot.id)
    if winner is None:
        await session.flush()
        return None

    await book_slot(session, slot, winner.student_id)
    winner.match_status = MatchStatus.MATCHED.value
    winner.slot_id = slot.id
    winner.updated_at = now
    session.add(winner)
    for entry in others:
        entry.slot_id = slot.id
        entry.updated_at = now
        session.add(entry)
    await session.flush()
    logger.info(
        "Promoted request %s (student %s) into slot %s; %d still waiting",
        winner.id, winner.student_id, slot.id, len(others),
    )

    when = _describe(slot)
    await emitter.emit(
        winner.student_id,
        "Waitlist Slot Available",
        f"A slot you were waiting for on {when} is now booked for you.",
        NotificationType.WAITLIST_MATCHED,
        slot.id,
    )
    await emitter.emit(
        slot.therapist_id,
        "New Appointment Assigned",
        f"A student from the waitlist has been assigned to your slot on {when}.",
        NotificationType.APPOINTMENT_ASSIGNED,
        slot.id,
    )
    for entry in others:
        await emitter.emit(
            entry.student_id,
            "Still On Waitlist",
            f"The slot on {when} went to a student ahead of you on the waitlist. "
            "You remain on the waitlist.",
            NotificationType.SLOT_UNAVAILABLE,
            entry.id,
        )
    return winner


async def detach_waiters(
    session: AsyncSession, emitter: NotificationEmitter, slot: Slot
) -> int:
    """Unhook waiters from a slot that is going away; they keep waiting on its date/time."""
    result = await session.execute(
        select(StudentRequest).where(
            StudentRequest.slot_id == slot.id,
            StudentRequest.match_status == MatchStatus.WAITLISTED.value,
        )
    )
    entries = list(result.scalars().all())
    now = _utc_naive_now()
    for entry in entries:
        entry.slot_id = None
        entry.requested_date = entry.requested_date or slot.date
        entry.requested_time = entry.requested_time or slot.start_time
        entry.updated_at = now
        session.add(entry)
        await emitter.emit(
            entry.student_id,
            "Slot Unavailable",
            f"The slot on {_describe(slot)} you were waiting for was cancelled. "
            "You remain on the waitlist for that time.",
            NotificationType.SLOT_UNAVAILABLE,
            entry.id,
        )
    await session.flush()
    return len(entries)


async def expire_stale_requests(
    session: AsyncSession, emitter: NotificationEmitter, today: dt.date | None = None
) -> int:
    """Close waitlist entries and alternate offers whose date has passed."""
    today = today or dt.date.today()
    result = await session.execute(
        select(StudentRequest, Slot)
        .outerjoin(Slot, StudentRequest.slot_id == Slot.id)
        .where(
            StudentRequest.match_status.in_(
                [MatchStatus.WAITLISTED.value, MatchStatus.ALTERNATE_OFFERED.value]
            )
        )
        .order_by(StudentRequest.id)
    )
    expired = 0
    for request, slot in result.all():
        when = slot.date if slot is not None else request.requested_date
        if when is None or when >= today:
            continue
        was_offer = request.match_status == MatchStatus.ALTERNATE_OFFERED.value
        if was_offer and slot is not None and slot.status == SlotStatus.PENDING.value:
            await release_slot(session, slot)
        request.match_status = MatchStatus.NO_MATCH.value
        request.updated_at = _utc_naive_now()
        session.add(request)
        await emitter.emit(
            request.student_id,
            "Request Expired",
            f"Your request for {when:%d %b %Y} expired without a match. Please submit a new request.",
            NotificationType.SLOT_UNAVAILABLE,
            request.id,
        )
        expired += 1
    await session.flush()
    if expired:
        logger.info("Expired %d stale waitlist entries / offers", expired)
    return expired
