import datetime as dt
import logging
from collections.abc import Iterable
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import ConflictError, InvalidRequestError, NotFoundError, SlotConflictError
from app.models.slot import (
    CLOSED_STATUSES,
    OPEN_STATUSES,
    Slot,
    SlotPublic,
    SlotStatus,
    check_slot_state,
    weekday_code,
)
from app.models.user import _utc_naive_now

logger = logging.getLogger(__name__)


def parse_time(value: str | dt.time) -> dt.time:
    """Accept "HH:MM" / "HH:MM:SS" strings or time objects."""
    if isinstance(value, dt.time):
        return value.replace(microsecond=0, tzinfo=None)
    try:
        return dt.time.fromisoformat(value.strip())
    except ValueError as e:
        raise InvalidRequestError(f"Invalid time '{value}', expected HH:MM") from e


def add_minutes(value: dt.time, minutes: int) -> dt.time:
    moved = dt.datetime.combine(dt.date.min, value) + dt.timedelta(minutes=minutes)
    if moved.date() != dt.date.min:
        raise InvalidRequestError("Slot cannot run past midnight")
    return moved.time()


def default_end_time(start_time: dt.time) -> dt.time:
    return add_minutes(start_time, settings.slot_duration_minutes)


def slot_to_public(slot: Slot) -> SlotPublic:
    return SlotPublic(
        id=slot.id,
        date=slot.date,
        day=slot.day,
        start_time=slot.start_time,
        end_time=slot.end_time,
        therapist_id=slot.therapist_id,
        student_id=slot.student_id,
        status=slot.status,
        notes=slot.notes,
        is_recurring=slot.is_recurring,
        recurring_days=list(slot.recurring_days or []),
        created_at=slot.created_at,
        updated_at=slot.updated_at,
    )


async def get_slot(session: AsyncSession, slot_id: int) -> Slot:
    slot = await session.get(Slot, slot_id)
    if slot is None:
        raise NotFoundError("Slot not found")
    return slot


async def find_overlapping_slot(
    session: AsyncSession,
    therapist_id: int,
    date: dt.date,
    start_time: dt.time,
    end_time: dt.time,
    exclude_id: int | None = None,
) -> Slot | None:
    q = select(Slot).where(
        Slot.therapist_id == therapist_id,
        Slot.date == date,
        Slot.status != SlotStatus.CANCELLED.value,
        Slot.start_time < end_time,
        Slot.end_time > start_time,
    )
    if exclude_id is not None:
        q = q.where(Slot.id != exclude_id)
    result = await session.execute(q.limit(1))
    return result.scalars().first()


async def find_slots_at(
    session: AsyncSession,
    date: dt.date,
    start_time: dt.time,
    therapist_id: int | None = None,
) -> list[Slot]:
    """Non-closed slots starting at date/start_time, open ones first."""
    q = select(Slot).where(
        Slot.date == date,
        Slot.start_time == start_time,
        Slot.status.not_in(CLOSED_STATUSES),
    )
    if therapist_id is not None:
        q = q.where(Slot.therapist_id == therapist_id)
    result = await session.execute(q.order_by(Slot.id))
    slots = list(result.scalars().all())
    return sorted(slots, key=lambda s: (not s.is_open, s.status != SlotStatus.AVAILABLE.value))


async def find_open_slots(
    session: AsyncSession,
    from_date: dt.date,
    therapist_id: int | None = None,
    statuses: Iterable[str] = (SlotStatus.AVAILABLE.value,),
) -> list[Slot]:
    q = select(Slot).where(
        Slot.date >= from_date,
        Slot.status.in_(list(statuses)),
        Slot.student_id.is_(None),
        Slot.therapist_id.is_not(None),
    )
    if therapist_id is not None:
        q = q.where(Slot.therapist_id == therapist_id)
    result = await session.execute(q.order_by(Slot.date, Slot.start_time, Slot.id))
    return list(result.scalars().all())


async def create_slot(
    session: AsyncSession,
    therapist_id: int,
    date: dt.date,
    start_time: dt.time,
    end_time: dt.time | None = None,
    *,
    notes: str | None = None,
    is_recurring: bool = False,
    recurring_days: list[str] | None = None,
    status: SlotStatus = SlotStatus.AVAILABLE,
    student_id: int | None = None,
) -> Slot:
    end_time = end_time or default_end_time(start_time)
    if end_time <= start_time:
        raise InvalidRequestError("End time must be after start time")
    overlap = await find_overlapping_slot(session, therapist_id, date, start_time, end_time)
    if overlap:
        raise ConflictError(
            f"Overlaps existing slot {overlap.id} ({overlap.start_time:%H:%M}-{overlap.end_time:%H:%M} on {overlap.date})"
        )
    slot = Slot(
        date=date,
        day=weekday_code(date),
        start_time=start_time,
        end_time=end_time,
        therapist_id=therapist_id,
        student_id=student_id,
        status=status.value,
        notes=notes,
        is_recurring=is_recurring,
        recurring_days=list(recurring_days or []),
    )
    slot.check_invariants()
    session.add(slot)
    await session.flush()
    await session.refresh(slot)
    logger.info(
        "Created slot %s for therapist %s on %s %s (%s)",
        slot.id, therapist_id, date, start_time, slot.status,
    )
    return slot


async def transition_slot(
    session: AsyncSession,
    slot: Slot,
    *,
    expected: Iterable[str],
    require_unassigned: bool = False,
    **values: Any,
) -> Slot:
    """Conditionally update a slot against the version and status we read.

    Raises SlotConflictError when another request changed the slot first; the
    surrounding transaction is then rolled back by the session dependency.
    """
    merged = {
        "status": slot.status,
        "therapist_id": slot.therapist_id,
        "student_id": slot.student_id,
    }
    merged.update({k: v for k, v in values.items() if k in merged})
    check_slot_state(merged["status"], merged["therapist_id"], merged["student_id"])

    await session.flush()
    conditions = [
        Slot.id == slot.id,
        Slot.version == slot.version,
        Slot.status.in_(list(expected)),
    ]
    if require_unassigned:
        conditions.append(Slot.student_id.is_(None))
    result = await session.execute(
        update(Slot)
        .where(*conditions)
        .values(**values, version=Slot.version + 1, updated_at=_utc_naive_now())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.warning("Conditional update of slot %s lost (expected %s)", slot.id, list(expected))
        raise SlotConflictError(slot.id)
    await session.refresh(slot)
    return slot


async def book_slot(session: AsyncSession, slot: Slot, student_id: int) -> Slot:
    if not slot.is_open:
        raise ConflictError("Slot is no longer available")
    await transition_slot(
        session,
        slot,
        expected=OPEN_STATUSES,
        require_unassigned=True,
        status=SlotStatus.BOOKED.value,
        student_id=student_id,
    )
    logger.info("Slot %s booked for student %s", slot.id, student_id)
    return slot


async def hold_slot(session: AsyncSession, slot: Slot) -> Slot:
    """Hold an available slot as pending while an alternate offer is outstanding."""
    return await transition_slot(
        session,
        slot,
        expected=(SlotStatus.AVAILABLE.value,),
        require_unassigned=True,
        status=SlotStatus.PENDING.value,
    )


async def release_slot(session: AsyncSession, slot: Slot) -> Slot:
    """Return a booked or held slot to available."""
    return await transition_slot(
        session,
        slot,
        expected=(SlotStatus.BOOKED.value, SlotStatus.PENDING.value, SlotStatus.AVAILABLE.value),
        status=SlotStatus.AVAILABLE.value,
        student_id=None,
    )


async def list_slots(
    session: AsyncSession,
    *,
    therapist_id: int | None = None,
    student_id: int | None = None,
    status: str | None = None,
    start_date: dt.date | None = None,
    end_date: dt.date | None = None,
) -> list[Slot]:
    q = select(Slot)
    if therapist_id is not None:
        q = q.where(Slot.therapist_id == therapist_id)
    if student_id is not None:
        q = q.where(Slot.student_id == student_id)
    if status:
        q = q.where(Slot.status == status)
    if start_date:
        q = q.where(Slot.date >= start_date)
    if end_date:
        q = q.where(Slot.date <= end_date)
    result = await session.execute(q.order_by(Slot.date, Slot.start_time, Slot.id))
    return list(result.scalars().all())


async def weekly_schedule(session: AsyncSession, start_date: dt.date) -> dict[int, list[Slot]]:
    """Seven days of slots from start_date grouped by therapist id."""
    slots = await list_slots(
        session,
        start_date=start_date,
        end_date=start_date + dt.timedelta(days=6),
    )
    schedule: dict[int, list[Slot]] = {}
    for slot in slots:
        if slot.therapist_id is None or slot.status == SlotStatus.CANCELLED.value:
            continue
        schedule.setdefault(slot.therapist_id, []).append(slot)
    return schedule
