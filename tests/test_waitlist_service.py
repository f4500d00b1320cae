"""
Unit tests for waitlist promotion, cancellation and housekeeping.
"""

import datetime as dt

import pytest
from sqlalchemy import select

from app.core.errors import ConflictError, InvalidRequestError, PermissionDeniedError
from app.models.notification import Notification, NotificationType
from app.models.slot import SlotStatus
from app.models.student_request import MatchStatus, StudentRequest
from app.services.appointment_service import cancel_slot, complete_slot, update_slot_status
from app.services.slot_service import book_slot, create_slot
from app.services.waitlist_service import expire_stale_requests, find_waitlist_candidates, promote_waitlist

WEDNESDAY = dt.date(2024, 1, 10)
NINE = dt.time(9, 0)


async def _wait_on(session, slot, student, created_at=None):
    entry = StudentRequest(
        student_id=student.id,
        requested_date=slot.date,
        requested_time=slot.start_time,
        slot_id=slot.id,
        match_status=MatchStatus.WAITLISTED.value,
    )
    if created_at is not None:
        entry.created_at = created_at
    session.add(entry)
    await session.flush()
    return entry


async def _types(session, user_id):
    result = await session.execute(
        select(Notification.type).where(Notification.user_id == user_id).order_by(Notification.id)
    )
    return list(result.scalars().all())


@pytest.fixture
async def booked_slot(session, therapist, student):
    slot = await create_slot(session, therapist.id, WEDNESDAY, NINE)
    await book_slot(session, slot, student.id)
    return slot


class TestPromotion:
    @pytest.mark.asyncio
    async def test_cancel_promotes_earliest_waiter(
        self, session, emitter, booked_slot, student, second_student, third_student
    ):
        first = await _wait_on(session, booked_slot, second_student)
        second = await _wait_on(session, booked_slot, third_student)

        await cancel_slot(session, emitter, booked_slot.id, student)

        assert booked_slot.status == SlotStatus.BOOKED.value
        assert booked_slot.student_id == second_student.id
        assert first.match_status == MatchStatus.MATCHED.value
        assert second.match_status == MatchStatus.WAITLISTED.value
        assert second.slot_id == booked_slot.id
        assert NotificationType.WAITLIST_MATCHED.value in await _types(session, second_student.id)
        assert NotificationType.SLOT_UNAVAILABLE.value in await _types(session, third_student.id)
        assert NotificationType.APPOINTMENT_CANCELLED.value in await _types(session, student.id)

    @pytest.mark.asyncio
    async def test_order_follows_created_at_not_id(
        self, session, emitter, booked_slot, student, second_student, third_student
    ):
        late = await _wait_on(session, booked_slot, second_student, created_at=dt.datetime(2024, 1, 2, 12))
        early = await _wait_on(session, booked_slot, third_student, created_at=dt.datetime(2024, 1, 1, 12))

        queue = await find_waitlist_candidates(session, booked_slot)
        assert [r.id for r in queue] == [early.id, late.id]

        await cancel_slot(session, emitter, booked_slot.id, student)

        assert booked_slot.student_id == third_student.id

    @pytest.mark.asyncio
    async def test_no_waiters_leaves_slot_available(self, session, emitter, booked_slot, student):
        await cancel_slot(session, emitter, booked_slot.id, student)

        assert booked_slot.status == SlotStatus.AVAILABLE.value
        assert booked_slot.student_id is None

    @pytest.mark.asyncio
    async def test_promote_ignores_booked_slot(self, session, emitter, booked_slot, second_student):
        await _wait_on(session, booked_slot, second_student)

        assert await promote_waitlist(session, emitter, booked_slot) is None


class TestCancellation:
    @pytest.mark.asyncio
    async def test_therapist_cancel_without_reassign_closes_slot(
        self, session, emitter, booked_slot, therapist, student, second_student
    ):
        waiter = await _wait_on(session, booked_slot, second_student)

        await cancel_slot(session, emitter, booked_slot.id, therapist, reason="Sick", reassign=False)

        assert booked_slot.status == SlotStatus.CANCELLED.value
        assert "Sick" in booked_slot.notes
        assert waiter.match_status == MatchStatus.WAITLISTED.value
        assert waiter.slot_id is None
        assert waiter.requested_date == WEDNESDAY

    @pytest.mark.asyncio
    async def test_stranger_cannot_cancel(self, session, emitter, booked_slot, second_student):
        with pytest.raises(PermissionDeniedError):
            await cancel_slot(session, emitter, booked_slot.id, second_student)

    @pytest.mark.asyncio
    async def test_cancelled_slot_cannot_be_cancelled_again(self, session, emitter, therapist):
        slot = await create_slot(session, therapist.id, WEDNESDAY, NINE)
        await cancel_slot(session, emitter, slot.id, therapist)

        assert slot.status == SlotStatus.CANCELLED.value
        assert await _types(session, therapist.id) == [NotificationType.AVAILABILITY_CANCELLED.value]
        with pytest.raises(ConflictError):
            await cancel_slot(session, emitter, slot.id, therapist)

    @pytest.mark.asyncio
    async def test_reopen_promotes_waiter(self, session, emitter, therapist, student):
        slot = await create_slot(session, therapist.id, WEDNESDAY, NINE)
        await cancel_slot(session, emitter, slot.id, therapist)
        await _wait_on(session, slot, student)

        await update_slot_status(session, emitter, slot.id, therapist, SlotStatus.AVAILABLE)

        assert slot.status == SlotStatus.BOOKED.value
        assert slot.student_id == student.id

    @pytest.mark.asyncio
    async def test_direct_booking_via_status_rejected(self, session, emitter, therapist):
        slot = await create_slot(session, therapist.id, WEDNESDAY, NINE)

        with pytest.raises(InvalidRequestError):
            await update_slot_status(session, emitter, slot.id, therapist, SlotStatus.BOOKED)


class TestCompletion:
    @pytest.mark.asyncio
    async def test_complete_past_appointment(self, session, emitter, booked_slot, therapist, student):
        await complete_slot(session, emitter, booked_slot.id, therapist, now=dt.datetime(2024, 1, 10, 11))

        assert booked_slot.status == SlotStatus.COMPLETED.value
        assert NotificationType.APPOINTMENT_COMPLETED.value in await _types(session, student.id)

    @pytest.mark.asyncio
    async def test_future_appointment_cannot_complete(self, session, emitter, booked_slot, therapist):
        with pytest.raises(InvalidRequestError):
            await complete_slot(session, emitter, booked_slot.id, therapist, now=dt.datetime(2024, 1, 9))


class TestHousekeeping:
    @pytest.mark.asyncio
    async def test_expires_past_waitlist_entries(self, session, emitter, booked_slot, second_student):
        waiter = await _wait_on(session, booked_slot, second_student)

        assert await expire_stale_requests(session, emitter, today=WEDNESDAY) == 0
        assert await expire_stale_requests(session, emitter, today=WEDNESDAY + dt.timedelta(days=1)) == 1
        assert waiter.match_status == MatchStatus.NO_MATCH.value


class TestLeftoverEntries:
    """Promotion never hands a slot back to the student who released it."""

    @pytest.mark.asyncio
    async def test_cancelling_student_is_not_rebooked(
        self, session, emitter, booked_slot, student, second_student
    ):
        leftover = await _wait_on(session, booked_slot, student, created_at=dt.datetime(2024, 1, 1))
        waiter = await _wait_on(session, booked_slot, second_student, created_at=dt.datetime(2024, 1, 2))

        await cancel_slot(session, emitter, booked_slot.id, student)

        assert booked_slot.student_id == second_student.id
        assert waiter.match_status == MatchStatus.MATCHED.value
        assert leftover.match_status == MatchStatus.CANCELLED.value

    @pytest.mark.asyncio
    async def test_only_own_leftover_leaves_slot_open(self, session, emitter, booked_slot, student):
        leftover = await _wait_on(session, booked_slot, student)

        await cancel_slot(session, emitter, booked_slot.id, student)

        assert booked_slot.status == SlotStatus.AVAILABLE.value
        assert booked_slot.student_id is None
        assert leftover.match_status == MatchStatus.CANCELLED.value

    @pytest.mark.asyncio
    async def test_winner_duplicates_are_closed(
        self, session, emitter, booked_slot, student, second_student, third_student
    ):
        await _wait_on(session, booked_slot, second_student, created_at=dt.datetime(2024, 1, 1))
        duplicate = await _wait_on(session, booked_slot, second_student, created_at=dt.datetime(2024, 1, 2))
        other = await _wait_on(session, booked_slot, third_student, created_at=dt.datetime(2024, 1, 3))

        await cancel_slot(session, emitter, booked_slot.id, student)

        assert booked_slot.student_id == second_student.id
        assert duplicate.match_status == MatchStatus.CANCELLED.value
        assert other.match_status == MatchStatus.WAITLISTED.value
        assert NotificationType.SLOT_UNAVAILABLE.value not in await _types(session, second_student.id)
