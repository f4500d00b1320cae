"""
Unit tests for the slot store: invariants, overlap checks and conditional updates.
"""

import datetime as dt

import pytest
from sqlalchemy import update

from app.core.errors import ConflictError, InvalidRequestError, SlotConflictError
from app.models.slot import Slot, SlotInvariantError, SlotStatus, check_slot_state
from app.services.slot_service import (
    book_slot,
    create_slot,
    find_slots_at,
    hold_slot,
    parse_time,
    release_slot,
    weekly_schedule,
)

DAY = dt.date(2024, 1, 10)
NINE = dt.time(9, 0)
TEN = dt.time(10, 0)


class TestSlotState:
    """Status/assignment consistency rules."""

    def test_booked_requires_therapist_and_student(self):
        with pytest.raises(SlotInvariantError):
            check_slot_state(SlotStatus.BOOKED.value, 1, None)
        with pytest.raises(SlotInvariantError):
            check_slot_state(SlotStatus.BOOKED.value, None, 2)
        check_slot_state(SlotStatus.BOOKED.value, 1, 2)

    def test_pending_requires_therapist_only(self):
        check_slot_state(SlotStatus.PENDING.value, 1, None)
        with pytest.raises(SlotInvariantError):
            check_slot_state(SlotStatus.PENDING.value, 1, 2)
        with pytest.raises(SlotInvariantError):
            check_slot_state(SlotStatus.PENDING.value, None, None)

    def test_waitlisted_is_never_persisted(self):
        with pytest.raises(SlotInvariantError):
            check_slot_state(SlotStatus.WAITLISTED.value, 1, None)

    def test_parse_time_rejects_garbage(self):
        assert parse_time("09:30") == dt.time(9, 30)
        with pytest.raises(InvalidRequestError):
            parse_time("half past nine")


class TestCreateSlot:
    @pytest.mark.asyncio
    async def test_defaults_end_time_and_weekday(self, session, therapist):
        slot = await create_slot(session, therapist.id, DAY, NINE)

        assert slot.end_time == TEN
        assert slot.day == "WED"
        assert slot.status == SlotStatus.AVAILABLE.value
        assert slot.student_id is None

    @pytest.mark.asyncio
    async def test_end_before_start_rejected(self, session, therapist):
        with pytest.raises(InvalidRequestError):
            await create_slot(session, therapist.id, DAY, TEN, NINE)

    @pytest.mark.asyncio
    async def test_overlap_rejected(self, session, therapist):
        await create_slot(session, therapist.id, DAY, NINE, TEN)

        with pytest.raises(ConflictError):
            await create_slot(session, therapist.id, DAY, dt.time(9, 30), dt.time(10, 30))

    @pytest.mark.asyncio
    async def test_adjacent_and_other_therapist_allowed(self, session, therapist, other_therapist):
        await create_slot(session, therapist.id, DAY, NINE, TEN)
        await create_slot(session, therapist.id, DAY, TEN, dt.time(11, 0))
        await create_slot(session, other_therapist.id, DAY, NINE, TEN)

        assert len(await find_slots_at(session, DAY, NINE)) == 2


class TestConditionalTransitions:
    @pytest.mark.asyncio
    async def test_book_sets_student_and_bumps_version(self, session, therapist, student):
        slot = await create_slot(session, therapist.id, DAY, NINE)

        await book_slot(session, slot, student.id)

        assert slot.status == SlotStatus.BOOKED.value
        assert slot.student_id == student.id
        assert slot.version == 1

    @pytest.mark.asyncio
    async def test_second_booking_conflicts(self, session, therapist, student, second_student):
        slot = await create_slot(session, therapist.id, DAY, NINE)
        await book_slot(session, slot, student.id)

        with pytest.raises(ConflictError):
            await book_slot(session, slot, second_student.id)
        assert slot.student_id == student.id

    @pytest.mark.asyncio
    async def test_stale_version_loses_race(self, session, therapist, student):
        slot = await create_slot(session, therapist.id, DAY, NINE)
        # Another request bumped the row after we read it
        await session.execute(
            update(Slot)
            .where(Slot.id == slot.id)
            .values(version=Slot.version + 1)
            .execution_options(synchronize_session=False)
        )

        with pytest.raises(SlotConflictError):
            await book_slot(session, slot, student.id)

    @pytest.mark.asyncio
    async def test_hold_and_release(self, session, therapist):
        slot = await create_slot(session, therapist.id, DAY, NINE)

        await hold_slot(session, slot)
        assert slot.status == SlotStatus.PENDING.value

        await release_slot(session, slot)
        assert slot.status == SlotStatus.AVAILABLE.value
        assert slot.student_id is None


class TestWeeklySchedule:
    @pytest.mark.asyncio
    async def test_groups_by_therapist_within_week(self, session, therapist, other_therapist):
        await create_slot(session, therapist.id, DAY, NINE)
        await create_slot(session, therapist.id, DAY + dt.timedelta(days=1), NINE)
        await create_slot(session, other_therapist.id, DAY, TEN)
        await create_slot(session, therapist.id, DAY + dt.timedelta(days=7), NINE)

        schedule = await weekly_schedule(session, DAY)

        assert [s.date for s in schedule[therapist.id]] == [DAY, DAY + dt.timedelta(days=1)]
        assert len(schedule[other_therapist.id]) == 1
