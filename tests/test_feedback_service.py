"""
Unit tests for feedback submission.
"""

import datetime as dt
import logging

import pytest

from app.core.errors import ConflictError, InvalidRequestError, PermissionDeniedError, SlotConflictError
from app.models.feedback import Feedback
from app.models.notification import NotificationType
from app.models.slot import SlotStatus
from app.services import feedback_service
from app.services.feedback_service import (
    list_feedback_by_student,
    list_feedback_for_therapist,
    submit_feedback,
)
from app.services.slot_service import book_slot, create_slot


@pytest.fixture
async def appointment(session, therapist, student):
    slot = await create_slot(session, therapist.id, dt.date(2024, 1, 10), dt.time(9, 0))
    await book_slot(session, slot, student.id)
    return slot


class TestSubmitFeedback:
    @pytest.mark.asyncio
    async def test_records_feedback_and_completes_slot(self, session, emitter, appointment, therapist, student):
        feedback = await submit_feedback(session, emitter, student.id, appointment.id, 5, "Very helpful")

        assert feedback.therapist_id == therapist.id
        assert appointment.status == SlotStatus.COMPLETED.value
        assert [n.type for n in emitter.pending] == [NotificationType.FEEDBACK_RECEIVED.value]
        assert emitter.pending[0].user_id == therapist.id

    @pytest.mark.asyncio
    async def test_second_feedback_for_same_appointment_fails(self, session, emitter, appointment, student):
        await submit_feedback(session, emitter, student.id, appointment.id, 4)

        with pytest.raises(ConflictError):
            await submit_feedback(session, emitter, student.id, appointment.id, 2)

    @pytest.mark.asyncio
    async def test_rating_out_of_range(self, session, emitter, appointment, student):
        with pytest.raises(InvalidRequestError):
            await submit_feedback(session, emitter, student.id, appointment.id, 0)
        with pytest.raises(InvalidRequestError):
            await submit_feedback(session, emitter, student.id, appointment.id, 6)

    @pytest.mark.asyncio
    async def test_only_the_appointment_student(self, session, emitter, appointment, second_student):
        with pytest.raises(PermissionDeniedError):
            await submit_feedback(session, emitter, second_student.id, appointment.id, 3)

    @pytest.mark.asyncio
    async def test_therapist_mismatch_rejected(self, session, emitter, appointment, student, other_therapist):
        with pytest.raises(InvalidRequestError):
            await submit_feedback(
                session, emitter, student.id, appointment.id, 3, therapist_id=other_therapist.id
            )

    @pytest.mark.asyncio
    async def test_completion_failure_keeps_feedback(
        self, session, emitter, appointment, student, monkeypatch, caplog
    ):
        async def lost_race(session, slot, **kwargs):
            raise SlotConflictError(slot.id)

        monkeypatch.setattr(feedback_service, "transition_slot", lost_race)

        with caplog.at_level(logging.WARNING, logger="app.services.feedback_service"):
            feedback = await submit_feedback(session, emitter, student.id, appointment.id, 4)

        stored = await session.get(Feedback, feedback.id)
        assert stored is not None
        assert stored.rating == 4
        assert "Could not mark appointment" in caplog.text


class TestFeedbackQueries:
    @pytest.mark.asyncio
    async def test_lists_by_therapist_and_student(
        self, session, emitter, appointment, therapist, student, other_therapist
    ):
        await submit_feedback(session, emitter, student.id, appointment.id, 5)

        assert len(await list_feedback_for_therapist(session, therapist.id)) == 1
        assert await list_feedback_for_therapist(session, other_therapist.id) == []
        assert len(await list_feedback_by_student(session, student.id)) == 1


class TestCancelledAppointments:
    @pytest.mark.asyncio
    async def test_cancelled_appointment_cannot_be_rated(
        self, session, emitter, appointment, therapist, student
    ):
        from app.services.appointment_service import cancel_slot

        await cancel_slot(session, emitter, appointment.id, therapist, reassign=False)
        assert appointment.status == SlotStatus.CANCELLED.value
        assert appointment.student_id == student.id

        with pytest.raises(InvalidRequestError):
            await submit_feedback(session, emitter, student.id, appointment.id, 5)
