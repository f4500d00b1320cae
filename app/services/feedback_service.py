import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ConflictError, InvalidRequestError, NotFoundError, PermissionDeniedError
from app.models.feedback import Feedback, FeedbackPublic
from app.models.notification import NotificationType
from app.models.slot import SlotStatus
from app.models.user import User
from app.services.notification_service import NotificationEmitter
from app.services.slot_service import get_slot, transition_slot

logger = logging.getLogger(__name__)


def feedback_to_public(f: Feedback) -> FeedbackPublic:
    return FeedbackPublic(
        id=f.id,
        appointment_id=f.appointment_id,
        student_id=f.student_id,
        therapist_id=f.therapist_id,
        rating=f.rating,
        comments=f.comments,
        created_at=f.created_at,
    )


async def get_feedback_by_appointment(session: AsyncSession, appointment_id: int) -> Feedback | None:
    result = await session.execute(select(Feedback).where(Feedback.appointment_id == appointment_id))
    return result.scalar_one_or_none()


async def submit_feedback(
    session: AsyncSession,
    emitter: NotificationEmitter,
    student_id: int,
    appointment_id: int,
    rating: int,
    comments: str | None = None,
    therapist_id: int | None = None,
) -> Feedback:
    """Record one rating per appointment, then close the slot as completed.

    Completing the slot is best effort: a failure there is logged and the
    feedback is kept.
    """
    if not 1 <= rating <= 5:
        raise InvalidRequestError("Rating must be between 1 and 5")
    if await get_feedback_by_appointment(session, appointment_id):
        raise ConflictError("Feedback has already been submitted for this appointment")

    slot = await get_slot(session, appointment_id)
    if slot.student_id != student_id:
        raise PermissionDeniedError("Feedback can only be left by the appointment's student")
    if slot.status not in (SlotStatus.BOOKED.value, SlotStatus.COMPLETED.value):
        raise InvalidRequestError(f"Cannot leave feedback for a {slot.status} appointment")
    if slot.therapist_id is None:
        raise InvalidRequestError("Appointment has no therapist")
    if therapist_id is not None and therapist_id != slot.therapist_id:
        raise InvalidRequestError("Therapist does not match the appointment")
    therapist_id = slot.therapist_id

    feedback = Feedback(
        appointment_id=appointment_id,
        student_id=student_id,
        therapist_id=therapist_id,
        rating=rating,
        comments=comments,
    )
    try:
        async with session.begin_nested():
            session.add(feedback)
            await session.flush()
    except IntegrityError as e:
        raise ConflictError("Feedback has already been submitted for this appointment") from e
    await session.refresh(feedback)
    logger.info("Feedback %s recorded for appointment %s (rating %s)", feedback.id, appointment_id, rating)

    if slot.status == SlotStatus.BOOKED.value:
        try:
            async with session.begin_nested():
                await transition_slot(
                    session,
                    slot,
                    expected=(SlotStatus.BOOKED.value,),
                    status=SlotStatus.COMPLETED.value,
                )
        except (ConflictError, SQLAlchemyError) as e:
            logger.warning("Could not mark appointment %s completed after feedback: %s", appointment_id, e)

    await emitter.emit(
        therapist_id,
        "New Feedback Received",
        f"A student left a {rating}-star rating for the appointment on {feedback.created_at:%d %b %Y}.",
        NotificationType.FEEDBACK_RECEIVED,
        feedback.id,
    )
    return feedback


async def list_feedback_for_therapist(session: AsyncSession, therapist_id: int) -> list[Feedback]:
    result = await session.execute(
        select(Feedback)
        .where(Feedback.therapist_id == therapist_id)
        .order_by(Feedback.created_at.desc(), Feedback.id.desc())
    )
    return list(result.scalars().all())


async def list_feedback_by_student(session: AsyncSession, student_id: int) -> list[Feedback]:
    result = await session.execute(
        select(Feedback)
        .where(Feedback.student_id == student_id)
        .order_by(Feedback.created_at.desc(), Feedback.id.desc())
    )
    return list(result.scalars().all())


async def get_visible_feedback(session: AsyncSession, appointment_id: int, user: User) -> Feedback:
    feedback = await get_feedback_by_appointment(session, appointment_id)
    if feedback is None:
        raise NotFoundError("No feedback for this appointment")
    if not user.is_admin and user.id not in (feedback.student_id, feedback.therapist_id):
        raise PermissionDeniedError("Not authorized to view this feedback")
    return feedback
