from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user, get_emitter, require_roles
from app.api.schemas.feedback import FeedbackCreate
from app.core.db import get_session
from app.models.feedback import FeedbackPublic
from app.models.user import User, UserRole
from app.services.feedback_service import (
    feedback_to_public,
    get_visible_feedback,
    list_feedback_by_student,
    list_feedback_for_therapist,
    submit_feedback,
)
from app.services.notification_service import NotificationEmitter

router = APIRouter(prefix="/feedback", tags=["feedback"])


@router.post("", response_model=FeedbackPublic, status_code=status.HTTP_201_CREATED)
async def create_feedback(
    body: FeedbackCreate,
    session: AsyncSession = Depends(get_session),
    emitter: NotificationEmitter = Depends(get_emitter),
    current_user: User = Depends(require_roles(UserRole.STUDENT, UserRole.ADMIN)),
) -> FeedbackPublic:
    if current_user.is_admin:
        if body.student_id is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="student_id is required when acting as admin",
            )
        student_id = body.student_id
    else:
        student_id = current_user.id
    feedback = await submit_feedback(
        session,
        emitter,
        student_id,
        body.appointment_id,
        body.rating,
        body.comments,
        therapist_id=body.therapist_id,
    )
    return feedback_to_public(feedback)


@router.get("", response_model=list[FeedbackPublic])
async def list_therapist_feedback(
    therapist_id: int | None = Query(None),
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(require_roles(UserRole.THERAPIST, UserRole.ADMIN)),
) -> list[FeedbackPublic]:
    if current_user.is_admin:
        if therapist_id is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="therapist_id is required when acting as admin",
            )
    else:
        therapist_id = current_user.id
    return [feedback_to_public(f) for f in await list_feedback_for_therapist(session, therapist_id)]


@router.get("/therapist/{therapist_id}", response_model=list[FeedbackPublic])
async def list_feedback_for(
    therapist_id: int,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(require_roles(UserRole.THERAPIST, UserRole.ADMIN)),
) -> list[FeedbackPublic]:
    if not current_user.is_admin and current_user.id != therapist_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorized to view this therapist's feedback",
        )
    return [feedback_to_public(f) for f in await list_feedback_for_therapist(session, therapist_id)]


@router.get("/student", response_model=list[FeedbackPublic])
async def list_my_feedback(
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(require_roles(UserRole.STUDENT)),
) -> list[FeedbackPublic]:
    return [feedback_to_public(f) for f in await list_feedback_by_student(session, current_user.id)]


@router.get("/appointment/{appointment_id}", response_model=FeedbackPublic)
async def get_appointment_feedback(
    appointment_id: int,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
) -> FeedbackPublic:
    return feedback_to_public(await get_visible_feedback(session, appointment_id, current_user))
