from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user, get_emitter
from app.core.db import get_session
from app.models.student_request import MatchStatus, StudentRequestPublic
from app.models.user import User
from app.services.matching_service import drop_request, list_requests, request_to_public
from app.services.notification_service import NotificationEmitter

router = APIRouter(prefix="/student-requests", tags=["student-requests"])


@router.get("", response_model=list[StudentRequestPublic])
async def list_student_requests(
    slot_id: int | None = Query(None),
    student_id: int | None = Query(None),
    match_status: MatchStatus | None = Query(None),
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
) -> list[StudentRequestPublic]:
    """Students see their own requests, therapists the ones naming them, admins filter freely."""
    filters = {
        "slot_id": slot_id,
        "match_status": match_status.value if match_status else None,
    }
    if current_user.is_admin:
        filters["student_id"] = student_id
    elif current_user.is_therapist:
        filters["preferred_therapist_id"] = current_user.id
        filters["student_id"] = student_id
    else:
        filters["student_id"] = current_user.id
    requests = await list_requests(session, **filters)
    return [request_to_public(r) for r in requests]


@router.delete("/{request_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_student_request(
    request_id: int,
    session: AsyncSession = Depends(get_session),
    emitter: NotificationEmitter = Depends(get_emitter),
    current_user: User = Depends(get_current_user),
) -> None:
    await drop_request(session, emitter, request_id, current_user)
