from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user, get_emitter, require_roles
from app.api.schemas.notification import MarkAllReadResponse, NotificationTestRequest, UnreadCount
from app.core.db import get_session
from app.core.errors import NotFoundError
from app.models.notification import NotificationPublic
from app.models.user import User, UserRole
from app.services.auth_service import get_user
from app.services.notification_service import (
    NotificationEmitter,
    count_unread,
    delete_notification,
    list_notifications,
    mark_all_read,
    mark_read,
    notification_to_public,
)

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=list[NotificationPublic])
async def list_my_notifications(
    unread_only: bool = Query(False),
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
) -> list[NotificationPublic]:
    notifications = await list_notifications(session, current_user.id, unread_only=unread_only)
    return [notification_to_public(n) for n in notifications]


@router.get("/unread-count", response_model=UnreadCount)
async def unread_count(
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
) -> UnreadCount:
    return UnreadCount(count=await count_unread(session, current_user.id))


@router.patch("/mark-all-read", response_model=MarkAllReadResponse)
async def mark_all_as_read(
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
) -> MarkAllReadResponse:
    return MarkAllReadResponse(updated=await mark_all_read(session, current_user.id))


@router.patch("/{notification_id}/read", response_model=NotificationPublic)
async def mark_as_read(
    notification_id: int,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
) -> NotificationPublic:
    return notification_to_public(await mark_read(session, notification_id, current_user.id))


@router.delete("/{notification_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_notification(
    notification_id: int,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
) -> None:
    await delete_notification(session, notification_id, current_user.id)


@router.post("/test", response_model=NotificationPublic, status_code=status.HTTP_201_CREATED)
async def send_test_notification(
    body: NotificationTestRequest,
    session: AsyncSession = Depends(get_session),
    emitter: NotificationEmitter = Depends(get_emitter),
    _: User = Depends(require_roles(UserRole.ADMIN)),
) -> NotificationPublic:
    if await get_user(session, body.user_id) is None:
        raise NotFoundError("User not found")
    notification = await emitter.emit(body.user_id, body.title, body.message, body.type)
    return notification_to_public(notification)
