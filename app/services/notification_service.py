import logging

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import NotFoundError, PermissionDeniedError
from app.models.notification import Notification, NotificationPublic, NotificationType
from app.services.connection_manager import ConnectionManager, manager

logger = logging.getLogger(__name__)


def notification_to_public(n: Notification) -> NotificationPublic:
    return NotificationPublic(
        id=n.id,
        user_id=n.user_id,
        title=n.title,
        message=n.message,
        type=n.type,
        related_id=n.related_id,
        is_read=n.is_read,
        created_at=n.created_at,
    )


class NotificationEmitter:
    """Persists notifications in the caller's session and queues them for push.

    ``deliver`` is meant to run after the response (as a background task), so a
    push never happens for a notification whose transaction was rolled back
    before the handler returned.
    """

    def __init__(self, session: AsyncSession, connections: ConnectionManager | None = None) -> None:
        self.session = session
        self.connections = connections or manager
        self._outbox: list[NotificationPublic] = []

    @property
    def pending(self) -> list[NotificationPublic]:
        return list(self._outbox)

    async def emit(
        self,
        user_id: int | None,
        title: str,
        message: str,
        type: NotificationType | str = NotificationType.SYSTEM,
        related_id: int | str | None = None,
    ) -> Notification | None:
        if user_id is None:
            return None
        notification = Notification(
            user_id=user_id,
            title=title,
            message=message,
            type=type.value if isinstance(type, NotificationType) else type,
            related_id=str(related_id) if related_id is not None else None,
        )
        self.session.add(notification)
        await self.session.flush()
        await self.session.refresh(notification)
        self._outbox.append(notification_to_public(notification))
        logger.debug("Notification %s (%s) queued for user %s", notification.id, notification.type, user_id)
        return notification

    async def deliver(self) -> int:
        """Push queued notifications; returns how many reached a live socket."""
        delivered = 0
        outbox, self._outbox = self._outbox, []
        for note in outbox:
            try:
                sent = await self.connections.send_to_user(
                    note.user_id,
                    {"type": "notification", "notification": note.model_dump(mode="json")},
                )
            except Exception:
                logger.exception("Push of notification %s failed", note.id)
                continue
            if sent:
                delivered += 1
        return delivered


async def list_notifications(
    session: AsyncSession, user_id: int, unread_only: bool = False
) -> list[Notification]:
    q = (
        select(Notification)
        .where(Notification.user_id == user_id)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
    )
    if unread_only:
        q = q.where(Notification.is_read.is_(False))
    result = await session.execute(q)
    return list(result.scalars().all())


async def count_unread(session: AsyncSession, user_id: int) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(Notification)
        .where(Notification.user_id == user_id, Notification.is_read.is_(False))
    )
    return int(result.scalar_one())


async def _get_owned(session: AsyncSession, notification_id: int, user_id: int) -> Notification:
    notification = await session.get(Notification, notification_id)
    if notification is None:
        raise NotFoundError("Notification not found")
    if notification.user_id != user_id:
        raise PermissionDeniedError("Not authorized to modify this notification")
    return notification


async def mark_read(session: AsyncSession, notification_id: int, user_id: int) -> Notification:
    notification = await _get_owned(session, notification_id, user_id)
    if not notification.is_read:
        notification.is_read = True
        session.add(notification)
        await session.flush()
    return notification


async def mark_all_read(session: AsyncSession, user_id: int) -> int:
    result = await session.execute(
        update(Notification)
        .where(Notification.user_id == user_id, Notification.is_read.is_(False))
        .values(is_read=True)
        .execution_options(synchronize_session=False)
    )
    await session.flush()
    return result.rowcount or 0


async def delete_notification(session: AsyncSession, notification_id: int, user_id: int) -> None:
    notification = await _get_owned(session, notification_id, user_id)
    await session.delete(notification)
    await session.flush()
