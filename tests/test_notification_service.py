"""
Unit tests for the notification emitter, its queries and the push registry.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from starlette.websockets import WebSocketState

from app.core.errors import NotFoundError, PermissionDeniedError
from app.models.notification import Notification, NotificationType
from app.services.connection_manager import ConnectionManager
from app.services.notification_service import (
    count_unread,
    delete_notification,
    list_notifications,
    mark_all_read,
    mark_read,
)


def _fake_socket(send_side_effect=None):
    ws = MagicMock()
    ws.send_json = AsyncMock(side_effect=send_side_effect)
    ws.close = AsyncMock()
    ws.client_state = WebSocketState.CONNECTED
    return ws


class TestEmitter:
    @pytest.mark.asyncio
    async def test_emit_persists_and_delivers(self, session, emitter, connections, student):
        ws = _fake_socket()
        await connections.register(str(student.id), ws)

        note = await emitter.emit(student.id, "Hello", "World", NotificationType.SYSTEM, related_id=7)

        assert note.id is not None
        assert note.related_id == "7"
        assert await emitter.deliver() == 1
        payload = ws.send_json.await_args.args[0]
        assert payload["type"] == "notification"
        assert payload["notification"]["id"] == note.id
        assert emitter.pending == []

    @pytest.mark.asyncio
    async def test_offline_user_is_not_an_error(self, emitter, student):
        await emitter.emit(student.id, "Hello", "World")

        assert await emitter.deliver() == 0

    @pytest.mark.asyncio
    async def test_push_failure_keeps_notification(self, session, emitter, connections, student):
        ws = _fake_socket(send_side_effect=RuntimeError("socket gone"))
        await connections.register(str(student.id), ws)

        note = await emitter.emit(student.id, "Hello", "World")

        assert await emitter.deliver() == 0
        assert not connections.is_connected(student.id)
        assert await session.get(Notification, note.id) is not None

    @pytest.mark.asyncio
    async def test_no_recipient_is_skipped(self, emitter):
        assert await emitter.emit(None, "Nobody", "Home") is None
        assert emitter.pending == []


class TestQueries:
    @pytest.mark.asyncio
    async def test_unread_count_and_mark_all(self, session, emitter, student, second_student):
        for i in range(3):
            await emitter.emit(student.id, f"Note {i}", "Body")
        await emitter.emit(second_student.id, "Other", "Body")

        assert await count_unread(session, student.id) == 3
        assert await mark_all_read(session, student.id) == 3
        assert await count_unread(session, student.id) == 0
        assert await count_unread(session, second_student.id) == 1

    @pytest.mark.asyncio
    async def test_list_newest_first(self, session, emitter, student):
        first = await emitter.emit(student.id, "First", "Body")
        second = await emitter.emit(student.id, "Second", "Body")

        notes = await list_notifications(session, student.id)

        assert [n.id for n in notes] == [second.id, first.id]

    @pytest.mark.asyncio
    async def test_only_owner_can_mark_or_delete(self, session, emitter, student, second_student):
        note = await emitter.emit(student.id, "Private", "Body")

        with pytest.raises(PermissionDeniedError):
            await mark_read(session, note.id, second_student.id)
        with pytest.raises(PermissionDeniedError):
            await delete_notification(session, note.id, second_student.id)

        assert (await mark_read(session, note.id, student.id)).is_read
        await delete_notification(session, note.id, student.id)
        with pytest.raises(NotFoundError):
            await mark_read(session, note.id, student.id)


class TestConnectionManager:
    @pytest.mark.asyncio
    async def test_new_registration_replaces_old_socket(self):
        manager = ConnectionManager()
        old, new = _fake_socket(), _fake_socket()

        await manager.register("5", old)
        await manager.register("5", new)

        old.close.assert_awaited_once()
        assert await manager.send_to_user(5, {"type": "ping"})
        new.send_json.assert_awaited_once_with({"type": "ping"})
        old.send_json.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unregister(self):
        manager = ConnectionManager()
        ws = _fake_socket()
        await manager.register("9", ws)

        assert manager.unregister(ws) == "9"
        assert manager.connected_users == []
        assert not await manager.send_to_user("9", {"type": "ping"})
