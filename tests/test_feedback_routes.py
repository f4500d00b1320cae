"""
Route tests for feedback submission and retrieval.
"""

import datetime as dt

import pytest

from app.services.slot_service import book_slot, create_slot


@pytest.fixture
async def appointment(session_maker, therapist, student):
    async with session_maker() as session:
        slot = await create_slot(session, therapist.id, dt.date(2024, 1, 10), dt.time(9, 0))
        await book_slot(session, slot, student.id)
        await session.commit()
        return slot


class TestFeedbackRoutes:
    @pytest.mark.asyncio
    async def test_submit_then_duplicate_conflicts(self, client, auth_headers, appointment, student, therapist):
        body = {"appointment_id": appointment.id, "therapist_id": therapist.id, "rating": 5, "comments": "Great"}

        first = await client.post("/api/feedback", json=body, headers=auth_headers(student))
        assert first.status_code == 201
        assert first.json()["rating"] == 5

        second = await client.post("/api/feedback", json=body, headers=auth_headers(student))
        assert second.status_code == 409

        slot = await client.get(f"/api/slots/{appointment.id}", headers=auth_headers(therapist))
        assert slot.json()["status"] == "completed"

    @pytest.mark.asyncio
    async def test_rating_validated(self, client, auth_headers, appointment, student):
        response = await client.post(
            "/api/feedback",
            json={"appointment_id": appointment.id, "rating": 6},
            headers=auth_headers(student),
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_therapist_cannot_submit(self, client, auth_headers, appointment, therapist):
        response = await client.post(
            "/api/feedback",
            json={"appointment_id": appointment.id, "rating": 4},
            headers=auth_headers(therapist),
        )

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_reads_by_role(self, client, auth_headers, appointment, student, second_student, therapist, admin):
        await client.post(
            "/api/feedback",
            json={"appointment_id": appointment.id, "rating": 4},
            headers=auth_headers(student),
        )

        mine = await client.get("/api/feedback/student", headers=auth_headers(student))
        assert len(mine.json()) == 1

        received = await client.get("/api/feedback", headers=auth_headers(therapist))
        assert [f["rating"] for f in received.json()] == [4]

        by_admin = await client.get(f"/api/feedback/therapist/{therapist.id}", headers=auth_headers(admin))
        assert len(by_admin.json()) == 1

        by_appointment = await client.get(
            f"/api/feedback/appointment/{appointment.id}", headers=auth_headers(therapist)
        )
        assert by_appointment.status_code == 200

        stranger = await client.get(
            f"/api/feedback/appointment/{appointment.id}", headers=auth_headers(second_student)
        )
        assert stranger.status_code == 403

    @pytest.mark.asyncio
    async def test_missing_feedback_is_404(self, client, auth_headers, appointment, student):
        response = await client.get(f"/api/feedback/appointment/{appointment.id}", headers=auth_headers(student))

        assert response.status_code == 404
