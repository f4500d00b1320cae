"""
Route tests for signup, login and user listing.
"""

import pytest


class TestAuthRoutes:
    @pytest.mark.asyncio
    async def test_signup_login_me(self, client):
        signup = await client.post(
            "/api/auth/signup",
            json={"email": "Dana@Campus.edu", "password": "correct-horse", "name": "Dana", "role": "therapist"},
        )
        assert signup.status_code == 201
        assert signup.json()["user"]["role"] == "therapist"

        login = await client.post(
            "/api/auth/login", json={"email": "dana@campus.edu", "password": "correct-horse"}
        )
        assert login.status_code == 200
        token = login.json()["access_token"]

        me = await client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert me.json()["email"] == "dana@campus.edu"
        assert me.json()["full_name"] == "Dana"

    @pytest.mark.asyncio
    async def test_duplicate_signup_and_bad_password(self, client):
        body = {"email": "erin@campus.edu", "password": "correct-horse"}
        assert (await client.post("/api/auth/signup", json=body)).status_code == 201
        assert (await client.post("/api/auth/signup", json=body)).status_code == 409

        bad = await client.post("/api/auth/login", json={**body, "password": "wrong-horse"})
        assert bad.status_code == 401

    @pytest.mark.asyncio
    async def test_cannot_self_register_as_admin(self, client):
        response = await client.post(
            "/api/auth/signup",
            json={"email": "mallory@campus.edu", "password": "correct-horse", "role": "admin"},
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_user_listing_by_role(self, client, auth_headers, student, therapist, admin):
        therapists = await client.get("/api/users?role=therapist", headers=auth_headers(student))
        assert [u["id"] for u in therapists.json()] == [therapist.id]

        everyone = await client.get("/api/users", headers=auth_headers(student))
        assert everyone.status_code == 403

        everyone = await client.get("/api/users", headers=auth_headers(admin))
        assert len(everyone.json()) == 3
