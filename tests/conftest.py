"""
Pytest configuration and shared fixtures.

Every test gets a fresh in-memory SQLite database; the API client overrides
the session dependency so routes run against the same database.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("ENV", "test")

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

import app.models  # noqa: F401 - register tables
from app.core.db import get_session
from app.core.security import create_access_token
from app.main import app as fastapi_app
from app.models.user import User, UserRole
from app.services.connection_manager import ConnectionManager
from app.services.notification_service import NotificationEmitter


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def session(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def connections():
    return ConnectionManager()


@pytest.fixture
def emitter(session, connections):
    return NotificationEmitter(session, connections=connections)


async def _add_user(session_maker, email: str, role: UserRole) -> User:
    async with session_maker() as session:
        user = User(email=email, full_name=email.split("@")[0].title(), role=role.value)
        session.add(user)
        await session.commit()
        await session.refresh(user)
        return user


@pytest.fixture
async def therapist(session_maker):
    return await _add_user(session_maker, "therapist@campus.edu", UserRole.THERAPIST)


@pytest.fixture
async def other_therapist(session_maker):
    return await _add_user(session_maker, "therapist2@campus.edu", UserRole.THERAPIST)


@pytest.fixture
async def student(session_maker):
    return await _add_user(session_maker, "alice@campus.edu", UserRole.STUDENT)


@pytest.fixture
async def second_student(session_maker):
    return await _add_user(session_maker, "bob@campus.edu", UserRole.STUDENT)


@pytest.fixture
async def third_student(session_maker):
    return await _add_user(session_maker, "carol@campus.edu", UserRole.STUDENT)


@pytest.fixture
async def admin(session_maker):
    return await _add_user(session_maker, "admin@campus.edu", UserRole.ADMIN)


@pytest.fixture
def auth_headers():
    """Build a bearer header for a user."""

    def _headers(user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(user.id, role=user.role)}"}

    return _headers


@pytest.fixture
async def client(session_maker):
    async def override_get_session():
        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    fastapi_app.dependency_overrides[get_session] = override_get_session
    async with AsyncClient(transport=ASGITransport(app=fastapi_app), base_url="http://test") as client:
        yield client
    fastapi_app.dependency_overrides.clear()
