from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import InvalidRequestError, NotFoundError
from app.core.security import create_access_token, hash_password, verify_password
from app.models.user import User, UserCreate, UserPublic, UserRole


async def get_user_by_email(session: AsyncSession, email: str) -> User | None:
    result = await session.execute(select(User).where(User.email == email.lower()))
    return result.scalar_one_or_none()


async def get_user(session: AsyncSession, user_id: int) -> User | None:
    return await session.get(User, user_id)


async def get_user_with_role(session: AsyncSession, user_id: int, role: UserRole) -> User:
    user = await get_user(session, user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    if user.role != role.value:
        raise InvalidRequestError(f"User {user_id} is not a {role.value}")
    return user


async def create_user(session: AsyncSession, data: UserCreate) -> User:
    user = User(
        email=data.email.lower(),
        full_name=data.full_name,
        role=data.role.value,
        hashed_password=hash_password(data.password),
    )
    session.add(user)
    await session.flush()
    await session.refresh(user)
    return user


async def list_users(session: AsyncSession, role: str | None = None) -> list[User]:
    q = select(User).order_by(User.id)
    if role:
        q = q.where(User.role == role)
    result = await session.execute(q)
    return list(result.scalars().all())


def user_to_public(user: User) -> UserPublic:
    return UserPublic(
        id=user.id,
        email=user.email,
        full_name=user.full_name,
        role=user.role,
    )


def make_access_token(user: User) -> tuple[str, int]:
    access = create_access_token(user.id, role=user.role)
    expires_in = settings.access_token_expire_minutes * 60
    return access, expires_in


async def login_user(
    session: AsyncSession, email: str, password: str
) -> tuple[User, str, int] | None:
    user = await get_user_by_email(session, email)
    if not user or not user.hashed_password:
        return None
    if not verify_password(password, user.hashed_password):
        return None
    access, expires_in = make_access_token(user)
    return user, access, expires_in


async def signup_user(
    session: AsyncSession, data: UserCreate
) -> tuple[User, str, int] | None:
    if await get_user_by_email(session, data.email):
        return None
    user = await create_user(session, data)
    access, expires_in = make_access_token(user)
    return user, access, expires_in
