from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user, require_roles
from app.api.schemas.auth import CreateUserRequest
from app.core.db import get_session
from app.models.user import User, UserCreate, UserPublic, UserRole
from app.services.auth_service import create_user, get_user_by_email, list_users, user_to_public

router = APIRouter(prefix="/users", tags=["users"])


@router.get("", response_model=list[UserPublic])
async def list_all_users(
    role: UserRole | None = Query(None),
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
) -> list[UserPublic]:
    """Students and therapists may only list therapists (for picking a preference)."""
    if not current_user.is_admin and role != UserRole.THERAPIST:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only admins can list users other than therapists",
        )
    users = await list_users(session, role.value if role else None)
    return [user_to_public(u) for u in users]


@router.post("", response_model=UserPublic, status_code=status.HTTP_201_CREATED)
async def create_account(
    body: CreateUserRequest,
    session: AsyncSession = Depends(get_session),
    _: User = Depends(require_roles(UserRole.ADMIN)),
) -> UserPublic:
    if await get_user_by_email(session, body.email):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="An account with this email already exists",
        )
    user = await create_user(
        session,
        UserCreate(
            email=body.email,
            password=body.password,
            full_name=body.full_name,
            role=UserRole(body.role),
        ),
    )
    return user_to_public(user)
