import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user
from app.api.schemas.auth import AccessToken, LoginRequest, SignupRequest
from app.core.db import get_session
from app.models.user import User, UserCreate, UserPublic, UserRole
from app.services.auth_service import login_user, signup_user, user_to_public

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login", response_model=AccessToken)
async def login(
    body: LoginRequest,
    session: AsyncSession = Depends(get_session),
) -> AccessToken:
    result = await login_user(session, body.email, body.password)
    if not result:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )
    user, access, expires_in = result
    return AccessToken(access_token=access, expires_in=expires_in, user=user_to_public(user))


@router.post("/signup", response_model=AccessToken, status_code=status.HTTP_201_CREATED)
async def signup(
    body: SignupRequest,
    session: AsyncSession = Depends(get_session),
) -> AccessToken:
    data = UserCreate(
        email=body.email,
        password=body.password,
        full_name=body.full_name or body.name,
        role=UserRole(body.role),
    )
    result = await signup_user(session, data)
    if not result:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="An account with this email already exists",
        )
    user, access, expires_in = result
    logger.info("New %s account %s", user.role, user.id)
    return AccessToken(access_token=access, expires_in=expires_in, user=user_to_public(user))


@router.get("/me", response_model=UserPublic)
async def me(current_user: User = Depends(get_current_user)) -> UserPublic:
    return user_to_public(current_user)
