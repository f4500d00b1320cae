from typing import Literal

from pydantic import BaseModel, EmailStr, Field

from app.models.user import UserPublic


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class SignupRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8)
    full_name: str | None = None
    name: str | None = None  # frontend sends "name"; prefer over full_name if both absent
    # Admin accounts are created through POST /users only
    role: Literal["student", "therapist"] = "student"


class CreateUserRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8)
    full_name: str | None = None
    role: Literal["student", "therapist", "admin"]


class AccessToken(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds
    user: UserPublic
