from datetime import UTC, datetime
from enum import Enum

from sqlmodel import Field, SQLModel


def _utc_naive_now() -> datetime:
    """Naive UTC for TIMESTAMP WITHOUT TIME ZONE columns."""
    return datetime.now(UTC).replace(tzinfo=None)


class UserRole(str, Enum):
    STUDENT = "student"
    THERAPIST = "therapist"
    ADMIN = "admin"


class UserBase(SQLModel):
    email: str = Field(unique=True, index=True)
    full_name: str | None = None
    role: str = Field(default=UserRole.STUDENT.value, index=True)


class User(UserBase, table=True):
    __tablename__ = "users"
    id: int | None = Field(default=None, primary_key=True)
    hashed_password: str | None = None
    created_at: datetime = Field(default_factory=_utc_naive_now)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value

    @property
    def is_therapist(self) -> bool:
        return self.role == UserRole.THERAPIST.value

    @property
    def is_student(self) -> bool:
        return self.role == UserRole.STUDENT.value


class UserCreate(SQLModel):
    email: str
    password: str
    full_name: str | None = None
    role: UserRole = UserRole.STUDENT


class UserPublic(SQLModel):
    id: int
    email: str
    full_name: str | None = None
    role: str
