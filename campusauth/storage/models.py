from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Closed set of account roles.

    Every branch on a role goes through this enum; raw strings are parsed once
    at the boundary with :meth:`parse`.
    """

    ADMIN = "admin"
    STUDENT = "student"
    PROFESSOR = "professor"
    USER = "user"

    @classmethod
    def parse(cls, value: "str | Role") -> "Role":
        if isinstance(value, Role):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"unknown role: {value!r}") from None


@dataclass
class User:
    id: str
    username: str
    email: str
    password_hash: str
    role: Role = Role.USER
    display_name: str = ""
    birth_date: Optional[date] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class PublicUser:
    """User view with the password hash stripped."""

    id: str
    username: str
    email: str
    role: Role
    display_name: str = ""
    birth_date: Optional[date] = None

    @classmethod
    def from_user(cls, user: User) -> "PublicUser":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            role=user.role,
            display_name=user.display_name,
            birth_date=user.birth_date,
        )


@dataclass(frozen=True)
class SessionRecord:
    """Persisted, revocable binding of one access/refresh pair to its owner."""

    id: str
    user_id: str
    access_token: str
    refresh_token: str
    expires_at: datetime
    refresh_expires_at: datetime
    device_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        access_token: str,
        refresh_token: str,
        *,
        expires_at: datetime,
        refresh_expires_at: datetime,
        device_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> "SessionRecord":
        created_at = created_at or utcnow()
        if not created_at <= expires_at < refresh_expires_at:
            raise ValueError("expected created_at <= access expiry < refresh expiry")
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            refresh_expires_at=refresh_expires_at,
            device_id=device_id,
            created_at=created_at,
        )

    def is_active(self, now: datetime) -> bool:
        return self.expires_at > now

    def is_refreshable(self, now: datetime) -> bool:
        return self.refresh_expires_at > now


@dataclass
class Department:
    id: str
    name: str
    code: Optional[str] = None


@dataclass
class StudentProfile:
    id: str
    user_id: str
    enrollment_date: date = field(default_factory=lambda: utcnow().date())


@dataclass
class ProfessorProfile:
    id: str
    user_id: str
    department_id: str
    hiring_date: date = field(default_factory=lambda: utcnow().date())
