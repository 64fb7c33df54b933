"""Narrow async interfaces the auth engine and guards depend on."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import List, Optional, Protocol

from campusauth.storage.models import (
    Department,
    ProfessorProfile,
    Role,
    SessionRecord,
    StudentProfile,
    User,
)


@dataclass(frozen=True)
class AuthContext:
    """Principal attached to a request once its bearer token resolves."""

    user_id: str
    username: str
    role: Role
    device_id: Optional[str] = None
    session_id: Optional[str] = None


class CredentialStore(Protocol):
    async def find_by_username(self, username: str) -> Optional[User]: ...

    async def find_by_email(self, email: str) -> Optional[User]: ...

    async def find_by_id(self, user_id: str) -> Optional[User]: ...

    async def create(self, user: User) -> User: ...

    async def update(self, user: User) -> User: ...

    async def remove(self, user_id: str) -> bool: ...

    async def list_users(self, limit: int = 100) -> List[User]: ...


class SessionStore(Protocol):
    async def create_session(self, record: SessionRecord) -> SessionRecord: ...

    async def find_by_access_token(self, access_token: str) -> Optional[SessionRecord]: ...

    async def delete_by_access_token(self, access_token: str) -> bool: ...

    async def take_by_refresh_token(self, refresh_token: str) -> Optional[SessionRecord]:
        """Delete and return the record holding ``refresh_token``.

        At most one caller ever receives a given record.
        """
        ...

    async def delete_for_user(self, user_id: str) -> int: ...

    async def delete_for_device(self, user_id: str, device_id: str) -> int: ...

    async def list_for_user(self, user_id: str) -> List[SessionRecord]: ...

    async def purge_expired(self, now: datetime) -> int: ...


class DepartmentDirectory(Protocol):
    async def get_department(self, department_id: str) -> Optional[Department]: ...

    async def list_departments(self) -> List[Department]: ...

class StudentDirectory(Protocol):
    async def create_student(
        self, user_id: str, enrollment_date: Optional[date] = None
    ) -> StudentProfile: ...

    async def find_student_by_user(self, user_id: str) -> Optional[StudentProfile]: ...

    async def remove_student_by_user(self, user_id: str) -> bool: ...


class ProfessorDirectory(Protocol):
    async def create_professor(
        self,
        user_id: str,
        department_id: str,
        hiring_date: Optional[date] = None,
    ) -> ProfessorProfile: ...

    async def find_professor_by_user(self, user_id: str) -> Optional[ProfessorProfile]: ...

    async def remove_professor_by_user(self, user_id: str) -> bool: ...


class TokenValidator(Protocol):
    """The only surface guards see of the auth engine."""

    async def validate_token(self, token: str) -> bool: ...

    async def resolve_token(self, token: str) -> Optional[AuthContext]: ...
