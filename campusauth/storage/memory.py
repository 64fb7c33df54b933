from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import date, datetime
from typing import Dict, List, Optional

from campusauth.logging import get_logger
from campusauth.storage.errors import ConstraintViolation
from campusauth.storage.models import (
    Department,
    ProfessorProfile,
    SessionRecord,
    StudentProfile,
    User,
    utcnow,
)


class MemoryStore:
    """In-process store for users, role profiles, departments and sessions.

    Methods are async to match the other adapters but never await while holding
    the lock, so each call is atomic with respect to the others.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, SessionRecord] = {}
        self.departments: Dict[str, Department] = {}
        self.students: Dict[str, StudentProfile] = {}
        self.professors: Dict[str, ProfessorProfile] = {}
        # token value -> session id
        self._access_index: Dict[str, str] = {}
        self._refresh_index: Dict[str, str] = {}
        self._data_lock = threading.RLock()

    # -- users ---------------------------------------------------------------

    def _check_unique(self, user: User) -> None:
        for existing in self.users.values():
            if existing.id == user.id:
                continue
            if existing.username == user.username:
                raise ConstraintViolation("username already exists", {"field": "username"})
            if existing.email == user.email:
                raise ConstraintViolation("email already exists", {"field": "email"})

    async def create(self, user: User) -> User:
        with self._data_lock:
            if user.id in self.users:
                raise ConstraintViolation("user id already exists", {"field": "id"})
            self._check_unique(user)
            self.users[user.id] = replace(user)
            return replace(user)

    async def update(self, user: User) -> User:
        with self._data_lock:
            if user.id not in self.users:
                raise ConstraintViolation("user not found", {"field": "id", "user_id": user.id})
            self._check_unique(user)
            self.users[user.id] = replace(user)
            return replace(user)

    async def remove(self, user_id: str) -> bool:
        with self._data_lock:
            return self.users.pop(user_id, None) is not None

    async def find_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.username == username), None)
            return replace(user) if user else None

    async def find_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    async def find_by_id(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    async def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.created_at)
            return [replace(u) for u in ordered[:limit]]

    # -- departments and role profiles ----------------------------------------

    def add_department(
        self, name: str, code: Optional[str] = None, *, department_id: Optional[str] = None
    ) -> Department:
        """Register a department; re-adding an existing id replaces its name and code."""
        with self._data_lock:
            department = Department(
                id=department_id or str(uuid.uuid4()), name=name, code=code
            )
            self.departments[department.id] = department
            return department

    async def list_departments(self) -> List[Department]:
        with self._data_lock:
            ordered = sorted(self.departments.values(), key=lambda d: d.name)
            return [replace(d) for d in ordered]

    async def get_department(self, department_id: str) -> Optional[Department]:
        with self._data_lock:
            return self.departments.get(department_id)

    async def create_student(
        self, user_id: str, enrollment_date: Optional[date] = None
    ) -> StudentProfile:
        with self._data_lock:
            if user_id in self.students:
                raise ConstraintViolation("student profile exists", {"user_id": user_id})
            profile = StudentProfile(id=str(uuid.uuid4()), user_id=user_id)
            if enrollment_date is not None:
                profile.enrollment_date = enrollment_date
            self.students[user_id] = profile
            return profile

    async def find_student_by_user(self, user_id: str) -> Optional[StudentProfile]:
        with self._data_lock:
            return self.students.get(user_id)

    async def remove_student_by_user(self, user_id: str) -> bool:
        with self._data_lock:
            return self.students.pop(user_id, None) is not None

    async def create_professor(
        self,
        user_id: str,
        department_id: str,
        hiring_date: Optional[date] = None,
    ) -> ProfessorProfile:
        with self._data_lock:
            if department_id not in self.departments:
                raise ConstraintViolation(
                    "department not found", {"department_id": department_id}
                )
            if user_id in self.professors:
                raise ConstraintViolation("professor profile exists", {"user_id": user_id})
            profile = ProfessorProfile(
                id=str(uuid.uuid4()), user_id=user_id, department_id=department_id
            )
            if hiring_date is not None:
                profile.hiring_date = hiring_date
            self.professors[user_id] = profile
            return profile

    async def find_professor_by_user(self, user_id: str) -> Optional[ProfessorProfile]:
        with self._data_lock:
            return self.professors.get(user_id)

    async def remove_professor_by_user(self, user_id: str) -> bool:
        with self._data_lock:
            return self.professors.pop(user_id, None) is not None

    # -- sessions ------------------------------------------------------------

    def _drop_session(self, session_id: str) -> Optional[SessionRecord]:
        record = self.sessions.pop(session_id, None)
        if record is None:
            return None
        self._access_index.pop(record.access_token, None)
        self._refresh_index.pop(record.refresh_token, None)
        return record

    async def create_session(self, record: SessionRecord) -> SessionRecord:
        with self._data_lock:
            if (
                record.access_token in self._access_index
                or record.refresh_token in self._refresh_index
            ):
                raise ConstraintViolation("token already issued", {"session_id": record.id})
            self.sessions[record.id] = record
            self._access_index[record.access_token] = record.id
            self._refresh_index[record.refresh_token] = record.id
            return record

    async def find_by_access_token(self, access_token: str) -> Optional[SessionRecord]:
        with self._data_lock:
            session_id = self._access_index.get(access_token)
            return self.sessions.get(session_id) if session_id else None

    async def delete_by_access_token(self, access_token: str) -> bool:
        with self._data_lock:
            session_id = self._access_index.get(access_token)
            if session_id is None:
                return False
            return self._drop_session(session_id) is not None

    async def take_by_refresh_token(self, refresh_token: str) -> Optional[SessionRecord]:
        with self._data_lock:
            session_id = self._refresh_index.get(refresh_token)
            if session_id is None:
                return None
            return self._drop_session(session_id)

    async def delete_for_user(self, user_id: str) -> int:
        with self._data_lock:
            doomed = [sid for sid, rec in self.sessions.items() if rec.user_id == user_id]
            for session_id in doomed:
                self._drop_session(session_id)
            return len(doomed)

    async def delete_for_device(self, user_id: str, device_id: str) -> int:
        with self._data_lock:
            doomed = [
                sid
                for sid, rec in self.sessions.items()
                if rec.user_id == user_id and rec.device_id == device_id
            ]
            for session_id in doomed:
                self._drop_session(session_id)
            return len(doomed)

    async def list_for_user(self, user_id: str) -> List[SessionRecord]:
        with self._data_lock:
            records = [rec for rec in self.sessions.values() if rec.user_id == user_id]
            return sorted(records, key=lambda rec: rec.created_at)

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        cutoff = now or utcnow()
        with self._data_lock:
            doomed = [
                sid for sid, rec in self.sessions.items() if not rec.is_refreshable(cutoff)
            ]
            for session_id in doomed:
                self._drop_session(session_id)
        if doomed:
            self.logger.info("sessions_purged", count=len(doomed))
        return len(doomed)
