from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from typing import Callable, List, Optional, Union

from campusauth.config import Settings
from campusauth.logging import get_logger
from campusauth.service.errors import (
    DepartmentNotFoundError,
    DuplicateIdentityError,
    InternalInconsistencyError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    InvalidRoleError,
    NotFoundError,
    ValidationError,
)
from campusauth.service.passwords import PasswordHasher
from campusauth.service.ports import (
    AuthContext,
    CredentialStore,
    DepartmentDirectory,
    ProfessorDirectory,
    SessionStore,
    StudentDirectory,
)
from campusauth.service.tokens import ClaimSet, TokenCodec, TokenError, TokenType
from campusauth.storage.errors import ConstraintViolation
from campusauth.storage.models import (
    Department,
    ProfessorProfile,
    PublicUser,
    Role,
    SessionRecord,
    StudentProfile,
    User,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class ProfessorInfo:
    department_id: str
    hiring_date: Optional[date] = None


@dataclass(frozen=True)
class Registration:
    username: str
    email: str
    password: str
    role: Union[Role, str] = Role.USER
    display_name: str = ""
    birth_date: Optional[date] = None
    professor_info: Optional[ProfessorInfo] = None


@dataclass(frozen=True)
class TokenUser:
    id: str
    username: str
    role: Role


@dataclass(frozen=True)
class LoginResult:
    access_token: str
    refresh_token: str
    user: TokenUser
    session_id: Optional[str] = None


@dataclass(frozen=True)
class Profile:
    user: PublicUser
    student: Optional[StudentProfile] = None
    professor: Optional[ProfessorProfile] = None
    department: Optional[Department] = None


@dataclass(frozen=True)
class SessionSummary:
    """Active session with its token values left out."""

    id: str
    device_id: Optional[str]
    created_at: datetime
    expires_at: datetime
    refresh_expires_at: datetime

    @classmethod
    def from_record(cls, record: SessionRecord) -> "SessionSummary":
        return cls(
            id=record.id,
            device_id=record.device_id,
            created_at=record.created_at,
            expires_at=record.expires_at,
            refresh_expires_at=record.refresh_expires_at,
        )


_SELF_REGISTRABLE = (Role.STUDENT, Role.PROFESSOR, Role.USER)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthService:
    """Registration, credential checks and the access/refresh session lifecycle.

    A token is honoured only while its session record exists and is unexpired;
    the signature alone is never enough.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        users: CredentialStore,
        sessions: SessionStore,
        departments: DepartmentDirectory,
        students: StudentDirectory,
        professors: ProfessorDirectory,
        codec: TokenCodec,
        hasher: Optional[PasswordHasher] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.settings = settings
        self.users = users
        self.sessions = sessions
        self.departments = departments
        self.students = students
        self.professors = professors
        self.codec = codec
        self.hasher = hasher or PasswordHasher()
        self._clock = clock
        self.logger = logger

    # -- registration --------------------------------------------------------

    @staticmethod
    def _parse_role(value: Union[Role, str]) -> Role:
        try:
            return Role.parse(value)
        except ValueError as exc:
            raise InvalidRoleError(str(exc), detail={"role": str(value)}) from exc

    @staticmethod
    def _normalize_identity(username: str, email: str, password: str) -> tuple[str, str]:
        username = (username or "").strip()
        email = (email or "").strip().lower()
        if not username:
            raise ValidationError("username is required", detail={"field": "username"})
        if "@" not in email:
            raise ValidationError("a valid email is required", detail={"field": "email"})
        if not password:
            raise ValidationError("password is required", detail={"field": "password"})
        return username, email

    async def _validate_role_payload(
        self, role: Role, registration: Registration
    ) -> Optional[ProfessorInfo]:
        """Return the professor payload for professors, ``None`` for other roles."""
        if role is Role.PROFESSOR:
            info = registration.professor_info
            if info is None or not info.department_id:
                raise InvalidRoleError(
                    "professor registration requires professor_info.department_id",
                    detail={"role": role.value},
                )
            if await self.departments.get_department(info.department_id) is None:
                raise DepartmentNotFoundError(info.department_id)
            return info
        elif role in (Role.STUDENT, Role.USER, Role.ADMIN):
            return None
        else:
            raise InvalidRoleError(f"unhandled role {role!r}")

    async def _ensure_unique(self, username: str, email: str) -> None:
        if await self.users.find_by_username(username) is not None:
            raise DuplicateIdentityError("username")
        if await self.users.find_by_email(email) is not None:
            raise DuplicateIdentityError("email")

    async def _insert_user(self, user: User) -> User:
        try:
            return await self.users.create(user)
        except ConstraintViolation as exc:
            if exc.field in ("username", "email"):
                raise DuplicateIdentityError(exc.field) from exc
            raise

    async def _create_role_profile(
        self, role: Role, user: User, info: Optional[ProfessorInfo]
    ) -> None:
        if role is Role.STUDENT:
            await self.students.create_student(user.id)
        elif role is Role.PROFESSOR:
            if info is None:
                raise InvalidRoleError(
                    "professor registration requires professor_info",
                    detail={"role": role.value},
                )
            await self.professors.create_professor(
                user.id, info.department_id, info.hiring_date
            )
        elif role in (Role.USER, Role.ADMIN):
            return
        else:
            raise InvalidRoleError(f"unhandled role {role!r}")

    async def _rollback_user(self, user_id: str, original: BaseException) -> None:
        try:
            await self.users.remove(user_id)
        except Exception as cleanup_exc:
            inconsistency = InternalInconsistencyError(
                "registration rollback failed",
                detail={"user_id": user_id, "cleanup_error": str(cleanup_exc)},
            )
            self.logger.error(
                "registration_rollback_failed",
                user_id=user_id,
                error=inconsistency.message,
                cleanup_error=str(cleanup_exc),
                original_error=type(original).__name__,
            )
        else:
            self.logger.warning(
                "registration_rolled_back",
                user_id=user_id,
                original_error=type(original).__name__,
            )

    async def register(self, registration: Registration) -> PublicUser:
        role = self._parse_role(registration.role)
        if role not in _SELF_REGISTRABLE:
            raise InvalidRoleError(
                f"role {role.value} cannot be self-registered", detail={"role": role.value}
            )
        username, email = self._normalize_identity(
            registration.username, registration.email, registration.password
        )
        professor_info = await self._validate_role_payload(role, registration)
        await self._ensure_unique(username, email)

        user = await self._insert_user(
            User(
                id=str(uuid.uuid4()),
                username=username,
                email=email,
                password_hash=self.hasher.hash(registration.password),
                role=role,
                display_name=registration.display_name or username,
                birth_date=registration.birth_date,
            )
        )
        try:
            await self._create_role_profile(role, user, professor_info)
        except BaseException as exc:
            # Cancellation must not leave a user without its profile
            await self._rollback_user(user.id, exc)
            raise
        self.logger.info("user_registered", user_id=user.id, role=role.value)
        return PublicUser.from_user(user)

    async def create_admin(
        self, username: str, email: str, password: str, *, display_name: str = ""
    ) -> PublicUser:
        """Create an administrator; never reachable from public registration."""
        username, email = self._normalize_identity(username, email, password)
        await self._ensure_unique(username, email)
        user = await self._insert_user(
            User(
                id=str(uuid.uuid4()),
                username=username,
                email=email,
                password_hash=self.hasher.hash(password),
                role=Role.ADMIN,
                display_name=display_name or username,
            )
        )
        self.logger.info("admin_created", user_id=user.id)
        return PublicUser.from_user(user)

    # -- credentials and sessions ----------------------------------------------

    async def validate_credentials(
        self, username: str, password: str
    ) -> Optional[PublicUser]:
        user = await self.users.find_by_username((username or "").strip())
        if user is None:
            self.hasher.verify_dummy(password or "")
            self.logger.info("auth_credentials_rejected")
            return None
        if not self.hasher.verify(user.password_hash, password or ""):
            self.logger.info("auth_credentials_rejected")
            return None
        if self.hasher.needs_rehash(user.password_hash):
            user = await self.users.update(
                replace(user, password_hash=self.hasher.hash(password))
            )
            self.logger.info("password_rehashed", user_id=user.id)
        return PublicUser.from_user(user)

    async def login(
        self, user: Union[PublicUser, User], device_id: Optional[str] = None
    ) -> LoginResult:
        device_id = device_id or None
        now = self._clock()
        claims = ClaimSet(
            sub=user.id, username=user.username, role=user.role, device=device_id
        )
        access_ttl = self.settings.access_token_ttl
        refresh_ttl = self.settings.refresh_token_ttl
        access_token = self.codec.sign(claims, access_ttl)
        refresh_token = self.codec.sign(
            replace(claims, token_type=TokenType.REFRESH), refresh_ttl
        )

        if device_id is not None:
            replaced = await self.sessions.delete_for_device(user.id, device_id)
            if replaced:
                self.logger.info(
                    "device_sessions_replaced",
                    user_id=user.id,
                    device_id=device_id,
                    count=replaced,
                )
        record = await self.sessions.create_session(
            SessionRecord.new(
                user.id,
                access_token,
                refresh_token,
                expires_at=now + access_ttl,
                refresh_expires_at=now + refresh_ttl,
                device_id=device_id,
                created_at=now,
            )
        )
        self.logger.info(
            "auth_login", user_id=user.id, device_id=device_id, session_id=record.id
        )
        return LoginResult(
            access_token=access_token,
            refresh_token=refresh_token,
            user=TokenUser(id=user.id, username=user.username, role=user.role),
            session_id=record.id,
        )

    async def authenticate(
        self, username: str, password: str, device_id: Optional[str] = None
    ) -> LoginResult:
        user = await self.validate_credentials(username, password)
        if user is None:
            raise InvalidCredentialsError()
        return await self.login(user, device_id=device_id)

    async def refresh(self, refresh_token: str) -> LoginResult:
        try:
            claims = self.codec.verify(refresh_token)
        except TokenError as exc:
            self.logger.info("auth_refresh_rejected", reason=type(exc).__name__)
            raise InvalidRefreshTokenError() from exc
        if claims.token_type is not TokenType.REFRESH:
            self.logger.info("auth_refresh_rejected", reason="wrong_token_type")
            raise InvalidRefreshTokenError()

        user = await self.users.find_by_id(claims.sub)
        if user is None:
            self.logger.info("auth_refresh_rejected", reason="user_missing")
            raise InvalidRefreshTokenError()

        record = await self.sessions.take_by_refresh_token(refresh_token)
        if record is None:
            # Already rotated, logged out or revoked
            self.logger.warning(
                "auth_refresh_rejected", reason="session_missing", user_id=user.id
            )
            raise InvalidRefreshTokenError()
        if record.user_id != user.id or not record.is_refreshable(self._clock()):
            self.logger.info("auth_refresh_rejected", reason="session_expired", user_id=user.id)
            raise InvalidRefreshTokenError()

        result = await self.login(PublicUser.from_user(user), device_id=record.device_id)
        self.logger.info(
            "auth_refresh", user_id=user.id, old_session_id=record.id, session_id=result.session_id
        )
        return result

    async def logout(self, access_token: str) -> bool:
        removed = await self.sessions.delete_by_access_token(access_token)
        self.logger.info("auth_logout", removed=removed)
        return removed

    async def resolve_token(self, token: str) -> Optional[AuthContext]:
        """Return the principal for a live access token, otherwise ``None``.

        Never raises.
        """
        if not token:
            return None
        try:
            claims = self.codec.verify(token)
        except TokenError as exc:
            self.logger.debug("token_rejected", reason=type(exc).__name__)
            return None
        if claims.token_type is not TokenType.ACCESS:
            return None
        try:
            record = await self.sessions.find_by_access_token(token)
        except Exception as exc:
            self.logger.error("session_lookup_failed", error=str(exc))
            return None
        if record is None or record.user_id != claims.sub:
            return None
        if not record.is_active(self._clock()):
            return None
        return AuthContext(
            user_id=claims.sub,
            username=claims.username,
            role=claims.role,
            device_id=claims.device,
            session_id=record.id,
        )

    async def validate_token(self, token: str) -> bool:
        return await self.resolve_token(token) is not None

    async def revoke_all_user_tokens(self, user_id: str) -> int:
        count = await self.sessions.delete_for_user(user_id)
        self.logger.info("sessions_revoked", user_id=user_id, count=count)
        return count

    async def revoke_device_tokens(self, user_id: str, device_id: str) -> int:
        count = await self.sessions.delete_for_device(user_id, device_id)
        self.logger.info(
            "sessions_revoked", user_id=user_id, device_id=device_id, count=count
        )
        return count

    async def list_sessions(self, user_id: str) -> List[SessionSummary]:
        now = self._clock()
        records = await self.sessions.list_for_user(user_id)
        return [SessionSummary.from_record(rec) for rec in records if rec.is_active(now)]

    async def purge_expired_sessions(self) -> int:
        return await self.sessions.purge_expired(self._clock())

    # -- users ----------------------------------------------------------------

    async def _require_user(self, user_id: str) -> User:
        user = await self.users.find_by_id(user_id)
        if user is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    async def get_profile(self, user_id: str) -> Profile:
        user = await self._require_user(user_id)
        public = PublicUser.from_user(user)
        if user.role is Role.STUDENT:
            return Profile(user=public, student=await self.students.find_student_by_user(user.id))
        elif user.role is Role.PROFESSOR:
            professor = await self.professors.find_professor_by_user(user.id)
            department = (
                await self.departments.get_department(professor.department_id)
                if professor
                else None
            )
            return Profile(user=public, professor=professor, department=department)
        elif user.role in (Role.ADMIN, Role.USER):
            return Profile(user=public)
        raise InvalidRoleError(f"unhandled role {user.role!r}")

    async def set_user_role(self, user_id: str, role: Union[Role, str]) -> PublicUser:
        new_role = self._parse_role(role)
        user = await self._require_user(user_id)
        if user.role is new_role:
            return PublicUser.from_user(user)
        updated = await self.users.update(replace(user, role=new_role))
        # Issued tokens still carry the old role
        revoked = await self.revoke_all_user_tokens(user_id)
        self.logger.info(
            "user_role_changed",
            user_id=user_id,
            old_role=user.role.value,
            new_role=new_role.value,
            revoked=revoked,
        )
        return PublicUser.from_user(updated)

    async def _remove_role_profile(self, user: User) -> None:
        if user.role is Role.STUDENT:
            await self.students.remove_student_by_user(user.id)
        elif user.role is Role.PROFESSOR:
            await self.professors.remove_professor_by_user(user.id)
        elif user.role in (Role.ADMIN, Role.USER):
            return
        else:
            raise InvalidRoleError(f"unhandled role {user.role!r}")

    async def delete_user(self, user_id: str) -> None:
        user = await self._require_user(user_id)
        await self.revoke_all_user_tokens(user_id)
        await self._remove_role_profile(user)
        await self.users.remove(user_id)
        self.logger.info("user_deleted", user_id=user_id)

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> int:
        """Replace the password hash and revoke every session of the user."""
        user = await self._require_user(user_id)
        if not self.hasher.verify(user.password_hash, current_password or ""):
            raise InvalidCredentialsError()
        if not new_password:
            raise ValidationError("password is required", detail={"field": "password"})
        await self.users.update(replace(user, password_hash=self.hasher.hash(new_password)))
        revoked = await self.revoke_all_user_tokens(user_id)
        self.logger.info("password_changed", user_id=user_id, revoked=revoked)
        return revoked
