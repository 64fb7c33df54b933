from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, Request

from campusauth.api.schemas import (
    ChangePasswordRequest,
    DepartmentListResponse,
    DepartmentResponse,
    Envelope,
    LoginRequest,
    LoginResponse,
    LogoutResponse,
    ProfessorInfoResponse,
    ProfileResponse,
    RegisterRequest,
    RoleUpdateRequest,
    SessionListResponse,
    SessionResponse,
    StudentInfoResponse,
    TokenRefreshRequest,
    TokenUserResponse,
    UserResponse,
    ValidateTokenRequest,
    ValidateTokenResponse,
)
from campusauth.logging import get_correlation_id, get_logger
from campusauth.service.auth import LoginResult, ProfessorInfo, Profile, Registration
from campusauth.service.errors import AuthenticationError
from campusauth.service.guards import GuardChain, GuardContext
from campusauth.service.ports import AuthContext
from campusauth.service.runtime import get_runtime
from campusauth.storage.models import PublicUser

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _ok(data: Any) -> Envelope:
    request_id = get_correlation_id()
    if request_id:
        return Envelope(status="ok", data=data, request_id=request_id)
    return Envelope(status="ok", data=data)


async def _run_guards(chain: GuardChain, request: Request) -> AuthContext:
    ctx = GuardContext.from_request(request)
    principal = await chain.check(ctx)
    if principal is None:
        raise AuthenticationError("authentication required")
    return principal


async def get_user(request: Request) -> AuthContext:
    return await _run_guards(get_runtime().authenticated, request)


async def get_admin_user(request: Request) -> AuthContext:
    return await _run_guards(get_runtime().admin_only, request)


async def get_owner_or_admin(request: Request) -> AuthContext:
    return await _run_guards(get_runtime().owner_or_admin, request)


def _user_response(user: PublicUser) -> UserResponse:
    return UserResponse(
        id=user.id,
        username=user.username,
        email=user.email,
        role=user.role.value,
        display_name=user.display_name,
        birth_date=user.birth_date,
    )


def _login_response(result: LoginResult) -> LoginResponse:
    return LoginResponse(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        user=TokenUserResponse(
            id=result.user.id,
            username=result.user.username,
            role=result.user.role.value,
        ),
    )


def _profile_response(profile: Profile) -> ProfileResponse:
    student = None
    if profile.student is not None:
        student = StudentInfoResponse(
            id=profile.student.id, enrollment_date=profile.student.enrollment_date
        )
    professor = None
    if profile.professor is not None:
        professor = ProfessorInfoResponse(
            id=profile.professor.id,
            department_id=profile.professor.department_id,
            department_name=profile.department.name if profile.department else None,
            hiring_date=profile.professor.hiring_date,
        )
    return ProfileResponse(
        user=_user_response(profile.user), student=student, professor=professor
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create a student, professor or plain user account.

    Professors must reference an existing department. Admin accounts cannot be
    created here.
    """
    runtime = get_runtime()
    professor_info = None
    if body.professor_info is not None:
        professor_info = ProfessorInfo(
            department_id=body.professor_info.department_id,
            hiring_date=body.professor_info.hiring_date,
        )
    user = await runtime.auth.register(
        Registration(
            username=body.username,
            email=body.email,
            password=body.password,
            role=body.role,
            display_name=body.display_name,
            birth_date=body.birth_date,
            professor_info=professor_info,
        )
    )
    return _ok({"user": _user_response(user)})


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Exchange credentials for an access/refresh token pair.

    Supplying ``device_id`` replaces any session previously opened on that
    device.
    """
    runtime = get_runtime()
    result = await runtime.auth.authenticate(
        body.username, body.password, device_id=body.device_id
    )
    return _ok(_login_response(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    runtime = get_runtime()
    result = await runtime.auth.refresh(body.refresh_token)
    return _ok(_login_response(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    token = GuardContext.from_request(request).bearer_token or ""
    removed = await runtime.auth.logout(token)
    return _ok(LogoutResponse(success=removed))


@router.get("/auth/profile", response_model=Envelope, tags=["auth"])
async def get_profile(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    profile = await runtime.auth.get_profile(principal.user_id)
    return _ok(_profile_response(profile))


@router.post("/auth/validate-token", response_model=Envelope, tags=["auth"])
async def validate_token(body: ValidateTokenRequest):
    runtime = get_runtime()
    valid = await runtime.auth.validate_token(body.token)
    return _ok(ValidateTokenResponse(valid=valid))


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    sessions = await runtime.auth.list_sessions(principal.user_id)
    items = [
        SessionResponse(
            id=s.id,
            device_id=s.device_id,
            created_at=s.created_at,
            expires_at=s.expires_at,
            refresh_expires_at=s.refresh_expires_at,
        )
        for s in sessions
    ]
    return _ok(SessionListResponse(items=items))


@router.delete("/auth/sessions", response_model=Envelope, tags=["auth"])
async def revoke_sessions(
    device_id: Optional[str] = Query(default=None, max_length=128),
    principal: AuthContext = Depends(get_user),
):
    """Revoke the caller's sessions, or only those of one device."""
    runtime = get_runtime()
    if device_id:
        count = await runtime.auth.revoke_device_tokens(principal.user_id, device_id)
    else:
        count = await runtime.auth.revoke_all_user_tokens(principal.user_id)
    return _ok({"revoked": count})


@router.post("/auth/password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest, principal: AuthContext = Depends(get_user)
):
    """Change the caller's password; every open session is revoked."""
    runtime = get_runtime()
    revoked = await runtime.auth.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    return _ok({"revoked": revoked})


@router.get("/departments", response_model=Envelope, tags=["departments"])
async def list_departments():
    """Departments a professor can register against."""
    runtime = get_runtime()
    departments = await runtime.store.list_departments()
    items = [DepartmentResponse(id=d.id, name=d.name, code=d.code) for d in departments]
    return _ok(DepartmentListResponse(items=items))


@router.get("/users/{id}", response_model=Envelope, tags=["users"])
async def get_user_profile(id: str, principal: AuthContext = Depends(get_owner_or_admin)):
    runtime = get_runtime()
    profile = await runtime.auth.get_profile(id)
    return _ok(_profile_response(profile))


@router.post("/users/{id}/role", response_model=Envelope, tags=["users"])
async def set_user_role(
    id: str, body: RoleUpdateRequest, principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    user = await runtime.auth.set_user_role(id, body.role)
    logger.info("admin_role_update", admin_id=principal.user_id, user_id=id)
    return _ok({"user": _user_response(user)})


@router.delete("/users/{id}", response_model=Envelope, tags=["users"])
async def delete_user(id: str, principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    await runtime.auth.delete_user(id)
    logger.info("admin_user_deleted", admin_id=principal.user_id, user_id=id)
    return _ok({"deleted": True, "id": id})
