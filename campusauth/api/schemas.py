from __future__ import annotations

from datetime import date, datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from campusauth.storage.models import Role

_VALID_ERROR_CODES = frozenset(
    {
        "validation_error",
        "unauthorized",
        "forbidden",
        "not_found",
        "conflict",
        "server_error",
    }
)


class ErrorBody(BaseModel):
    """Error payload with a stable machine-readable code."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class ProfessorInfoRequest(BaseModel):
    department_id: str = Field(..., min_length=1, max_length=128)
    hiring_date: Optional[date] = None


class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=64)
    email: str = Field(..., max_length=254)
    password: str = Field(..., min_length=1, max_length=1024)
    role: str = Field(default=Role.USER.value, max_length=32)
    display_name: str = Field(default="", max_length=128)
    birth_date: Optional[date] = None
    professor_info: Optional[ProfessorInfoRequest] = None


class LoginRequest(BaseModel):
    username: str = Field(..., max_length=64)
    password: str = Field(..., max_length=1024)
    device_id: Optional[str] = Field(default=None, max_length=128)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=4096)


class ValidateTokenRequest(BaseModel):
    token: str = Field(..., max_length=4096)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., max_length=1024)
    new_password: str = Field(..., min_length=1, max_length=1024)


class RoleUpdateRequest(BaseModel):
    role: str = Field(..., max_length=32)


class UserResponse(BaseModel):
    id: str
    username: str
    email: str
    role: str
    display_name: str = ""
    birth_date: Optional[date] = None


class TokenUserResponse(BaseModel):
    id: str
    username: str
    role: str


class LoginResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    user: TokenUserResponse


class StudentInfoResponse(BaseModel):
    id: str
    enrollment_date: date


class ProfessorInfoResponse(BaseModel):
    id: str
    department_id: str
    department_name: Optional[str] = None
    hiring_date: date


class ProfileResponse(BaseModel):
    user: UserResponse
    student: Optional[StudentInfoResponse] = None
    professor: Optional[ProfessorInfoResponse] = None


class SessionResponse(BaseModel):
    id: str
    device_id: Optional[str] = None
    created_at: datetime
    expires_at: datetime
    refresh_expires_at: datetime


class SessionListResponse(BaseModel):
    items: List[SessionResponse]


class DepartmentResponse(BaseModel):
    id: str
    name: str
    code: Optional[str] = None


class DepartmentListResponse(BaseModel):
    items: List[DepartmentResponse]


class LogoutResponse(BaseModel):
    success: bool


class ValidateTokenResponse(BaseModel):
    valid: bool
