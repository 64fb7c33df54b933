from __future__ import annotations

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """An auth or user-management failure with an HTTP status and stable code.

    The API layer renders ``error_code`` into the error envelope, so codes
    are limited to validation_error, unauthorized, forbidden, not_found,
    conflict and server_error.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code


# -- 400 --------------------------------------------------------------------


class ValidationError(ServiceError):
    pass


class InvalidRoleError(ValidationError):
    """Unknown role, a role that cannot self-register, or a missing role payload."""


class ReferencedEntityNotFoundError(ValidationError):
    pass


class DepartmentNotFoundError(ReferencedEntityNotFoundError):
    def __init__(self, department_id: str) -> None:
        super().__init__(
            f"department {department_id} not found",
            detail={"department_id": department_id},
        )
        self.department_id = department_id


# -- 401 / 403 ----------------------------------------------------------------


class AuthenticationError(ServiceError):
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown user and wrong password share this one message."""

    def __init__(self) -> None:
        super().__init__("invalid credentials")


class InvalidRefreshTokenError(AuthenticationError):
    def __init__(self, message: str = "invalid refresh token") -> None:
        super().__init__(message)


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"


# -- 404 / 409 ----------------------------------------------------------------


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    status_code = 409
    error_code = "conflict"


class DuplicateIdentityError(ConflictError):
    def __init__(self, field: str) -> None:
        super().__init__(f"{field} already exists", detail={"field": field})
        self.field = field


# -- 500 ----------------------------------------------------------------------


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"


class InternalInconsistencyError(ServerError):
    """A compensating write failed and left partial state behind."""
