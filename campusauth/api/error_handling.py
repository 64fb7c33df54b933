from __future__ import annotations

from typing import Any, Optional, Union

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from campusauth.api.schemas import Envelope, ErrorBody
from campusauth.logging import get_correlation_id, get_logger
from campusauth.service.errors import ServiceError
from campusauth.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    500: "server_error",
}

Details = Optional[Union[dict, list]]


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int, message: str, details: Details = None, code: Optional[str] = None
) -> JSONResponse:
    body = ErrorBody(
        code=code or _error_code_for_status(status_code), message=message, details=details
    )
    envelope_kwargs: dict[str, Any] = {"status": "error", "error": body}
    request_id = get_correlation_id()
    if request_id:
        envelope_kwargs["request_id"] = request_id
    headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
    return JSONResponse(
        status_code=status_code,
        content=Envelope(**envelope_kwargs).model_dump(mode="json"),
        headers=headers,
    )


def _log_failure(request: Request, event: str, status_code: int, **fields: Any) -> None:
    # Client mistakes are warnings; anything 5xx is ours
    log = logger.error if status_code >= 500 else logger.warning
    log(event, path=request.url.path, method=request.method, status_code=status_code, **fields)


async def _on_constraint_violation(request: Request, exc: ConstraintViolation):
    _log_failure(request, "constraint_violation", 409, message=exc.message, detail=exc.detail)
    return _error_response(409, exc.message, exc.detail or None, code="conflict")


async def _on_service_error(request: Request, exc: ServiceError):
    _log_failure(
        request,
        "service_error",
        exc.status_code,
        error_code=exc.error_code,
        error_type=type(exc).__name__,
        message=exc.message,
    )
    return _error_response(exc.status_code, exc.message, exc.detail or None, code=exc.error_code)


async def _on_request_validation(request: Request, exc: RequestValidationError):
    problems = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")} for err in exc.errors()
    ]
    _log_failure(request, "request_validation_error", 400, errors=problems)
    return _error_response(400, "invalid request", problems, code="validation_error")


async def _on_http_exception(request: Request, exc: HTTPException):
    message = exc.detail if isinstance(exc.detail, str) else "http error"
    _log_failure(request, "http_error", exc.status_code, message=message)
    return _error_response(exc.status_code, message)


async def _on_unexpected(request: Request, exc: Exception):
    logger.exception(
        "unhandled_exception",
        exc_info=exc,
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
    )
    # Never echo internals back to the client
    return _error_response(500, "internal server error", code="server_error")


def register_exception_handlers(app: FastAPI) -> None:
    """Render storage, service and framework errors as error envelopes."""
    app.add_exception_handler(ConstraintViolation, _on_constraint_violation)
    app.add_exception_handler(ServiceError, _on_service_error)
    app.add_exception_handler(RequestValidationError, _on_request_validation)
    app.add_exception_handler(HTTPException, _on_http_exception)
    app.add_exception_handler(Exception, _on_unexpected)
