from __future__ import annotations

from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from campusauth.api.error_handling import register_exception_handlers
from campusauth.api.routes import router
from campusauth.api.schemas import Envelope
from campusauth.config import get_settings
from campusauth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    from campusauth.service.runtime import get_runtime

    runtime = get_runtime()
    await runtime.startup()
    logger.info("app_started", version=__version__)
    yield
    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def _allowed_origins() -> List[str]:
    settings = get_settings()
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    return ["http://localhost", "http://localhost:3000", "http://127.0.0.1:3000"]


def create_app() -> FastAPI:
    app = FastAPI(title="campusauth", version=__version__, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(),
        allow_credentials=False,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Tag logs and the response with X-Request-ID, generating one if absent."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz", response_model=Envelope, tags=["health"])
    async def healthz():
        return Envelope(status="ok", data={"status": "healthy", "version": __version__})

    return app


app = create_app()
