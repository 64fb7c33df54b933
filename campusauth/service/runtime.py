from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from campusauth.config import Settings, get_settings, reset_settings_cache
from campusauth.logging import configure_logging, get_logger
from campusauth.service.auth import AuthService
from campusauth.service.bootstrap import ensure_admin, seed_departments
from campusauth.service.guards import GuardChain, OwnershipGuard, RoleGuard, TokenGuard
from campusauth.service.passwords import PasswordHasher
from campusauth.service.tokens import TokenCodec
from campusauth.storage.memory import MemoryStore
from campusauth.storage.models import Role
from campusauth.storage.redis_sessions import RedisSessionStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in ``url`` with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds the singleton stores, codec, auth engine and guard chains."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        configure_logging(self.settings.log_level, json_output=self.settings.log_json)
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        # Users, profiles and departments always live in the memory store
        self.store = MemoryStore()
        seed_departments(self.store, self.settings.departments)
        self.sessions: Union[MemoryStore, RedisSessionStore]
        if self.settings.use_memory_store:
            self.sessions = self.store
        else:
            self.sessions = RedisSessionStore(self.settings.redis_url)
        logger.info(
            "runtime_session_store_initialized",
            store_type="memory" if self.settings.use_memory_store else "redis",
            redis_url=_mask_url_password(self.settings.redis_url),
        )

        self.codec = TokenCodec(self.settings)
        self.hasher = PasswordHasher()
        self.auth = AuthService(
            self.settings,
            users=self.store,
            sessions=self.sessions,
            departments=self.store,
            students=self.store,
            professors=self.store,
            codec=self.codec,
            hasher=self.hasher,
        )

        self.authenticated = GuardChain(TokenGuard(self.auth))
        self.admin_only = GuardChain(TokenGuard(self.auth), RoleGuard(Role.ADMIN))
        self.owner_or_admin = GuardChain(
            TokenGuard(self.auth), OwnershipGuard(self.codec, param="id")
        )

    async def startup(self) -> None:
        """Ensure the configured administrator exists; run once the app starts."""
        if self.settings.admin_username:
            await ensure_admin(
                self.auth,
                self.settings.admin_username,
                self.settings.admin_email or "",
                self.settings.admin_password or "",
            )

    async def close(self) -> None:
        if isinstance(self.sessions, RedisSessionStore):
            await self.sessions.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    global runtime
    if runtime is None:
        with _runtime_lock:
            if runtime is None:
                runtime = Runtime()
    return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a fresh environment read; TEST_MODE only."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
