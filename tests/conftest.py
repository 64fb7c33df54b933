import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment must be in place before anything loads settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from campusauth.config import Settings  # noqa: E402
from campusauth.service.auth import AuthService  # noqa: E402
from campusauth.service.passwords import PasswordHasher  # noqa: E402
from campusauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from campusauth.service.tokens import TokenCodec  # noqa: E402
from campusauth.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class MutableClock:
    """Manually advanced UTC clock shared by the codec and the auth service."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2030, 1, 1, 8, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture(scope="session")
def hasher():
    return PasswordHasher()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_SECRET,
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
    )


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
def codec(settings, clock):
    return TokenCodec(settings, clock=clock)


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def department(memory_store):
    return memory_store.add_department("Computer Science", code="CS")


@pytest.fixture
def auth_service(settings, memory_store, codec, hasher, clock):
    return AuthService(
        settings,
        users=memory_store,
        sessions=memory_store,
        departments=memory_store,
        students=memory_store,
        professors=memory_store,
        codec=codec,
        hasher=hasher,
        clock=clock,
    )


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
