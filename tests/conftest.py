import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Configure the environment before any imports that might initialize runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("CSRF_SECRET", "test-csrf-secret-for-testing-only-do-not-use")
# Lower work factor keeps the suite fast; hash format tests pass iterations explicitly
os.environ.setdefault("PBKDF2_ITERATIONS", "10000")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from wikiauth.config import Settings  # noqa: E402
from wikiauth.service.runtime import Runtime, reset_runtime_for_tests  # noqa: E402
from wikiauth.storage.memory import MemoryKV  # noqa: E402


class FakeClock:
    """Manually advanced UTC clock shared by services and the in-memory store."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    """Settings with defaults from the environment configured above."""
    return Settings.from_env()


@pytest.fixture
def store(clock):
    return MemoryKV(clock=clock)


@pytest.fixture
def runtime(settings, store, clock):
    return Runtime(settings, store=store, clock=clock)


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
