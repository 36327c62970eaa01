import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before any import reads settings
os.environ.setdefault("ENV", "test")
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sessionguard.config import Settings, reset_settings_cache  # noqa: E402
from sessionguard.service.passwords import PasswordEngine  # noqa: E402
from sessionguard.storage.memory import MemoryStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def passwords():
    """Argon2id engine with minimal cost so tests stay fast."""
    return PasswordEngine(memory_cost=1024, time_cost=1, parallelism=1)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def settings():
    return Settings(env="test", use_memory_store=True, rate_limit_enabled=False)


class FakeLimiter:
    """Counts calls per key and denies once a key exceeds its limit."""

    def __init__(self):
        self.calls = []
        self.counts = {}
        self.closed = False

    async def allow(self, key, limit, window_seconds):
        self.calls.append((key, limit, window_seconds))
        self.counts[key] = self.counts.get(key, 0) + 1
        return self.counts[key] <= limit

    def verify_connection(self):
        return None

    async def close(self):
        self.closed = True


class RecordingMailer:
    """Stands in for EmailService and keeps every message it is handed."""

    is_configured = True

    def __init__(self, succeed=True):
        self.succeed = succeed
        self.sent = []

    def send(self, to_email, message):
        self.sent.append((to_email, message))
        return self.succeed


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def limiter():
    return FakeLimiter()


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
