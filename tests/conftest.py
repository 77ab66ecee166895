import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before anything builds the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-for-automation-only-0123456789")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-automation-only-9876543210")
os.environ.setdefault("FIELD_ENCRYPTION_KEY", "test-field-encryption-key-do-not-use-in-production")
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "1024")
os.environ.setdefault("ARGON2_PARALLELISM", "1")
os.environ.setdefault("AUTH_RATE_LIMIT", "1000")
os.environ.pop("REDIS_URL", None)
os.environ.pop("SHARED_FS_ROOT", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from gatekeeper.service.runtime import Runtime, reset_runtime_for_tests  # noqa: E402
from support import MutableClock, RecordingEmail, make_settings  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def settings_factory():
    return make_settings


@pytest.fixture
def runtime(settings, clock):
    """Fully wired service graph on a controllable clock with recorded email."""
    rt = Runtime(settings, clock=clock)
    rt.auth.email = RecordingEmail()
    return rt


@pytest.fixture
def outbox(runtime):
    return runtime.auth.email


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
