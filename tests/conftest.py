import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before any imports that might initialize runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-for-testing-only-do-not-use")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use")
os.environ.setdefault("OTP_SECRET", "test-otp-secret-for-testing-only-do-not-use")
os.environ.setdefault("AUTH_RATE_LIMIT", "100")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authflow.config import Settings  # noqa: E402
from authflow.service.auth import AuthService  # noqa: E402
from authflow.service.runtime import reset_runtime_for_tests  # noqa: E402
from authflow.storage.memory import MemoryCache, MemoryDirectory  # noqa: E402


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, *, ms: int = 0, seconds: int = 0, minutes: int = 0, days: int = 0) -> None:
        self.now += ms + seconds * 1000 + minutes * 60_000 + days * 86_400_000


class RecordingNotifier:
    """Notifier double that keeps every message instead of delivering it."""

    def __init__(self):
        self.otps = []
        self.notices = []

    def send_otp(self, channel, destination, code, context):
        self.otps.append(
            {"channel": channel, "destination": destination, "code": code, **context}
        )
        return True

    def send_notice(self, channel, destination, kind):
        self.notices.append({"channel": channel, "destination": destination, "kind": kind})
        return True

    def last_code(self, destination=None):
        for message in reversed(self.otps):
            if destination is None or message["destination"] == destination:
                return message["code"]
        raise AssertionError(f"no otp sent to {destination}")


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
    return Settings(
        jwt_access_secret="unit-access-secret-0123456789",
        jwt_refresh_secret="unit-refresh-secret-0123456789",
        otp_secret="unit-otp-secret-0123456789",
        otp_expires_in_seconds=600,
        otp_session_ttl_seconds=86400,
        otp_max_attempts=5,
        otp_max_resends=3,
    )


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def directory():
    return MemoryDirectory()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def auth_service(cache, directory, notifier, settings, clock):
    return AuthService(cache, directory, notifier, settings, clock=clock)


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
