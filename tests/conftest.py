import asyncio
import inspect
import os
import sys
from pathlib import Path

# Settings are read when the runtime is first built, so these must precede app imports
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-testing-only-do-not-use")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use")
# Empty REDIS_URL keeps tests on the in-process cache
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402
from argon2 import PasswordHasher  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from hoopcards.config import Settings  # noqa: E402
from hoopcards.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="unit-access-secret-0123456789abcdef",
        jwt_refresh_secret="unit-refresh-secret-0123456789abcdef",
        test_mode=True,
    )


@pytest.fixture
def fast_hasher():
    """Cheap argon2 parameters so unit tests do not pay production hashing cost."""
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1)


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


PASSWORD = "CourtSide1!Pass"


@pytest.fixture
def client():
    """Create a test client for the API."""
    from fastapi.testclient import TestClient

    from hoopcards import app as app_module

    return TestClient(app_module.app)


@pytest.fixture
def audit_events(monkeypatch):
    """Audit events recorded during the test, in order."""
    from hoopcards.service.runtime import get_runtime

    events = []
    monkeypatch.setattr(get_runtime().audit, "log", events.append)
    return events


class Session:
    """A logged-in browser: its own cookie jar plus the CSRF header to echo."""

    def __init__(self, client, user_id: str, email: str, csrf_token: str):
        self.client = client
        self.user_id = user_id
        self.email = email
        self.csrf_token = csrf_token

    @property
    def headers(self):
        return {"x-csrf-token": self.csrf_token}

    def request(self, method: str, url: str, **kwargs):
        headers = {**self.headers, **kwargs.pop("headers", {})}
        return self.client.request(method, url, headers=headers, **kwargs)


@pytest.fixture
def make_session():
    """Register and log in a user, returning a :class:`Session`."""
    from fastapi.testclient import TestClient

    from hoopcards import app as app_module

    def _make(email: str = "fan@example.com", password: str = PASSWORD, name: str = "Court Fan"):
        browser = TestClient(app_module.app)
        registered = browser.post(
            "/api/auth/register", json={"email": email, "password": password, "name": name}
        )
        assert registered.status_code == 201, registered.text
        login = browser.post("/api/auth/login", json={"email": email, "password": password})
        assert login.status_code == 200, login.text
        return Session(
            browser,
            registered.json()["data"]["user"]["id"],
            email,
            login.json()["data"]["csrfToken"],
        )

    return _make


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
