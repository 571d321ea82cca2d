import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="levelup_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ["TEST_MODE"] = "true"
os.environ["ALLOW_REDIS_FALLBACK_DEV"] = "true"
# no Redis in tests: blacklist and rate limits use the in-process fallback
os.environ["REDIS_URL"] = ""
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-for-testing-only-0123456789")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-0123456789")
os.environ.setdefault(
    "EMAIL_VERIFICATION_SECRET", "test-verification-secret-for-testing-only-0123456789"
)

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from levelup.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402

DEFAULT_PASSWORD = "Secret123!"


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # a fresh store directory per test keeps snapshots from leaking between tests
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


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


@pytest.fixture
def client():
    """Create a test client for the API."""
    from levelup import app as app_module

    return TestClient(app_module.app)


@pytest.fixture
def sent_verifications(monkeypatch):
    """Capture verification tokens instead of emailing them: email -> [token, ...]."""
    runtime = get_runtime()
    outbox = {}

    def _capture(to_email, token):
        outbox.setdefault(to_email, []).append(token)
        return True

    monkeypatch.setattr(runtime.email, "send_email_verification", _capture)
    return outbox


@pytest.fixture
def make_user():
    """Create a verified account straight in the store."""

    def _make(username="lifter", *, email=None, password=DEFAULT_PASSWORD, admin=False):
        runtime = get_runtime()
        return runtime.store.create_user(
            username,
            email or f"{username}@example.com",
            runtime.auth.hash_password(password),
            is_admin=admin,
            is_email_verified=True,
        )

    return _make


@pytest.fixture
def login(client):
    """Log in through the API and return the token payload."""

    def _login(username, password=DEFAULT_PASSWORD):
        response = client.post(
            "/api/auth/login", json={"username": username, "password": password}
        )
        assert response.status_code == 200, response.text
        return response.json()["data"]

    return _login


@pytest.fixture
def auth_headers(make_user, login):
    """Create a verified user, log in, and return the request headers."""

    def _headers(username="lifter", *, admin=False):
        make_user(username, admin=admin)
        return {"x-auth-token": login(username)["accessToken"]}

    return _headers
