import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before anything reads settings
_test_tmp_dir = tempfile.mkdtemp(prefix="fitos_auth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")

import httpx  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fitos_auth.app import create_app  # noqa: E402
from fitos_auth.config import Settings, reset_settings_cache  # noqa: E402
from fitos_auth.storage.models import UserRole, UserStatus  # noqa: E402

TEST_PASSWORD = "TestPassword123!"


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        test_mode=True,
        use_memory_store=True,
        shared_fs_root=str(tmp_path),
        google_client_id="client-id",
        google_client_secret="client-secret",
        google_redirect_uri="http://localhost:8000/api/auth/google/callback",
        google_calendar_redirect_uri="http://localhost:8000/api/calendar/callback",
        frontend_url="http://frontend.test",
    )


@pytest.fixture
def http_transport():
    """Google endpoints answer nothing unless a test installs a handler."""

    def _unreachable(request):
        raise AssertionError(f"unexpected provider call: {request.method} {request.url}")

    return httpx.MockTransport(_unreachable)


@pytest.fixture
def app(settings, http_transport):
    return create_app(settings, http_transport=http_transport)


@pytest.fixture
def runtime(app):
    return app.state.runtime


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def default_tenant(runtime):
    return runtime.store.create_tenant("default", "Default Gym")


@pytest.fixture
def make_user(runtime, default_tenant):
    """Create a user with ``TEST_PASSWORD`` directly in the store."""

    def _make(
        email="member@example.com",
        *,
        role=UserRole.CLIENT,
        status=UserStatus.ACTIVE,
        password=TEST_PASSWORD,
        tenant_id=None,
    ):
        pwd_hash, algo = runtime.passwords.hash_password(password)
        return runtime.store.create_user_with_password(
            email,
            pwd_hash,
            algo,
            tenant_id=tenant_id or default_tenant.id,
            role=role,
            status=status,
            first_name="Test",
            last_name="Member",
        )

    return _make


@pytest.fixture
def login(client):
    def _login(email="member@example.com", password=TEST_PASSWORD):
        response = client.post("/api/auth/login", json={"email": email, "password": password})
        assert response.status_code == 200, response.text
        return response.json()

    return _login


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
