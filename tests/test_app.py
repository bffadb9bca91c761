"""Tests for application wiring: health check, middleware and lifespan."""

import pytest
from fastapi.testclient import TestClient

from fitos_auth.app import create_app
from fitos_auth.config import Settings
from fitos_auth.service.auth import DEFAULT_REDIRECT, redirect_for, role_allows
from fitos_auth.service.runtime import Runtime
from fitos_auth.storage.models import UserRole


class TestHealth:
    def test_memory_store_reports_healthy(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["checks"]["database"] == {"status": "healthy", "type": "memory"}
        assert data["checks"]["redis"] == {"status": "not_configured"}
        assert data["version"]


class TestMiddleware:
    def test_correlation_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_correlation_id_is_generated(self, client):
        response = client.get("/healthz")
        assert len(response.headers["X-Request-ID"]) == 36

    def test_security_headers(self, client):
        response = client.post("/api/auth/refresh", json={})

        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "no-store" in response.headers["Cache-Control"]

    def test_cors_allows_frontend_origin(self, client):
        response = client.options(
            "/api/auth/login",
            headers={
                "Origin": "http://frontend.test",
                "Access-Control-Request-Method": "POST",
            },
        )

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "http://frontend.test"
        assert response.headers["access-control-allow-credentials"] == "true"


class TestLifespan:
    def test_startup_and_shutdown(self, app):
        with TestClient(app) as client:
            assert client.get("/healthz").status_code == 200

    def test_apps_do_not_share_state(self, settings, tmp_path):
        first = create_app(settings)
        second = create_app(
            settings.model_copy(update={"shared_fs_root": str(tmp_path / "other")})
        )

        first.state.runtime.store.create_tenant("default")

        assert second.state.runtime.store.get_tenant_by_subdomain("default") is None


class TestRuntime:
    def test_redis_is_required_outside_test_mode(self, tmp_path):
        settings = Settings(
            jwt_secret="secret",
            use_memory_store=True,
            shared_fs_root=str(tmp_path),
        )
        with pytest.raises(RuntimeError):
            Runtime(settings)

    def test_dev_fallback_allows_missing_redis(self, tmp_path):
        settings = Settings(
            jwt_secret="secret",
            use_memory_store=True,
            allow_redis_fallback_dev=True,
            shared_fs_root=str(tmp_path),
        )
        assert Runtime(settings).cache is None


class TestRoles:
    @pytest.mark.parametrize(
        "role,target",
        [
            (UserRole.SUPER_ADMIN, "/super-admin/dashboard"),
            (UserRole.OWNER, "/admin/dashboard"),
            (UserRole.ADMIN, "/admin/dashboard"),
            (UserRole.TRAINER, "/trainer/dashboard"),
            (UserRole.CLIENT, "/client/workouts"),
            ("MYSTERY", DEFAULT_REDIRECT),
            (None, DEFAULT_REDIRECT),
        ],
    )
    def test_redirects(self, role, target):
        assert redirect_for(role) == target

    def test_hierarchy(self):
        assert role_allows(UserRole.OWNER, UserRole.TRAINER)
        assert role_allows(UserRole.TRAINER, UserRole.TRAINER)
        assert not role_allows(UserRole.CLIENT, UserRole.TRAINER)
