"""Tests for Google OAuth token management and the calendar/OAuth routes.

Provider endpoints are answered by ``httpx.MockTransport``; every request
the service makes is recorded so tests can count token refreshes.
"""

from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from fitos_auth.service.google_calendar import (
    CALENDAR_EVENTS_URL,
    GOOGLE_TOKEN_URL,
    TOKEN_MISSING_MESSAGE,
)
from fitos_auth.service.tokens import OAUTH_STATE_CALENDAR, OAUTH_STATE_SIGN_IN
from fitos_auth.storage.models import UserRole, utcnow

TEST_PASSWORD = "TestPassword123!"


class FakeGoogle:
    """Scriptable stand-in for the OAuth token endpoint and Calendar API."""

    def __init__(self):
        self.requests = []
        self.token_reply = (
            200,
            {"access_token": "fresh-access", "expires_in": 3600, "scope": "calendar"},
        )
        self.calendar_reply = (200, {"items": []})

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status, body = (
            self.token_reply if str(request.url) == GOOGLE_TOKEN_URL else self.calendar_reply
        )
        return httpx.Response(status, json=body)

    def token_calls(self):
        return [
            parse_qs(r.content.decode())
            for r in self.requests
            if str(r.url) == GOOGLE_TOKEN_URL
        ]


@pytest.fixture
def google():
    return FakeGoogle()


@pytest.fixture
def http_transport(google):
    return httpx.MockTransport(google)


@pytest.fixture
def calendar(runtime):
    return runtime.calendar


@pytest.fixture
def trainer(make_user):
    return make_user("coach@example.com", role=UserRole.TRAINER)


@pytest.fixture
def trainer_headers(trainer, login):
    session = login("coach@example.com", TEST_PASSWORD)
    return {"Authorization": f"Bearer {session['accessToken']}"}


def _store_token(runtime, user, *, access="stored-access", refresh="stored-refresh", expires_at=None):
    return runtime.store.upsert_calendar_token(
        user.id,
        user.tenant_id,
        access_token=access,
        refresh_token=refresh,
        expires_at=expires_at,
        scope="calendar",
    )


class TestTokenLifecycle:
    async def test_valid_token_is_returned_without_provider_call(
        self, calendar, runtime, trainer, google
    ):
        _store_token(runtime, trainer, expires_at=utcnow() + timedelta(minutes=30))

        token = await calendar.get_valid_token(trainer.id, trainer.tenant_id)

        assert token == "stored-access"
        assert google.requests == []

    async def test_expired_token_is_refreshed_exactly_once(
        self, calendar, runtime, trainer, google
    ):
        _store_token(runtime, trainer, expires_at=utcnow() - timedelta(minutes=5))

        token = await calendar.get_valid_token(trainer.id, trainer.tenant_id)

        assert token == "fresh-access"
        calls = google.token_calls()
        assert len(calls) == 1
        assert calls[0]["grant_type"] == ["refresh_token"]
        assert calls[0]["refresh_token"] == ["stored-refresh"]

        stored = runtime.store.get_calendar_token(trainer.id, trainer.tenant_id)
        assert stored.access_token == "fresh-access"
        assert stored.refresh_token == "stored-refresh"
        assert stored.expires_at > utcnow()

        # the persisted token is now valid, so no further refresh happens
        assert await calendar.get_valid_token(trainer.id, trainer.tenant_id) == "fresh-access"
        assert len(google.token_calls()) == 1

    async def test_expired_token_without_refresh_token_needs_reconnect(
        self, calendar, runtime, trainer, google
    ):
        _store_token(runtime, trainer, refresh=None, expires_at=utcnow() - timedelta(minutes=5))

        assert await calendar.get_valid_token(trainer.id, trainer.tenant_id) is None
        assert google.requests == []

    async def test_refresh_failure_returns_none(self, calendar, runtime, trainer, google):
        google.token_reply = (400, {"error": "invalid_grant"})
        _store_token(runtime, trainer, expires_at=utcnow() - timedelta(minutes=5))

        assert await calendar.get_valid_token(trainer.id, trainer.tenant_id) is None
        assert len(google.token_calls()) == 1

    async def test_missing_token(self, calendar, trainer, google):
        assert await calendar.get_valid_token(trainer.id, trainer.tenant_id) is None
        assert not await calendar.is_connected(trainer.id, trainer.tenant_id)
        assert google.requests == []

    async def test_callback_exchanges_code_and_stores_tokens(
        self, calendar, runtime, trainer, google
    ):
        google.token_reply = (
            200,
            {"access_token": "a1", "refresh_token": "r1", "expires_in": 3599},
        )
        state = runtime.tokens.sign_state(
            {"userId": trainer.id, "tenantId": trainer.tenant_id}, purpose=OAUTH_STATE_CALENDAR
        )

        outcome = await calendar.handle_callback("auth-code", state)

        assert outcome["success"] is True
        assert outcome["userId"] == trainer.id
        calls = google.token_calls()
        assert calls[0]["grant_type"] == ["authorization_code"]
        assert calls[0]["code"] == ["auth-code"]
        stored = runtime.store.get_calendar_token(trainer.id, trainer.tenant_id)
        assert (stored.access_token, stored.refresh_token) == ("a1", "r1")

    async def test_callback_rejects_forged_state(self, calendar, google):
        outcome = await calendar.handle_callback("auth-code", "forged.state")

        assert outcome["success"] is False
        assert google.requests == []

    async def test_event_operations_report_missing_token(self, calendar, trainer, google):
        result = await calendar.create_event(trainer.id, trainer.tenant_id, {"summary": "x"})

        assert result == {
            "success": False,
            "message": TOKEN_MISSING_MESSAGE,
            "reconnectRequired": True,
        }

    async def test_calendar_api_error_does_not_raise(self, calendar, runtime, trainer, google):
        _store_token(runtime, trainer)
        google.calendar_reply = (500, {"error": "backend"})

        result = await calendar.delete_event(trainer.id, trainer.tenant_id, "evt-1")

        assert result["success"] is False
        assert "reconnectRequired" not in result

    def test_auth_url_requests_offline_access(self, calendar, runtime):
        url = calendar.get_auth_url("user-1", "tenant-1")
        query = parse_qs(urlparse(url).query)

        assert query["access_type"] == ["offline"]
        assert query["prompt"] == ["consent"]
        assert query["client_id"] == ["client-id"]
        assert runtime.tokens.parse_state(query["state"][0], purpose=OAUTH_STATE_CALENDAR) == {
            "userId": "user-1",
            "tenantId": "tenant-1",
        }


class TestCalendarRoutes:
    def test_routes_require_authentication(self, client):
        response = client.get("/api/calendar/status")
        assert response.status_code == 401

    def test_clients_are_forbidden(self, client, make_user, login):
        make_user("member@example.com")
        session = login()

        response = client.get(
            "/api/calendar/status",
            headers={"Authorization": f"Bearer {session['accessToken']}"},
        )

        assert response.status_code == 403
        assert response.json()["error"] == "INSUFFICIENT_PERMISSIONS"

    def test_status_and_disconnect(self, client, runtime, trainer, trainer_headers):
        assert client.get("/api/calendar/status", headers=trainer_headers).json() == {
            "success": True,
            "connected": False,
        }

        _store_token(runtime, trainer)
        assert client.get("/api/calendar/status", headers=trainer_headers).json()["connected"]

        response = client.delete("/api/calendar/connection", headers=trainer_headers)
        assert response.status_code == 200
        assert runtime.store.get_calendar_token(trainer.id, trainer.tenant_id) is None

    def test_events_without_connection(self, client, trainer_headers):
        response = client.get("/api/calendar/events", headers=trainer_headers)

        assert response.status_code == 400
        assert response.json()["error"] == "CALENDAR_NOT_CONNECTED"
        assert response.json()["message"] == TOKEN_MISSING_MESSAGE

    def test_create_event(self, client, runtime, trainer, trainer_headers, google):
        _store_token(runtime, trainer)
        google.calendar_reply = (200, {"id": "evt-1", "summary": "Session"})

        response = client.post(
            "/api/calendar/events",
            headers=trainer_headers,
            json={
                "summary": "Session",
                "start": {"dateTime": "2026-03-01T10:00:00+00:00", "timeZone": "UTC"},
                "end": {"dateTime": "2026-03-01T11:00:00+00:00"},
                "attendees": ["client@example.com"],
            },
        )

        assert response.status_code == 201
        assert response.json()["eventId"] == "evt-1"
        sent = google.requests[-1]
        assert str(sent.url) == CALENDAR_EVENTS_URL
        assert sent.headers["Authorization"] == "Bearer stored-access"

    def test_event_end_must_follow_start(self, client, trainer_headers):
        response = client.post(
            "/api/calendar/events",
            headers=trainer_headers,
            json={
                "summary": "Backwards",
                "start": {"dateTime": "2026-03-01T11:00:00+00:00"},
                "end": {"dateTime": "2026-03-01T10:00:00+00:00"},
            },
        )
        assert response.status_code == 400
        assert response.json()["error"] == "VALIDATION_ERROR"

    def test_provider_failure_maps_to_502(self, client, runtime, trainer, trainer_headers, google):
        _store_token(runtime, trainer)
        google.calendar_reply = (503, None)

        response = client.delete("/api/calendar/events/evt-1", headers=trainer_headers)

        assert response.status_code == 502
        assert response.json()["error"] == "CALENDAR_REQUEST_FAILED"

    def test_calendar_callback_redirects_to_settings(self, client, runtime, trainer, google):
        state = runtime.tokens.sign_state(
            {"userId": trainer.id, "tenantId": trainer.tenant_id}, purpose=OAUTH_STATE_CALENDAR
        )

        response = client.get(
            "/api/calendar/callback",
            params={"code": "auth-code", "state": state},
            follow_redirects=False,
        )

        assert response.status_code == 302
        assert response.headers["location"] == (
            "http://frontend.test/settings/calendar?connected=true"
        )

    def test_calendar_callback_redirects_when_storage_fails(
        self, client, runtime, trainer, google, monkeypatch
    ):
        def _broken_upsert(*args, **kwargs):
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(runtime.store, "upsert_calendar_token", _broken_upsert)
        state = runtime.tokens.sign_state(
            {"userId": trainer.id, "tenantId": trainer.tenant_id}, purpose=OAUTH_STATE_CALENDAR
        )

        response = client.get(
            "/api/calendar/callback",
            params={"code": "auth-code", "state": state},
            follow_redirects=False,
        )

        assert response.status_code == 302
        assert response.headers["location"] == (
            "http://frontend.test/settings/calendar?connected=false"
        )

    def test_calendar_callback_rejects_sign_in_state(self, client, runtime, trainer, google):
        state = runtime.tokens.sign_state(
            {"userId": trainer.id, "tenantId": trainer.tenant_id}, purpose=OAUTH_STATE_SIGN_IN
        )

        response = client.get(
            "/api/calendar/callback",
            params={"code": "auth-code", "state": state},
            follow_redirects=False,
        )

        assert response.headers["location"].endswith("connected=false")
        assert google.requests == []


class TestGoogleSignIn:
    def test_auth_url_requires_tenant(self, client):
        response = client.get("/api/auth/google")
        assert response.status_code == 400
        assert response.json()["error"] == "TENANT_REQUIRED"

    def test_auth_url_carries_signed_state(self, client, runtime, default_tenant):
        response = client.get("/api/auth/google", params={"tenantId": default_tenant.id})

        assert response.status_code == 200
        query = parse_qs(urlparse(response.json()["authUrl"]).query)
        assert query["redirect_uri"] == ["http://localhost:8000/api/auth/google/callback"]
        state = runtime.tokens.parse_state(query["state"][0], purpose=OAUTH_STATE_SIGN_IN)
        assert state["tenantId"] == default_tenant.id

    def test_callback_without_code_is_a_bad_request(self, client):
        response = client.get("/api/auth/google/callback", params={"state": "s"})

        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_CALLBACK"

    def test_callback_for_placeholder_user_redirects_to_error(
        self, client, runtime, default_tenant, google
    ):
        state = runtime.tokens.sign_state(
            {"userId": "temp", "tenantId": default_tenant.id}, purpose=OAUTH_STATE_SIGN_IN
        )

        response = client.get(
            "/api/auth/google/callback",
            params={"code": "auth-code", "state": state},
            follow_redirects=False,
        )

        assert response.status_code == 302
        assert response.headers["location"] == "http://frontend.test/auth/google-error"

    def test_callback_signs_in_existing_user(self, client, runtime, trainer, google):
        state = runtime.tokens.sign_state(
            {"userId": trainer.id, "tenantId": trainer.tenant_id}, purpose=OAUTH_STATE_SIGN_IN
        )

        response = client.get(
            "/api/auth/google/callback",
            params={"code": "auth-code", "state": state},
            follow_redirects=False,
        )

        assert response.status_code == 302
        location = urlparse(response.headers["location"])
        assert location.path == "/auth/google-success"
        query = parse_qs(location.query)
        claims = runtime.tokens.decode_access_token(query["token"][0])
        assert claims["sub"] == trainer.id
        assert runtime.tokens.validate_refresh_token(query["refresh"][0]) is not None

    def test_calendar_state_does_not_sign_in(self, client, runtime, trainer, google):
        state = runtime.tokens.sign_state(
            {"userId": trainer.id, "tenantId": trainer.tenant_id}, purpose=OAUTH_STATE_CALENDAR
        )

        response = client.get(
            "/api/auth/google/callback",
            params={"code": "auth-code", "state": state},
            follow_redirects=False,
        )

        assert response.status_code == 302
        assert response.headers["location"] == "http://frontend.test/auth/google-error"
        assert google.requests == []

    def test_create_user(self, client, runtime, default_tenant):
        response = client.post(
            "/api/auth/google/create-user",
            json={
                "email": "new@example.com",
                "name": "Alex Morgan",
                "googleId": "google-123",
                "tenantId": default_tenant.id,
            },
        )

        assert response.status_code == 200
        data = response.json()
        assert data["redirectTo"] == "/client/workouts"
        assert data["user"]["firstName"] == "Alex"
        assert data["user"]["lastName"] == "Morgan"
        assert data["user"]["emailVerified"] is True
        assert runtime.store.get_password_record(data["user"]["id"]) is None

    def test_create_user_conflicts(self, client, make_user, default_tenant):
        make_user("member@example.com")
        body = {
            "email": "member@example.com",
            "name": "Someone",
            "googleId": "g-1",
            "tenantId": default_tenant.id,
        }

        exists = client.post("/api/auth/google/create-user", json=body)
        missing = client.post(
            "/api/auth/google/create-user", json={**body, "email": "x@example.com", "tenantId": "nope"}
        )
        incomplete = client.post("/api/auth/google/create-user", json={"email": "y@example.com"})

        assert (exists.status_code, exists.json()["error"]) == (409, "USER_EXISTS")
        assert (missing.status_code, missing.json()["error"]) == (404, "TENANT_NOT_FOUND")
        assert (incomplete.status_code, incomplete.json()["error"]) == (400, "MISSING_DATA")
