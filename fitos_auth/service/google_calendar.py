from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional, Protocol
from urllib.parse import urlencode

import httpx

from fitos_auth.config import Settings
from fitos_auth.logging import get_logger
from fitos_auth.service.tokens import OAUTH_STATE_CALENDAR, TokenIssuer
from fitos_auth.storage.errors import ConstraintViolation
from fitos_auth.storage.models import GoogleCalendarToken, utcnow

logger = get_logger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
CALENDAR_EVENTS_URL = "https://www.googleapis.com/calendar/v3/calendars/primary/events"
CALENDAR_SCOPES = (
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
)
TOKEN_MISSING_MESSAGE = "Google Calendar token not found or expired"


class CalendarTokenStore(Protocol):
    def get_calendar_token(self, user_id: str, tenant_id: str) -> Optional[GoogleCalendarToken]: ...

    def upsert_calendar_token(
        self,
        user_id: str,
        tenant_id: str,
        *,
        access_token: str,
        refresh_token: str | None,
        expires_at: datetime | None,
        scope: str | None,
    ) -> GoogleCalendarToken: ...

    def update_calendar_access_token(
        self, token_id: str, access_token: str, expires_at: datetime | None
    ) -> Optional[GoogleCalendarToken]: ...

    def delete_calendar_token(self, user_id: str, tenant_id: str) -> bool: ...


class GoogleCalendarService:
    """Google OAuth token lifecycle plus thin Calendar v3 event wrappers.

    Tokens are stored per (user, tenant). Before every Calendar call the
    stored access token is checked and, once past its expiry, refreshed with
    the stored refresh token. A token that cannot be refreshed means the user
    has to reconnect; event operations then report ``success: False``.
    """

    def __init__(
        self,
        settings: Settings,
        store: CalendarTokenStore,
        tokens: TokenIssuer,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.settings = settings
        self.store = store
        self.tokens = tokens
        self._transport = transport
        self._timeout = timeout

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._timeout, transport=self._transport, follow_redirects=False
        )

    @property
    def default_redirect_uri(self) -> str | None:
        return self.settings.google_calendar_redirect_uri or self.settings.google_redirect_uri

    def get_auth_url(
        self,
        user_id: str,
        tenant_id: str,
        *,
        redirect_uri: str | None = None,
        purpose: str = OAUTH_STATE_CALENDAR,
    ) -> str:
        state = self.tokens.sign_state(
            {"userId": user_id, "tenantId": tenant_id}, purpose=purpose
        )
        params = {
            "client_id": self.settings.google_client_id or "",
            "redirect_uri": redirect_uri or self.default_redirect_uri or "",
            "response_type": "code",
            "scope": " ".join(CALENDAR_SCOPES),
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def handle_callback(
        self,
        code: str,
        state: str,
        *,
        redirect_uri: str | None = None,
        purpose: str = OAUTH_STATE_CALENDAR,
    ) -> dict[str, Any]:
        """Exchange an authorization code and store the token pair.

        Returns ``{"success", "message"}`` plus the ``userId``/``tenantId``
        decoded from ``state`` when it verified for ``purpose``.
        """
        parsed = self.tokens.parse_state(state, purpose=purpose)
        if not parsed or not parsed.get("userId") or not parsed.get("tenantId"):
            logger.warning("calendar_callback_invalid_state")
            return {"success": False, "message": "Invalid OAuth state"}
        user_id = str(parsed["userId"])
        tenant_id = str(parsed["tenantId"])
        result: dict[str, Any] = {"userId": user_id, "tenantId": tenant_id}

        payload = await self._post_token_endpoint(
            {
                "code": code,
                "client_id": self.settings.google_client_id or "",
                "client_secret": self.settings.google_client_secret or "",
                "redirect_uri": redirect_uri or self.default_redirect_uri or "",
                "grant_type": "authorization_code",
            }
        )
        if not payload:
            return {**result, "success": False, "message": "Error connecting Google Calendar"}

        try:
            self.store.upsert_calendar_token(
                user_id,
                tenant_id,
                access_token=payload["access_token"],
                refresh_token=payload.get("refresh_token"),
                expires_at=self._expiry_from(payload),
                scope=payload.get("scope"),
            )
        except ConstraintViolation as exc:
            logger.warning("calendar_token_store_failed", detail=exc.detail)
            return {**result, "success": False, "message": "Error connecting Google Calendar"}

        logger.info("calendar_connected", user_id=user_id, tenant_id=tenant_id)
        return {
            **result,
            "success": True,
            "message": "Google Calendar connected successfully",
        }

    async def get_valid_token(self, user_id: str, tenant_id: str) -> Optional[str]:
        stored = self.store.get_calendar_token(user_id, tenant_id)
        if not stored:
            return None
        now = utcnow()
        if stored.access_token and (stored.expires_at is None or stored.expires_at > now):
            return stored.access_token
        if not stored.refresh_token:
            logger.info("calendar_token_expired_no_refresh", user_id=user_id)
            return None

        payload = await self._post_token_endpoint(
            {
                "client_id": self.settings.google_client_id or "",
                "client_secret": self.settings.google_client_secret or "",
                "refresh_token": stored.refresh_token,
                "grant_type": "refresh_token",
            }
        )
        if not payload:
            logger.warning("calendar_token_refresh_failed", user_id=user_id)
            return None
        updated = self.store.update_calendar_access_token(
            stored.id, payload["access_token"], self._expiry_from(payload)
        )
        if not updated:
            return None
        logger.info("calendar_token_refreshed", user_id=user_id)
        return updated.access_token

    async def is_connected(self, user_id: str, tenant_id: str) -> bool:
        return await self.get_valid_token(user_id, tenant_id) is not None

    def disconnect(self, user_id: str, tenant_id: str) -> bool:
        removed = self.store.delete_calendar_token(user_id, tenant_id)
        if removed:
            logger.info("calendar_disconnected", user_id=user_id, tenant_id=tenant_id)
        return removed

    async def create_event(
        self, user_id: str, tenant_id: str, event: dict[str, Any]
    ) -> dict[str, Any]:
        response = await self._calendar_call(
            user_id, tenant_id, "POST", CALENDAR_EVENTS_URL, json=event
        )
        if not response["success"]:
            return response
        data = response.pop("data") or {}
        return {
            **response,
            "message": "Event created successfully",
            "eventId": data.get("id"),
            "event": data,
        }

    async def update_event(
        self, user_id: str, tenant_id: str, event_id: str, event: dict[str, Any]
    ) -> dict[str, Any]:
        response = await self._calendar_call(
            user_id, tenant_id, "PUT", f"{CALENDAR_EVENTS_URL}/{event_id}", json=event
        )
        if not response["success"]:
            return response
        data = response.pop("data") or {}
        return {**response, "message": "Event updated successfully", "event": data}

    async def delete_event(
        self, user_id: str, tenant_id: str, event_id: str
    ) -> dict[str, Any]:
        response = await self._calendar_call(
            user_id, tenant_id, "DELETE", f"{CALENDAR_EVENTS_URL}/{event_id}"
        )
        response.pop("data", None)
        if response["success"]:
            response["message"] = "Event deleted successfully"
        return response

    async def get_calendar_events(
        self,
        user_id: str,
        tenant_id: str,
        *,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "timeMin": (time_min or utcnow()).isoformat(),
            "maxResults": 100,
            "singleEvents": "true",
            "orderBy": "startTime",
        }
        if time_max:
            params["timeMax"] = time_max.isoformat()
        response = await self._calendar_call(
            user_id, tenant_id, "GET", CALENDAR_EVENTS_URL, params=params
        )
        if not response["success"]:
            return response
        data = response.pop("data") or {}
        return {
            **response,
            "message": "Events fetched successfully",
            "events": data.get("items", []),
        }

    async def _calendar_call(
        self,
        user_id: str,
        tenant_id: str,
        method: str,
        url: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        access_token = await self.get_valid_token(user_id, tenant_id)
        if not access_token:
            return {
                "success": False,
                "message": TOKEN_MISSING_MESSAGE,
                "reconnectRequired": True,
            }
        try:
            async with self._client() as client:
                resp = await client.request(
                    method,
                    url,
                    json=json,
                    params=params,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "calendar_api_error",
                method=method,
                status=exc.response.status_code,
            )
            return {"success": False, "message": "Google Calendar request failed"}
        except httpx.HTTPError as exc:
            logger.warning("calendar_api_unreachable", method=method, error=str(exc))
            return {"success": False, "message": "Google Calendar request failed"}
        data = resp.json() if resp.content else None
        return {"success": True, "message": "ok", "data": data}

    async def _post_token_endpoint(self, form: dict[str, str]) -> Optional[dict[str, Any]]:
        try:
            async with self._client() as client:
                resp = await client.post(
                    GOOGLE_TOKEN_URL, data=form, headers={"Accept": "application/json"}
                )
                resp.raise_for_status()
                payload = resp.json()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "google_token_endpoint_error",
                grant_type=form.get("grant_type"),
                status=exc.response.status_code,
            )
            return None
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(
                "google_token_endpoint_unreachable",
                grant_type=form.get("grant_type"),
                error=str(exc),
            )
            return None
        if not isinstance(payload, dict) or not payload.get("access_token"):
            logger.warning("google_token_missing_access_token")
            return None
        return payload

    @staticmethod
    def _expiry_from(payload: dict[str, Any]) -> Optional[datetime]:
        expires_in = payload.get("expires_in")
        if expires_in is None:
            return None
        try:
            return utcnow() + timedelta(seconds=int(expires_in))
        except (TypeError, ValueError):
            return None
