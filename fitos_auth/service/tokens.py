from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from datetime import timedelta
from typing import Any, Optional, Protocol

from fitos_auth.config import Settings, parse_expiration
from fitos_auth.logging import get_logger
from fitos_auth.service.errors import AuthenticationError
from fitos_auth.storage.models import RefreshToken, User, utcnow

logger = get_logger(__name__)

__all__ = [
    "OAUTH_STATE_CALENDAR",
    "OAUTH_STATE_SIGN_IN",
    "TokenIssuer",
    "parse_expiration",
]

OAUTH_STATE_SIGN_IN = "google_sign_in"
OAUTH_STATE_CALENDAR = "calendar_connect"
OAUTH_STATE_TTL_SECONDS = 600


class RefreshTokenStore(Protocol):
    def create_refresh_token(self, user_id: str, token: str, expires_at) -> RefreshToken: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def consume_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def delete_refresh_token(self, token: str) -> None: ...

    def delete_user_refresh_tokens(self, user_id: str) -> int: ...


class TokenIssuer:
    """Signs access tokens and manages opaque refresh and verification tokens.

    Access tokens are HS256 JWTs carrying identity, role and tenant claims.
    Refresh tokens are random strings persisted with an expiry. Verification
    tokens (password reset, email confirmation) are separate random secrets
    and never pass through the JWT signer.
    """

    def __init__(self, settings: Settings, store: RefreshTokenStore) -> None:
        self.settings = settings
        self.store = store
        self.access_ttl_seconds = parse_expiration(settings.jwt_access_expires_in)
        self.refresh_ttl_seconds = parse_expiration(settings.jwt_refresh_expires_in)
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=120)

    # access tokens
    def generate_access_token(self, user: User, *, session_id: str | None = None) -> str:
        now = int(time.time())
        payload: dict[str, Any] = {
            "sub": user.id,
            "userId": user.id,
            "email": user.email,
            "role": user.role.value,
            "tenantId": user.tenant_id or self.settings.default_tenant_id,
            "token_type": "access",
            "iat": now,
            "exp": now + self.access_ttl_seconds,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
        }
        if session_id:
            payload["sid"] = session_id
        return self._encode_jwt(payload)

    def decode_access_token(self, token: str) -> dict[str, Any]:
        """Return verified access-token claims or raise ``AuthenticationError``.

        An otherwise valid token past its ``exp`` raises ``TOKEN_EXPIRED``;
        everything else raises ``INVALID_TOKEN``.
        """
        payload = self._decode_jwt(token)
        if payload is None:
            unverified = self._decode_jwt(token, verify_exp=False)
            if unverified is not None and unverified.get("exp"):
                raise AuthenticationError("token expired", error_code="TOKEN_EXPIRED")
            raise AuthenticationError("invalid token", error_code="INVALID_TOKEN")
        if payload.get("token_type") != "access" or not payload.get("sub"):
            raise AuthenticationError("invalid token", error_code="INVALID_TOKEN")
        return payload

    # refresh tokens
    def create_refresh_token(self, user_id: str) -> RefreshToken:
        expires_at = utcnow() + timedelta(seconds=self.refresh_ttl_seconds)
        return self.store.create_refresh_token(
            user_id, secrets.token_urlsafe(48), expires_at
        )

    def validate_refresh_token(self, token: str) -> Optional[RefreshToken]:
        if not token:
            return None
        record = self.store.get_refresh_token(token)
        if not record or record.is_expired():
            return None
        return record

    def consume_refresh_token(self, token: str) -> Optional[RefreshToken]:
        if not token:
            return None
        return self.store.consume_refresh_token(token)

    def delete_refresh_token(self, token: str) -> None:
        self.store.delete_refresh_token(token)

    def delete_user_refresh_tokens(self, user_id: str) -> int:
        return self.store.delete_user_refresh_tokens(user_id)

    @staticmethod
    def new_verification_token() -> str:
        return secrets.token_urlsafe(32)

    # signed OAuth state
    def sign_state(
        self, data: dict[str, Any], *, purpose: str, ttl_seconds: int = OAUTH_STATE_TTL_SECONDS
    ) -> str:
        payload = {**data, "purpose": purpose, "exp": int(time.time()) + ttl_seconds}
        body = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        return f"{body}.{self._sign(body)}"

    def parse_state(self, state: str, *, purpose: str) -> Optional[dict[str, Any]]:
        """Verified state data, or None when forged, expired or minted for another flow."""
        try:
            body, signature = state.split(".")
        except (AttributeError, ValueError):
            return None
        if not hmac.compare_digest(self._sign(body), signature):
            logger.warning("oauth_state_signature_mismatch")
            return None
        try:
            data = json.loads(self._decode_segment(body))
        except (ValueError, UnicodeDecodeError):
            return None
        if not isinstance(data, dict):
            return None
        if data.pop("purpose", None) != purpose:
            logger.warning("oauth_state_purpose_mismatch", expected=purpose)
            return None
        exp = data.pop("exp", None)
        if not isinstance(exp, (int, float)) or exp <= time.time():
            logger.warning("oauth_state_expired")
            return None
        return data

    # JWT internals
    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(
        self, token: str, *, verify_exp: bool = True
    ) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None

        # Reject anything but HS256 so "none" or RSA headers cannot be smuggled in
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        valid_aud = False
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        if not valid_aud:
            return None
        if not verify_exp:
            return payload
        exp = payload.get("exp")
        if not exp:
            return None
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload
