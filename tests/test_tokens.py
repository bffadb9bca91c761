"""Tests for access-token signing, refresh tokens, OAuth state and durations."""

import time
from datetime import timedelta

import pytest

from fitos_auth.config import Settings, parse_expiration
from fitos_auth.service.errors import AuthenticationError
from fitos_auth.service.tokens import OAUTH_STATE_CALENDAR, OAUTH_STATE_SIGN_IN, TokenIssuer
from fitos_auth.storage.memory import MemoryStore
from fitos_auth.storage.models import UserRole, utcnow


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def tenant(memory_store):
    return memory_store.create_tenant("default", tenant_id="tenant-1")


@pytest.fixture
def user(memory_store, tenant):
    return memory_store.create_user(
        "coach@example.com", tenant_id=tenant.id, role=UserRole.TRAINER
    )


@pytest.fixture
def issuer(settings, memory_store):
    return TokenIssuer(settings, memory_store)


class TestParseExpiration:
    @pytest.mark.parametrize(
        "value,seconds",
        [
            ("30s", 30),
            ("15m", 900),
            ("1h", 3600),
            ("7d", 604800),
            ("2w", 1209600),
            ("1M", 2592000),
            ("1y", 31536000),
        ],
    )
    def test_valid_durations(self, value, seconds):
        assert parse_expiration(value) == seconds

    @pytest.mark.parametrize("value", ["", "10", "m5", "10x", "1.5h", "-1h", "1 h"])
    def test_invalid_durations_raise(self, value):
        with pytest.raises(ValueError):
            parse_expiration(value)

    def test_settings_reject_bad_duration_at_load(self):
        with pytest.raises(ValueError):
            Settings(jwt_secret="secret", jwt_access_expires_in="forever")

    def test_settings_require_secret_outside_test_mode(self):
        with pytest.raises(ValueError):
            Settings(test_mode=False)

    def test_settings_generate_secret_in_test_mode(self):
        settings = Settings(test_mode=True)
        assert settings.jwt_secret
        assert settings.access_token_ttl_seconds == 3600
        assert settings.refresh_token_ttl_seconds == 7 * 24 * 3600


class TestAccessTokens:
    def test_claims_carry_identity_role_and_tenant(self, issuer, user):
        token = issuer.generate_access_token(user, session_id="sess-1")
        claims = issuer.decode_access_token(token)

        assert claims["sub"] == user.id
        assert claims["userId"] == user.id
        assert claims["email"] == "coach@example.com"
        assert claims["role"] == "TRAINER"
        assert claims["tenantId"] == "tenant-1"
        assert claims["sid"] == "sess-1"
        assert claims["token_type"] == "access"
        assert claims["exp"] - claims["iat"] == issuer.access_ttl_seconds

    def test_token_without_session_has_no_sid(self, issuer, user):
        claims = issuer.decode_access_token(issuer.generate_access_token(user))
        assert "sid" not in claims

    def test_expired_token_reports_token_expired(self, issuer, user, settings):
        now = int(time.time())
        token = issuer._encode_jwt(
            {
                "sub": user.id,
                "token_type": "access",
                "iat": now - 7200,
                "exp": now - 3600,
                "iss": settings.jwt_issuer,
                "aud": settings.jwt_audience,
            }
        )
        with pytest.raises(AuthenticationError) as excinfo:
            issuer.decode_access_token(token)
        assert excinfo.value.error_code == "TOKEN_EXPIRED"
        assert excinfo.value.status_code == 401

    def test_recently_expired_token_is_within_leeway(self, issuer, user, settings):
        now = int(time.time())
        token = issuer._encode_jwt(
            {
                "sub": user.id,
                "token_type": "access",
                "iat": now - 3600,
                "exp": now - 30,
                "iss": settings.jwt_issuer,
                "aud": settings.jwt_audience,
            }
        )
        assert issuer.decode_access_token(token)["sub"] == user.id

    def test_tampered_signature_is_invalid(self, issuer, user):
        token = issuer.generate_access_token(user)
        header, payload, signature = token.split(".")
        forged = f"{header}.{payload}.{signature[:-2]}xx"
        with pytest.raises(AuthenticationError) as excinfo:
            issuer.decode_access_token(forged)
        assert excinfo.value.error_code == "INVALID_TOKEN"

    def test_other_secret_is_invalid(self, settings, memory_store, user):
        other = TokenIssuer(
            settings.model_copy(update={"jwt_secret": "another-secret"}), memory_store
        )
        token = other.generate_access_token(user)
        with pytest.raises(AuthenticationError) as excinfo:
            TokenIssuer(settings, memory_store).decode_access_token(token)
        assert excinfo.value.error_code == "INVALID_TOKEN"

    def test_wrong_audience_is_invalid(self, settings, memory_store, user):
        other = TokenIssuer(
            settings.model_copy(update={"jwt_audience": "someone-else"}), memory_store
        )
        token = other.generate_access_token(user)
        with pytest.raises(AuthenticationError) as excinfo:
            TokenIssuer(settings, memory_store).decode_access_token(token)
        assert excinfo.value.error_code == "INVALID_TOKEN"

    def test_none_algorithm_is_rejected(self, issuer, user):
        token = issuer.generate_access_token(user)
        _, payload, signature = token.split(".")
        header = issuer._encode_segment(b'{"alg":"none","typ":"JWT"}')
        with pytest.raises(AuthenticationError):
            issuer.decode_access_token(f"{header}.{payload}.{signature}")

    def test_non_access_token_type_is_rejected(self, issuer, user, settings):
        now = int(time.time())
        token = issuer._encode_jwt(
            {
                "sub": user.id,
                "token_type": "refresh",
                "iat": now,
                "exp": now + 60,
                "iss": settings.jwt_issuer,
                "aud": settings.jwt_audience,
            }
        )
        with pytest.raises(AuthenticationError) as excinfo:
            issuer.decode_access_token(token)
        assert excinfo.value.error_code == "INVALID_TOKEN"

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d"])
    def test_malformed_tokens_are_invalid(self, issuer, garbage):
        with pytest.raises(AuthenticationError) as excinfo:
            issuer.decode_access_token(garbage)
        assert excinfo.value.error_code == "INVALID_TOKEN"


class TestRefreshTokens:
    def test_refresh_tokens_are_unique_and_persisted(self, issuer, user):
        first = issuer.create_refresh_token(user.id)
        second = issuer.create_refresh_token(user.id)

        assert first.token != second.token
        assert len(first.token) >= 64
        assert issuer.validate_refresh_token(first.token).user_id == user.id

    def test_consume_is_single_use(self, issuer, user):
        record = issuer.create_refresh_token(user.id)

        assert issuer.consume_refresh_token(record.token).user_id == user.id
        assert issuer.consume_refresh_token(record.token) is None
        assert issuer.validate_refresh_token(record.token) is None

    def test_expired_refresh_token_is_not_valid(self, issuer, memory_store, user):
        memory_store.create_refresh_token(user.id, "stale-token", utcnow() - timedelta(seconds=1))

        assert issuer.validate_refresh_token("stale-token") is None
        assert issuer.consume_refresh_token("stale-token") is None

    def test_delete_user_refresh_tokens(self, issuer, user):
        issuer.create_refresh_token(user.id)
        issuer.create_refresh_token(user.id)

        assert issuer.delete_user_refresh_tokens(user.id) == 2

    def test_verification_tokens_are_random(self):
        assert TokenIssuer.new_verification_token() != TokenIssuer.new_verification_token()


class TestOAuthState:
    def test_state_round_trip(self, issuer):
        state = issuer.sign_state({"userId": "u1", "tenantId": "t1"}, purpose=OAUTH_STATE_CALENDAR)
        assert issuer.parse_state(state, purpose=OAUTH_STATE_CALENDAR) == {
            "userId": "u1",
            "tenantId": "t1",
        }

    def test_tampered_state_is_rejected(self, issuer):
        state = issuer.sign_state({"userId": "u1", "tenantId": "t1"}, purpose=OAUTH_STATE_CALENDAR)
        body, signature = state.split(".")
        forged_body = issuer._encode_segment(b'{"userId":"admin","tenantId":"t1"}')

        forged = f"{forged_body}.{signature}"
        assert issuer.parse_state(forged, purpose=OAUTH_STATE_CALENDAR) is None
        assert issuer.parse_state(body, purpose=OAUTH_STATE_CALENDAR) is None
        assert issuer.parse_state("", purpose=OAUTH_STATE_CALENDAR) is None

    def test_state_is_bound_to_its_flow(self, issuer):
        state = issuer.sign_state({"userId": "u1", "tenantId": "t1"}, purpose=OAUTH_STATE_CALENDAR)

        assert issuer.parse_state(state, purpose=OAUTH_STATE_SIGN_IN) is None

    def test_expired_state_is_rejected(self, issuer, monkeypatch):
        state = issuer.sign_state(
            {"userId": "u1", "tenantId": "t1"}, purpose=OAUTH_STATE_SIGN_IN, ttl_seconds=60
        )
        later = time.time() + 61
        monkeypatch.setattr(time, "time", lambda: later)

        assert issuer.parse_state(state, purpose=OAUTH_STATE_SIGN_IN) is None
