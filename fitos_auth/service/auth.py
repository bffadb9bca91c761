from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Mapping, Optional, Protocol, Union
from urllib.parse import urlencode

from fitos_auth.config import Settings
from fitos_auth.logging import get_logger, hash_identifier
from fitos_auth.service.email import EmailService
from fitos_auth.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from fitos_auth.service.google_calendar import GoogleCalendarService
from fitos_auth.service.passwords import PasswordVerifier
from fitos_auth.service.tokens import OAUTH_STATE_SIGN_IN, TokenIssuer
from fitos_auth.storage.errors import ConstraintViolation
from fitos_auth.storage.models import (
    RefreshToken,
    Session,
    Tenant,
    User,
    UserRole,
    UserStatus,
    Verification,
    VerificationPurpose,
)
from fitos_auth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


ROLE_HIERARCHY: Mapping[UserRole, int] = {
    UserRole.SUPER_ADMIN: 5,
    UserRole.OWNER: 4,
    UserRole.ADMIN: 3,
    UserRole.TRAINER: 2,
    UserRole.CLIENT: 1,
}

DEFAULT_REDIRECT = "/dashboard"

ROLE_REDIRECTS: Mapping[UserRole, str] = {
    UserRole.SUPER_ADMIN: "/super-admin/dashboard",
    UserRole.OWNER: "/admin/dashboard",
    UserRole.ADMIN: "/admin/dashboard",
    UserRole.TRAINER: "/trainer/dashboard",
    UserRole.CLIENT: "/client/workouts",
}


def redirect_for(role: Union[UserRole, str, None]) -> str:
    """Landing page for ``role``; unknown roles get :data:`DEFAULT_REDIRECT`."""
    try:
        return ROLE_REDIRECTS.get(UserRole(role), DEFAULT_REDIRECT)
    except ValueError:
        return DEFAULT_REDIRECT


def role_allows(role: UserRole, minimum: UserRole) -> bool:
    return ROLE_HIERARCHY[role] >= ROLE_HIERARCHY[minimum]


class AuthStore(Protocol):
    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    def get_tenant_by_subdomain(self, subdomain: str) -> Optional[Tenant]: ...

    def create_user(
        self,
        email: str,
        *,
        tenant_id: str | None,
        role: UserRole = UserRole.CLIENT,
        status: UserStatus = UserStatus.ACTIVE,
        first_name: str | None = None,
        last_name: str | None = None,
        name: str | None = None,
        phone: str | None = None,
        google_id: str | None = None,
        email_verified: bool = False,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_last_login(self, user_id: str, when: datetime) -> None: ...

    def create_user_with_password(
        self,
        email: str,
        password_hash: str,
        password_algo: str,
        *,
        tenant_id: str | None,
        role: UserRole = UserRole.CLIENT,
        status: UserStatus = UserStatus.ACTIVE,
        first_name: str | None = None,
        last_name: str | None = None,
        name: str | None = None,
        phone: str | None = None,
        email_verified: bool = False,
    ) -> User: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def create_session(
        self,
        user_id: str,
        tenant_id: str | None,
        ttl_seconds: int,
        ip_addr: str | None = None,
        user_agent: str | None = None,
    ) -> Session: ...

    def delete_session(self, session_id: str) -> None: ...

    def delete_user_sessions(self, user_id: str) -> int: ...

    def create_refresh_token(self, user_id: str, token: str, expires_at: datetime) -> RefreshToken: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def consume_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def delete_refresh_token(self, token: str) -> None: ...

    def delete_user_refresh_tokens(self, user_id: str) -> int: ...

    def create_verification(self, verification: Verification) -> Verification: ...

    def get_verification(
        self, value: str, purpose: VerificationPurpose
    ) -> Optional[Verification]: ...

    def apply_password_reset(
        self, verification_id: str, user_id: str, password_hash: str, password_algo: str
    ) -> bool: ...

    def apply_email_verification(self, verification_id: str, user_id: str) -> bool: ...

    def delete_expired(self, now: datetime) -> dict[str, int]: ...


@dataclass(frozen=True)
class AuthContext:
    """Identity attached to an authenticated request."""

    user_id: str
    email: str
    role: UserRole
    tenant_id: Optional[str]
    session_id: Optional[str] = None


@dataclass
class AuthResult:
    user: User
    access_token: str
    refresh_token: str
    expires_in: int
    session: Optional[Session] = None

    @property
    def redirect_to(self) -> str:
        return redirect_for(self.user.role)


class AuthService:
    """Login, signup, token rotation and account recovery flows.

    Each flow reads and mutates persisted records only; nothing about a
    user's authentication state is kept in this object apart from the login
    lockout fallback used when Redis is not configured.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[Union[RedisCache, SyncRedisCache]],
        settings: Settings,
        *,
        tokens: TokenIssuer,
        passwords: PasswordVerifier,
        email_service: EmailService,
        calendar: GoogleCalendarService,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.tokens = tokens
        self.passwords = passwords
        self.email_service = email_service
        self.calendar = calendar
        self.logger = logger
        self._state_lock = threading.Lock()
        self._login_attempts: dict[str, tuple[int, datetime]] = {}
        self._login_lockouts: dict[str, datetime] = {}

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # -- sessions and tokens -------------------------------------------------

    def _start_session(
        self, user: User, *, ip_addr: str | None, user_agent: str | None
    ) -> AuthResult:
        session = self.store.create_session(
            user.id,
            user.tenant_id,
            self.settings.session_ttl_seconds,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        access_token = self.tokens.generate_access_token(user, session_id=session.id)
        refresh = self.tokens.create_refresh_token(user.id)
        return AuthResult(
            user=user,
            access_token=access_token,
            refresh_token=refresh.token,
            expires_in=self.tokens.access_ttl_seconds,
            session=session,
        )

    def _record_login(self, user: User) -> None:
        now = self._now()
        try:
            self.store.update_last_login(user.id, now)
        except Exception as exc:
            self.logger.warning("last_login_update_failed", user_id=user.id, error=str(exc))
            return
        user.last_login = now

    # -- login ---------------------------------------------------------------

    async def login(
        self,
        email: str,
        password: str,
        *,
        ip_addr: str | None = None,
        user_agent: str | None = None,
    ) -> AuthResult:
        subject = ip_addr or "unknown"
        if await self._is_locked_out(subject):
            self.logger.warning("login_locked_out", ip_addr=subject)
            raise RateLimitedError(
                "Too many login attempts, please try again later",
                error_code="RATE_LIMIT_EXCEEDED",
            )

        user = self.store.get_user_by_email(email)
        if not user:
            await self._record_login_failure(subject)
            self.logger.info("login_failed", reason="unknown_email", email_hash=hash_identifier(email))
            raise self._invalid_credentials()
        if not user.is_active:
            self.logger.info("login_failed", reason="inactive", user_id=user.id)
            raise AuthenticationError("Account is not active", error_code="USER_INACTIVE")

        record = self.store.get_password_record(user.id)
        stored_hash = record[0] if record else None
        if not self.passwords.compare_password(password, stored_hash):
            await self._record_login_failure(subject)
            self.logger.info("login_failed", reason="bad_password", user_id=user.id)
            raise self._invalid_credentials()

        await self._clear_login_failures(subject)
        result = self._start_session(user, ip_addr=ip_addr, user_agent=user_agent)
        self._record_login(user)
        self.logger.info("login_succeeded", user_id=user.id, role=user.role.value)
        return result

    @staticmethod
    def _invalid_credentials() -> AuthenticationError:
        return AuthenticationError(
            "Invalid email or password", error_code="INVALID_CREDENTIALS"
        )

    async def _is_locked_out(self, subject: str) -> bool:
        if self.cache:
            return await self.cache.check_login_lockout(subject)
        now = self._now()
        with self._state_lock:
            locked_until = self._login_lockouts.get(subject)
            if locked_until and locked_until > now:
                return True
            if locked_until:
                self._login_lockouts.pop(subject, None)
        return False

    async def _record_login_failure(self, subject: str) -> None:
        max_attempts = self.settings.max_login_attempts
        lockout_seconds = self.settings.login_lockout_seconds
        if self.cache:
            locked, attempts = await self.cache.record_login_failure(
                subject, max_attempts, lockout_seconds
            )
            if locked and attempts >= 0:
                self.logger.warning("login_lockout_triggered", ip_addr=subject, attempts=attempts)
            return
        now = self._now()
        window = timedelta(seconds=lockout_seconds)
        with self._state_lock:
            attempts = 1
            window_start = now
            current = self._login_attempts.get(subject)
            if current:
                count, previous_start = current
                if now - previous_start < window:
                    attempts = count + 1
                    window_start = previous_start
            if attempts >= max_attempts:
                self._login_lockouts[subject] = now + window
                self._login_attempts.pop(subject, None)
                self.logger.warning("login_lockout_triggered", ip_addr=subject, attempts=attempts)
            else:
                self._login_attempts[subject] = (attempts, window_start)

    async def _clear_login_failures(self, subject: str) -> None:
        if self.cache:
            await self.cache.clear_login_attempts(subject)
            return
        with self._state_lock:
            self._login_attempts.pop(subject, None)

    # -- signup and tenancy --------------------------------------------------

    def resolve_tenant_id(self, tenant_id: str | None) -> str:
        """Explicit tenant if it exists, else the default-subdomain tenant.

        Without a tenant on the default subdomain the configured literal id
        (``default-tenant``) is returned unchecked.
        """
        if tenant_id:
            tenant = self.store.get_tenant(tenant_id)
            if not tenant:
                raise ValidationError("Tenant not found", error_code="TENANT_NOT_FOUND")
            return tenant.id
        default = self.store.get_tenant_by_subdomain(self.settings.default_tenant_subdomain)
        if default:
            return default.id
        return self.settings.default_tenant_id

    def check_new_password(self, password: str, confirm_password: str | None) -> None:
        if password != confirm_password:
            raise ValidationError(
                "Passwords do not match", error_code="PASSWORDS_DO_NOT_MATCH"
            )
        report = self.passwords.validate_password(password)
        if not report.is_valid:
            raise ValidationError(
                "Password does not meet security requirements",
                error_code="PASSWORD_TOO_WEAK",
                detail=report.as_details(),
            )

    async def signup(
        self,
        *,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        confirm_password: str | None = None,
        phone: str | None = None,
        tenant_id: str | None = None,
        ip_addr: str | None = None,
        user_agent: str | None = None,
    ) -> AuthResult:
        self.check_new_password(
            password, password if confirm_password is None else confirm_password
        )
        if self.store.get_user_by_email(email):
            raise ValidationError(
                "An account with this email already exists",
                error_code="EMAIL_ALREADY_EXISTS",
            )
        resolved_tenant = self.resolve_tenant_id(tenant_id)
        password_hash, algo = self.passwords.hash_password(password)
        try:
            user = self.store.create_user_with_password(
                email,
                password_hash,
                algo,
                tenant_id=resolved_tenant,
                role=UserRole.CLIENT,
                status=UserStatus.ACTIVE,
                first_name=first_name,
                last_name=last_name,
                name=f"{first_name} {last_name}".strip(),
                phone=phone,
                email_verified=False,
            )
        except ConstraintViolation as exc:
            if exc.field == "email":
                raise ValidationError(
                    "An account with this email already exists",
                    error_code="EMAIL_ALREADY_EXISTS",
                ) from exc
            # fallback tenant id that was never seeded
            self.logger.error("signup_tenant_missing", tenant_id=resolved_tenant)
            raise ValidationError("Tenant not found", error_code="TENANT_NOT_FOUND") from exc
        await self._send_email_verification(user)
        result = self._start_session(user, ip_addr=ip_addr, user_agent=user_agent)
        self.logger.info("signup_succeeded", user_id=user.id, tenant_id=resolved_tenant)
        return result

    async def _send_email_verification(self, user: User) -> None:
        hours = self.settings.verification_token_ttl_hours
        verification = self.store.create_verification(
            Verification.new(
                user.email,
                self.tokens.new_verification_token(),
                VerificationPurpose.EMAIL_VERIFICATION,
                timedelta(hours=hours),
            )
        )
        sent = await asyncio.to_thread(
            self.email_service.send_email_verification,
            user.email,
            verification.value,
            expires_in_hours=hours,
        )
        if not sent:
            self.logger.warning("verification_email_not_sent", user_id=user.id)

    # -- account recovery ----------------------------------------------------

    async def forgot_password(self, email: str) -> None:
        """Issue a reset token when the account exists; silent otherwise."""
        user = self.store.get_user_by_email(email)
        if not user:
            self.logger.info("password_reset_unknown_email", email_hash=hash_identifier(email))
            return
        minutes = self.settings.password_reset_ttl_minutes
        verification = self.store.create_verification(
            Verification.new(
                user.email,
                self.tokens.new_verification_token(),
                VerificationPurpose.PASSWORD_RESET,
                timedelta(minutes=minutes),
            )
        )
        sent = await asyncio.to_thread(
            self.email_service.send_password_reset,
            user.email,
            verification.value,
            expires_in_minutes=minutes,
        )
        if not sent:
            self.logger.warning("password_reset_email_not_sent", user_id=user.id)
        self.logger.info("password_reset_requested", user_id=user.id)

    def _lookup_verification(
        self, token: str, purpose: VerificationPurpose
    ) -> Optional[Verification]:
        if not token:
            return None
        verification = self.store.get_verification(token, purpose)
        if not verification or verification.is_expired(self._now()):
            return None
        return verification

    async def reset_password(
        self, token: str, password: str, confirm_password: str | None
    ) -> None:
        self.check_new_password(password, confirm_password)
        verification = self._lookup_verification(token, VerificationPurpose.PASSWORD_RESET)
        if not verification:
            raise ValidationError(
                "Invalid or expired reset token", error_code="INVALID_RESET_TOKEN"
            )
        user = self.store.get_user_by_email(verification.identifier)
        if not user:
            raise ValidationError("User not found", error_code="USER_NOT_FOUND")
        password_hash, algo = self.passwords.hash_password(password)
        if not self.store.apply_password_reset(verification.id, user.id, password_hash, algo):
            # lost a race against another request using the same token
            raise ValidationError(
                "Invalid or expired reset token", error_code="INVALID_RESET_TOKEN"
            )
        self.logger.info("password_reset_completed", user_id=user.id)

    async def verify_email(
        self,
        token: str,
        *,
        ip_addr: str | None = None,
        user_agent: str | None = None,
    ) -> AuthResult:
        verification = self._lookup_verification(
            token, VerificationPurpose.EMAIL_VERIFICATION
        )
        if not verification:
            raise ValidationError(
                "Invalid or expired verification token",
                error_code="INVALID_VERIFICATION_TOKEN",
            )
        user = self.store.get_user_by_email(verification.identifier)
        if not user:
            raise ValidationError("User not found", error_code="USER_NOT_FOUND")
        if not self.store.apply_email_verification(verification.id, user.id):
            raise ValidationError(
                "Invalid or expired verification token",
                error_code="INVALID_VERIFICATION_TOKEN",
            )
        user.email_verified = True
        self.logger.info("email_verified", user_id=user.id)
        if not user.is_active:
            raise AuthenticationError("Account is not active", error_code="USER_INACTIVE")
        result = self._start_session(user, ip_addr=ip_addr, user_agent=user_agent)
        self._record_login(user)
        return result

    # -- token rotation and logout -------------------------------------------

    async def refresh(self, refresh_token: str | None) -> AuthResult:
        if not refresh_token:
            raise ValidationError(
                "Refresh token is required", error_code="REFRESH_TOKEN_REQUIRED"
            )
        record = self.tokens.consume_refresh_token(refresh_token)
        if not record:
            raise AuthenticationError(
                "Invalid or expired refresh token", error_code="INVALID_REFRESH_TOKEN"
            )
        user = self.store.get_user(record.user_id)
        if not user or not user.is_active:
            raise AuthenticationError(
                "User not found or inactive", error_code="USER_NOT_FOUND"
            )
        access_token = self.tokens.generate_access_token(user)
        rotated = self.tokens.create_refresh_token(user.id)
        self.logger.info("refresh_token_rotated", user_id=user.id)
        return AuthResult(
            user=user,
            access_token=access_token,
            refresh_token=rotated.token,
            expires_in=self.tokens.access_ttl_seconds,
        )

    async def logout(self, ctx: AuthContext) -> None:
        """End the current session and revoke every refresh token of the user."""
        if ctx.session_id:
            self.store.delete_session(ctx.session_id)
        revoked = self.tokens.delete_user_refresh_tokens(ctx.user_id)
        self.logger.info("logout", user_id=ctx.user_id, refresh_tokens_revoked=revoked)

    def authenticate(self, access_token: str | None) -> AuthContext:
        if not access_token:
            raise AuthenticationError("Access token required", error_code="INVALID_TOKEN")
        claims = self.tokens.decode_access_token(access_token)
        user = self.store.get_user(str(claims["sub"]))
        if not user:
            raise AuthenticationError("User not found", error_code="USER_NOT_FOUND")
        if not user.is_active:
            raise AuthenticationError("Account is not active", error_code="USER_INACTIVE")
        return AuthContext(
            user_id=user.id,
            email=user.email,
            role=user.role,
            tenant_id=user.tenant_id or claims.get("tenantId"),
            session_id=claims.get("sid"),
        )

    def get_current_user(self, ctx: AuthContext) -> User:
        user = self.store.get_user(ctx.user_id)
        if not user:
            raise NotFoundError("User not found", error_code="USER_NOT_FOUND")
        return user

    # -- Google OAuth bootstrap ----------------------------------------------

    def google_auth_url(self, tenant_id: str | None) -> str:
        if not tenant_id:
            raise ValidationError("Tenant ID is required", error_code="TENANT_REQUIRED")
        return self.calendar.get_auth_url(
            "temp",
            tenant_id,
            redirect_uri=self.settings.google_redirect_uri,
            purpose=OAUTH_STATE_SIGN_IN,
        )

    def _google_error_url(self) -> str:
        return f"{self.settings.frontend_url}/auth/google-error"

    async def google_callback(
        self,
        code: str | None,
        state: str | None,
        *,
        ip_addr: str | None = None,
        user_agent: str | None = None,
    ) -> str:
        """Complete the browser OAuth round trip and return the redirect target."""
        if not code or not state:
            raise ValidationError(
                "Missing code or state parameter", error_code="INVALID_CALLBACK"
            )
        try:
            outcome = await self.calendar.handle_callback(
                code,
                state,
                redirect_uri=self.settings.google_redirect_uri,
                purpose=OAUTH_STATE_SIGN_IN,
            )
            if not outcome.get("success"):
                self.logger.warning("google_callback_rejected", message=outcome.get("message"))
                return self._google_error_url()
            user = self.store.get_user(outcome["userId"])
            if not user or not user.is_active:
                self.logger.warning("google_callback_user_missing")
                return self._google_error_url()
            result = self._start_session(user, ip_addr=ip_addr, user_agent=user_agent)
            self._record_login(user)
        except Exception as exc:
            # browser redirect flow: every failure lands on the error page
            self.logger.exception(
                "google_callback_failed", error_type=type(exc).__name__
            )
            return self._google_error_url()
        query = urlencode({"token": result.access_token, "refresh": result.refresh_token})
        return f"{self.settings.frontend_url}/auth/google-success?{query}"

    async def google_create_user(
        self,
        *,
        email: str | None,
        name: str | None,
        google_id: str | None,
        tenant_id: str | None,
        ip_addr: str | None = None,
        user_agent: str | None = None,
    ) -> AuthResult:
        if not email or not name or not google_id or not tenant_id:
            raise ValidationError("Missing required data", error_code="MISSING_DATA")
        if self.store.get_user_by_email(email):
            raise ConflictError("User already exists", error_code="USER_EXISTS")
        if not self.store.get_tenant(tenant_id):
            raise NotFoundError("Tenant not found", error_code="TENANT_NOT_FOUND")
        first_name, _, last_name = name.strip().partition(" ")
        try:
            user = self.store.create_user(
                email,
                tenant_id=tenant_id,
                role=UserRole.CLIENT,
                status=UserStatus.ACTIVE,
                first_name=first_name or None,
                last_name=last_name or None,
                name=name,
                google_id=google_id,
                email_verified=True,
            )
        except ConstraintViolation as exc:
            if exc.field == "email":
                raise ConflictError("User already exists", error_code="USER_EXISTS") from exc
            raise NotFoundError("Tenant not found", error_code="TENANT_NOT_FOUND") from exc
        result = self._start_session(user, ip_addr=ip_addr, user_agent=user_agent)
        self._record_login(user)
        self.logger.info("google_user_created", user_id=user.id, tenant_id=tenant_id)
        return result

    # -- maintenance ---------------------------------------------------------

    def perform_cleanup(self) -> dict[str, int]:
        now = self._now()
        counts = self.store.delete_expired(now)
        window = timedelta(seconds=self.settings.login_lockout_seconds)
        with self._state_lock:
            expired = [k for k, until in self._login_lockouts.items() if until <= now]
            for key in expired:
                self._login_lockouts.pop(key, None)
            stale = [
                k for k, (_, started) in self._login_attempts.items() if now - started >= window
            ]
            for key in stale:
                self._login_attempts.pop(key, None)
        if any(counts.values()):
            self.logger.info("auth_cleanup_completed", **counts)
        return counts
