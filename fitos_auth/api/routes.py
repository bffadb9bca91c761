from __future__ import annotations

import contextlib
from datetime import datetime
from typing import Any, Iterator, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse

from fitos_auth.api.schemas import (
    CalendarEventRequest,
    ForgotPasswordRequest,
    GoogleCreateUserRequest,
    LoginRequest,
    RefreshRequest,
    ResetPasswordRequest,
    SignupRequest,
    VerifyEmailRequest,
    is_valid_email,
    normalize_email_input,
    serialize_user,
)
from fitos_auth.logging import get_logger
from fitos_auth.service.auth import AuthContext, AuthResult, role_allows
from fitos_auth.service.errors import (
    ForbiddenError,
    ServerError,
    ServiceError,
    ValidationError,
)
from fitos_auth.service.runtime import Runtime, get_runtime
from fitos_auth.storage.errors import ConstraintViolation
from fitos_auth.storage.models import UserRole

logger = get_logger(__name__)

auth_router = APIRouter(prefix="/api/auth", tags=["auth"])
calendar_router = APIRouter(prefix="/api/calendar", tags=["calendar"])


@contextlib.contextmanager
def _flow_guard(error_code: str, message: str) -> Iterator[None]:
    """Turn unexpected failures inside a flow into a 500 carrying ``error_code``."""
    try:
        yield
    except (ServiceError, ConstraintViolation):
        raise
    except Exception as exc:
        logger.exception(
            "flow_failed",
            error_code=error_code,
            error_type=type(exc).__name__,
        )
        raise ServerError(message, error_code=error_code) from exc


def _client_meta(request: Request) -> dict[str, Optional[str]]:
    return {
        "ip_addr": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


def _extract_access_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization")
    if header and header.lower().startswith("bearer "):
        token = header.split(" ", 1)[1].strip()
        if token:
            return token
    return request.cookies.get("accessToken")


async def get_auth_context(
    request: Request, runtime: Runtime = Depends(get_runtime)
) -> AuthContext:
    return runtime.auth.authenticate(_extract_access_token(request))


def require_role(minimum: UserRole):
    """Dependency factory admitting ``minimum`` and every role above it."""

    async def _dependency(ctx: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if not role_allows(ctx.role, minimum):
            logger.warning(
                "insufficient_permissions",
                user_id=ctx.user_id,
                role=ctx.role.value,
                required=minimum.value,
            )
            raise ForbiddenError(
                "Insufficient permissions", error_code="INSUFFICIENT_PERMISSIONS"
            )
        return ctx

    return _dependency


def _session_payload(result: AuthResult, **extra: Any) -> dict[str, Any]:
    return {
        "success": True,
        **extra,
        "user": serialize_user(result.user),
        "accessToken": result.access_token,
        "refreshToken": result.refresh_token,
        "expiresIn": result.expires_in,
    }


# ---------------------------------------------------------------------------
# /api/auth
# ---------------------------------------------------------------------------


@auth_router.post("/login")
async def login(
    body: LoginRequest, request: Request, runtime: Runtime = Depends(get_runtime)
):
    if not body.email or not body.password:
        raise ValidationError(
            "Email and password are required", error_code="MISSING_CREDENTIALS"
        )
    if not is_valid_email(body.email):
        raise ValidationError("Invalid email format", error_code="INVALID_EMAIL_FORMAT")
    with _flow_guard("LOGIN_FAILED", "Login failed"):
        result = await runtime.auth.login(
            normalize_email_input(body.email), body.password, **_client_meta(request)
        )
    return _session_payload(
        result, message="Login successful", redirectTo=result.redirect_to
    )


@auth_router.post("/signup", status_code=201)
async def signup(
    body: SignupRequest, request: Request, runtime: Runtime = Depends(get_runtime)
):
    if not (body.first_name and body.last_name and body.email and body.password):
        raise ValidationError(
            "First name, last name, email and password are required",
            error_code="MISSING_REQUIRED_FIELDS",
        )
    if not is_valid_email(body.email):
        raise ValidationError("Invalid email format", error_code="INVALID_EMAIL_FORMAT")
    with _flow_guard("SIGNUP_FAILED", "Signup failed"):
        result = await runtime.auth.signup(
            email=normalize_email_input(body.email),
            password=body.password,
            confirm_password=body.confirm_password,
            first_name=body.first_name,
            last_name=body.last_name,
            phone=body.phone,
            tenant_id=body.tenant_id,
            **_client_meta(request),
        )
    return _session_payload(
        result,
        message="Account created successfully",
        requiresEmailVerification=True,
    )


@auth_router.post("/forgot-password")
async def forgot_password(
    body: ForgotPasswordRequest, runtime: Runtime = Depends(get_runtime)
):
    if not body.email:
        raise ValidationError("Email is required", error_code="MISSING_REQUIRED_FIELDS")
    with _flow_guard("FORGOT_PASSWORD_FAILED", "Could not process password reset"):
        if is_valid_email(body.email):
            await runtime.auth.forgot_password(normalize_email_input(body.email))
    return {
        "success": True,
        "message": "If an account with that email exists, a password reset link has been sent",
    }


@auth_router.post("/reset-password")
async def reset_password(
    body: ResetPasswordRequest, runtime: Runtime = Depends(get_runtime)
):
    if not body.password:
        raise ValidationError(
            "Password is required", error_code="MISSING_REQUIRED_FIELDS"
        )
    with _flow_guard("RESET_PASSWORD_FAILED", "Could not reset password"):
        await runtime.auth.reset_password(
            body.token or "", body.password, body.confirm_password
        )
    return {"success": True, "message": "Password reset successfully"}


@auth_router.post("/verify-email")
async def verify_email(
    body: VerifyEmailRequest, request: Request, runtime: Runtime = Depends(get_runtime)
):
    with _flow_guard("VERIFY_EMAIL_FAILED", "Could not verify email"):
        result = await runtime.auth.verify_email(
            body.token or "", **_client_meta(request)
        )
    return _session_payload(
        result, message="Email verified successfully", redirectTo=result.redirect_to
    )


@auth_router.post("/refresh")
async def refresh(
    body: Optional[RefreshRequest] = None, runtime: Runtime = Depends(get_runtime)
):
    with _flow_guard("REFRESH_TOKEN_FAILED", "Could not refresh token"):
        result = await runtime.auth.refresh(body.refresh_token if body else None)
    return {
        "success": True,
        "accessToken": result.access_token,
        "refreshToken": result.refresh_token,
        "expiresIn": result.expires_in,
    }


@auth_router.post("/logout")
async def logout(
    ctx: AuthContext = Depends(get_auth_context),
    runtime: Runtime = Depends(get_runtime),
):
    with _flow_guard("LOGOUT_FAILED", "Logout failed"):
        await runtime.auth.logout(ctx)
    return {"success": True, "message": "Logout successful"}


@auth_router.get("/me")
async def me(
    ctx: AuthContext = Depends(get_auth_context),
    runtime: Runtime = Depends(get_runtime),
):
    with _flow_guard("GET_USER_FAILED", "Could not load user"):
        user = runtime.auth.get_current_user(ctx)
    return {"success": True, "user": serialize_user(user)}


@auth_router.get("/google")
async def google_auth(
    tenant_id: Optional[str] = Query(None, alias="tenantId"),
    runtime: Runtime = Depends(get_runtime),
):
    with _flow_guard("GOOGLE_AUTH_FAILED", "Google authentication failed"):
        auth_url = runtime.auth.google_auth_url(tenant_id)
    return {"success": True, "authUrl": auth_url}


@auth_router.get("/google/callback")
async def google_callback(
    request: Request,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    runtime: Runtime = Depends(get_runtime),
):
    target = await runtime.auth.google_callback(code, state, **_client_meta(request))
    return RedirectResponse(target, status_code=302)


@auth_router.post("/google/create-user")
async def google_create_user(
    body: GoogleCreateUserRequest,
    request: Request,
    runtime: Runtime = Depends(get_runtime),
):
    with _flow_guard("USER_CREATION_FAILED", "Could not create user"):
        result = await runtime.auth.google_create_user(
            email=normalize_email_input(body.email) if body.email else None,
            name=body.name,
            google_id=body.google_id,
            tenant_id=body.tenant_id,
            **_client_meta(request),
        )
    return _session_payload(
        result, message="User created successfully", redirectTo=result.redirect_to
    )


# ---------------------------------------------------------------------------
# /api/calendar
# ---------------------------------------------------------------------------

calendar_user = require_role(UserRole.TRAINER)


def _calendar_tenant(ctx: AuthContext) -> str:
    if not ctx.tenant_id:
        raise ValidationError("Tenant ID is required", error_code="TENANT_REQUIRED")
    return ctx.tenant_id


def _calendar_response(result: dict[str, Any]) -> Any:
    if result.get("success"):
        return result
    if result.get("reconnectRequired"):
        status_code, code = 400, "CALENDAR_NOT_CONNECTED"
    else:
        status_code, code = 502, "CALENDAR_REQUEST_FAILED"
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": code, "message": result.get("message")},
    )


@calendar_router.get("/auth-url")
async def calendar_auth_url(
    ctx: AuthContext = Depends(calendar_user),
    runtime: Runtime = Depends(get_runtime),
):
    tenant_id = _calendar_tenant(ctx)
    return {"success": True, "authUrl": runtime.calendar.get_auth_url(ctx.user_id, tenant_id)}


@calendar_router.get("/callback")
async def calendar_callback(
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    runtime: Runtime = Depends(get_runtime),
):
    connected = False
    if code and state:
        try:
            outcome = await runtime.calendar.handle_callback(code, state)
        except Exception as exc:
            # browser redirect flow: every failure lands on connected=false
            logger.exception("calendar_callback_failed", error_type=type(exc).__name__)
        else:
            connected = bool(outcome.get("success"))
    target = f"{runtime.settings.frontend_url}/settings/calendar?connected={'true' if connected else 'false'}"
    return RedirectResponse(target, status_code=302)


@calendar_router.get("/status")
async def calendar_status(
    ctx: AuthContext = Depends(calendar_user),
    runtime: Runtime = Depends(get_runtime),
):
    with _flow_guard("CALENDAR_REQUEST_FAILED", "Calendar request failed"):
        connected = await runtime.calendar.is_connected(ctx.user_id, _calendar_tenant(ctx))
    return {"success": True, "connected": connected}


@calendar_router.delete("/connection")
async def calendar_disconnect(
    ctx: AuthContext = Depends(calendar_user),
    runtime: Runtime = Depends(get_runtime),
):
    with _flow_guard("CALENDAR_REQUEST_FAILED", "Calendar request failed"):
        removed = runtime.calendar.disconnect(ctx.user_id, _calendar_tenant(ctx))
    message = "Google Calendar disconnected" if removed else "Google Calendar was not connected"
    return {"success": True, "message": message}


@calendar_router.get("/events")
async def calendar_events(
    time_min: Optional[datetime] = Query(None, alias="timeMin"),
    time_max: Optional[datetime] = Query(None, alias="timeMax"),
    ctx: AuthContext = Depends(calendar_user),
    runtime: Runtime = Depends(get_runtime),
):
    with _flow_guard("CALENDAR_REQUEST_FAILED", "Calendar request failed"):
        result = await runtime.calendar.get_calendar_events(
            ctx.user_id, _calendar_tenant(ctx), time_min=time_min, time_max=time_max
        )
    return _calendar_response(result)


@calendar_router.post("/events", status_code=201)
async def calendar_create_event(
    body: CalendarEventRequest,
    ctx: AuthContext = Depends(calendar_user),
    runtime: Runtime = Depends(get_runtime),
):
    with _flow_guard("CALENDAR_REQUEST_FAILED", "Calendar request failed"):
        result = await runtime.calendar.create_event(
            ctx.user_id, _calendar_tenant(ctx), body.to_google_event()
        )
    return _calendar_response(result)


@calendar_router.put("/events/{event_id}")
async def calendar_update_event(
    event_id: str,
    body: CalendarEventRequest,
    ctx: AuthContext = Depends(calendar_user),
    runtime: Runtime = Depends(get_runtime),
):
    with _flow_guard("CALENDAR_REQUEST_FAILED", "Calendar request failed"):
        result = await runtime.calendar.update_event(
            ctx.user_id, _calendar_tenant(ctx), event_id, body.to_google_event()
        )
    return _calendar_response(result)


@calendar_router.delete("/events/{event_id}")
async def calendar_delete_event(
    event_id: str,
    ctx: AuthContext = Depends(calendar_user),
    runtime: Runtime = Depends(get_runtime),
):
    with _flow_guard("CALENDAR_REQUEST_FAILED", "Calendar request failed"):
        result = await runtime.calendar.delete_event(
            ctx.user_id, _calendar_tenant(ctx), event_id
        )
    return _calendar_response(result)
