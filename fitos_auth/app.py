from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from fitos_auth.api.error_handling import register_exception_handlers
from fitos_auth.api.routes import auth_router, calendar_router
from fitos_auth.config import Settings, get_settings
from fitos_auth.logging import get_logger, set_correlation_id
from fitos_auth.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3

_LOCAL_ORIGINS = [
    "http://localhost",
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]


async def _run_session_cleanup(runtime: Runtime, interval_seconds: int) -> None:
    """Purge expired sessions, refresh tokens and verifications forever."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(runtime.auth.perform_cleanup)
        except Exception as exc:
            logger.error("session_cleanup_failed", error=str(exc))


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # credentials are allowed, so never fall back to a wildcard
    return [settings.frontend_url, *[o for o in _LOCAL_ORIGINS if o != settings.frontend_url]]


def create_app(
    settings: Optional[Settings] = None,
    *,
    http_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """Build the FastAPI application and its service graph.

    ``http_transport`` is handed to the Google client so tests can answer
    provider calls with ``httpx.MockTransport``.
    """
    settings = settings or get_settings()
    runtime = Runtime(settings, http_transport=http_transport)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cleanup_task = asyncio.create_task(
            _run_session_cleanup(runtime, settings.session_cleanup_interval_seconds)
        )
        yield
        cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await cleanup_task
        try:
            await runtime.close()
            logger.info("runtime_cleanup_complete")
        except Exception as exc:
            logger.error("shutdown_failed", error=str(exc))

    app = FastAPI(title="FitOS Auth", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Bind ``X-Request-ID`` (or a fresh id) to the request's log context."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        # token-bearing responses must never be cached
        if request.url.path.startswith("/api/") or request.url.path == "/healthz":
            response.headers.setdefault(
                "Cache-Control", "no-store, no-cache, must-revalidate, private"
            )
        return response

    register_exception_handlers(app)
    app.include_router(auth_router)
    app.include_router(calendar_router)

    @app.get("/healthz")
    async def health() -> Dict[str, Any]:
        checks: Dict[str, Dict[str, Any]] = {}

        async def _run_bounded(label: str, func) -> bool:
            try:
                await asyncio.wait_for(
                    asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS
                )
                return True
            except asyncio.TimeoutError:
                logger.error(
                    "health_check_timeout",
                    component=label,
                    timeout=HEALTH_CHECK_TIMEOUT_SECONDS,
                )
            except Exception as exc:
                logger.error(f"health_check_{label}_failed", error=str(exc))
            return False

        healthy = True
        if hasattr(runtime.store, "_connect"):

            def _db_probe() -> None:
                with runtime.store._connect() as conn:
                    conn.execute("SELECT 1").fetchone()

            db_ok = await _run_bounded("database", _db_probe)
            checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
            healthy = healthy and db_ok
        else:
            checks["database"] = {"status": "healthy", "type": "memory"}

        if runtime.cache is not None:
            redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
            checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
            healthy = healthy and redis_ok
        else:
            checks["redis"] = {"status": "not_configured"}

        return {
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    logger.info("app_created", version=__version__)
    return app
