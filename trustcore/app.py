from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from trustcore.api.error_handling import register_exception_handlers
from trustcore.api.routes import router
from trustcore.config import Settings, get_settings
from trustcore.logging import get_logger, set_correlation_id
from trustcore.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3.0


async def _run_bounded(label: str, func: Callable[[], Any]) -> bool:
    try:
        await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
        return True
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
    except Exception as exc:
        logger.error("health_check_failed", component=label, error_type=type(exc).__name__)
    return False


def create_app(
    runtime: Optional[Runtime] = None, *, settings: Optional[Settings] = None
) -> FastAPI:
    """Build the HTTP app.

    With ``runtime`` the caller owns the service graph; otherwise one is built
    on startup and closed on shutdown.
    """
    settings = settings or (runtime.settings if runtime else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.runtime is None
        if owned:
            app.state.runtime = Runtime(settings)
        yield
        if owned:
            try:
                await app.state.runtime.close()
            except Exception as exc:
                logger.error("shutdown_failed", error_type=type(exc).__name__)
            app.state.runtime = None

    app = FastAPI(title="Trustcore", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=bool(settings.cors_allow_origins)
        and "*" not in settings.cors_allow_origins,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        expose_headers=[
            "X-Request-ID",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "Retry-After",
        ],
    )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
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
        if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
            response.headers.setdefault("Cache-Control", "no-store")
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health(request: Request) -> Dict[str, Any]:
        rt: Optional[Runtime] = request.app.state.runtime
        checks: Dict[str, Dict[str, Any]] = {}
        if rt is None:
            return {
                "status": "unhealthy",
                "checks": {"runtime": {"status": "not_initialized"}},
                "revoked_entries": None,
                "version": __version__,
                "build": settings.build_sha,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }

        db_ok = await _run_bounded("database", rt.store.verify_connection)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}

        cache_ok = await rt.revocations.health_check()
        checks["cache"] = {
            "status": "healthy" if cache_ok else "unhealthy",
            "degraded": not cache_ok,
            "backend": type(rt.cache).__name__,
        }
        revoked_entries = await rt.revocations.revoked_count() if cache_ok else None

        if not db_ok:
            status = "unhealthy"
        elif not cache_ok:
            status = "degraded"
        else:
            status = "healthy"
        return {
            "status": status,
            "checks": checks,
            "revoked_entries": revoked_entries,
            "version": __version__,
            "build": settings.build_sha,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app
