from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tasktrack.api.error_handling import register_exception_handlers
from tasktrack.api.routes import router
from tasktrack.config import get_settings
from tasktrack.logging import get_logger, sanitize_error_message, set_correlation_id

logger = get_logger(__name__)

_settings = get_settings()

__version__ = "0.1.0"

_sweep_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the expired-token sweep on startup and release resources on shutdown."""
    global _sweep_task
    from tasktrack.service.runtime import get_runtime

    runtime = get_runtime()
    _sweep_task = asyncio.create_task(
        _run_token_sweep(runtime.store, runtime.settings.token_sweep_interval_seconds)
    )

    yield

    if _sweep_task:
        _sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _sweep_task
        _sweep_task = None
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="TaskTrack Auth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dev hosts; a wildcard is not allowed together with credentials
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    # The refresh token travels in a cookie
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with a correlation ID for structured logs.

    The client's X-Request-ID is reused when present; otherwise a UUID is
    generated. The ID is echoed back in the X-Request-ID response header.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # Token responses must never be cached by proxies
    if request.url.path.startswith("/api/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store and Redis reachability."""
    from tasktrack.service.runtime import get_runtime

    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> Dict[str, Any]:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return {"status": "healthy"}
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
            return {"status": "unhealthy", "error": "timeout"}
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
            return {"status": "unhealthy", "error": sanitize_error_message(str(exc))}

    runtime = get_runtime()
    checks["database"] = await _run_bounded("database", runtime.store.verify_connection)
    checks["database"]["type"] = "memory" if runtime.settings.use_memory_store else "postgres"

    if runtime.cache is not None:
        checks["redis"] = await _run_bounded("redis", runtime.cache.verify_connection)
    else:
        checks["redis"] = {"status": "not_configured"}

    healthy = all(check["status"] != "unhealthy" for check in checks.values())
    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def _sweep_expired_tokens(store) -> int:
    purged = store.purge_expired_refresh_tokens(datetime.now(timezone.utc))
    if purged:
        logger.info("expired_refresh_tokens_purged", count=purged)
    return purged


async def _run_token_sweep(store, interval_seconds: int) -> None:
    """Background loop deleting refresh tokens past their expiry."""
    try:
        while True:
            try:
                await asyncio.to_thread(_sweep_expired_tokens, store)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("token_sweep_failed", error=str(exc))
            await asyncio.sleep(interval_seconds)
    except asyncio.CancelledError:
        logger.info("token_sweep_task_cancelled")


def create_app() -> FastAPI:
    return app
