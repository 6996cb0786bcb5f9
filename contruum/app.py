from __future__ import annotations

import asyncio
import contextlib
import threading
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from contruum.api.error_handling import register_exception_handlers
from contruum.api.routes import build_router
from contruum.config import Settings
from contruum.logging import get_logger, set_correlation_id
from contruum.service.pruning import run_pruning_loop

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

_pruning_task: asyncio.Task | None = None
_pruning_cancel: threading.Event | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and drive the pruning scheduler."""
    global _pruning_task, _pruning_cancel
    from contruum.service.runtime import get_runtime

    runtime = get_runtime()
    if runtime.settings.pruning_enabled:
        _pruning_cancel = threading.Event()
        _pruning_task = asyncio.create_task(
            run_pruning_loop(
                runtime.pruning, runtime.settings.pruning_interval_seconds, _pruning_cancel
            )
        )

    yield

    try:
        if _pruning_task:
            if _pruning_cancel:
                _pruning_cancel.set()
            _pruning_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _pruning_task
            _pruning_task = None
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Contruum Authorization Server", version=__version__, lifespan=lifespan)


if _settings.cors_allow_origins:
    # Only the machine-to-machine and discovery endpoints are meant for browsers
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_settings.cors_allow_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with the caller's X-Request-ID, or a new one."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    response.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")
    return response


register_exception_handlers(app)
app.include_router(build_router(_settings))


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store, cache and signing key status."""
    from contruum.service.runtime import get_runtime

    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    runtime = get_runtime()
    if hasattr(runtime.store, "verify_connection"):
        db_ok = await _run_bounded("database", runtime.store.verify_connection)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
    else:
        db_ok = True
        checks["database"] = {"status": "healthy", "type": "memory"}

    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy", "degraded": not redis_ok}
    else:
        redis_ok = True
        checks["redis"] = {"status": "not_configured"}

    keys_ok = runtime.keys.initialized
    checks["keys"] = {
        "status": "healthy" if keys_ok else "unhealthy",
        "signing_kid": runtime.keys.current_signing_key().kid if keys_ok else None,
    }

    healthy = db_ok and redis_ok and keys_ok
    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
