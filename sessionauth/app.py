from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sessionauth.api.error_handling import register_exception_handlers
from sessionauth.api.routes import router
from sessionauth.config import Settings
from sessionauth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 5.0

_purge_task: asyncio.Task | None = None


async def _run_refresh_token_purge(interval: int) -> None:
    """Periodically drop expired refresh-token records."""
    from sessionauth.service.runtime import get_runtime

    try:
        while True:
            await asyncio.sleep(interval)
            try:
                await asyncio.to_thread(get_runtime().ledger.purge_expired)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("refresh_token_purge_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("refresh_token_purge_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup; stop housekeeping and close the pool on shutdown."""
    global _purge_task
    from sessionauth.service.runtime import get_runtime

    runtime = get_runtime()
    interval = runtime.settings.refresh_token_purge_interval_seconds
    if interval > 0:
        _purge_task = asyncio.create_task(_run_refresh_token_purge(interval))

    yield

    try:
        if _purge_task:
            _purge_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _purge_task
            _purge_task = None
        runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="SessionAuth", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[_settings.frontend_url],
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Attach a correlation id to the request's logs and echo it back.

    Taken from the client's X-Request-ID header when present, otherwise a
    fresh uuid4.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/health")
async def health() -> Dict[str, Any]:
    """Liveness plus a bounded database probe when running on Postgres."""
    from sessionauth.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    probe = getattr(runtime.store, "verify_connection", None)
    if probe is None:
        db_ok = True
        checks["database"] = {"status": "healthy", "type": "memory"}
    else:
        try:
            await asyncio.wait_for(asyncio.to_thread(probe), HEALTH_CHECK_TIMEOUT_SECONDS)
            db_ok = True
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component="database")
            db_ok = False
        except Exception as exc:
            logger.error("health_check_database_failed", error=str(exc))
            db_ok = False
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy", "type": "postgres"}

    return {
        "status": "healthy" if db_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
