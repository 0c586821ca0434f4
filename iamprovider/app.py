from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from iamprovider.api.error_handling import register_exception_handlers
from iamprovider.api.routes import router
from iamprovider.config import get_settings
from iamprovider.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "1.0.0"

_maintenance_task: asyncio.Task | None = None


async def _run_maintenance_loop(interval_seconds: int) -> None:
    """Background loop purging expired refresh tokens and deleted accounts."""
    from iamprovider.service.runtime import get_runtime, run_maintenance

    try:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await run_maintenance(get_runtime())
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("maintenance_sweep_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("maintenance_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _maintenance_task
    from iamprovider.service.runtime import get_runtime

    runtime = get_runtime()
    _maintenance_task = asyncio.create_task(
        _run_maintenance_loop(runtime.settings.maintenance_interval_seconds)
    )
    logger.info("iam_provider_started", port=runtime.settings.port)

    yield

    try:
        if _maintenance_task:
            _maintenance_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _maintenance_task
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="IAM Provider", version=__version__, lifespan=lifespan)

_settings = get_settings()

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID", "X-Refresh-Token"],
    expose_headers=["X-Request-ID", "Retry-After"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind a correlation ID for logging and echo it in X-Request-ID.

    A client-supplied X-Request-ID is reused; otherwise a UUID is generated.
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
    # Tokens must not be cached by proxies
    if request.url.path.startswith("/api/"):
        response.headers.setdefault("Cache-Control", "no-store")
    if request.url.scheme == "https" and _settings.is_production:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store and Redis reachability."""
    from iamprovider.service.runtime import get_runtime

    async def _run_bounded(label: str, func) -> bool:
        try:
            return bool(
                await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            )
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    db_ok = await _run_bounded("database", runtime.store.ping)
    checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
    healthy = db_ok

    if runtime.cache is not None:

        def _redis_probe() -> bool:
            runtime.cache.verify_connection()
            return True

        redis_ok = await _run_bounded("redis", _redis_probe)
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


def create_app() -> FastAPI:
    return app


def main() -> None:
    """Serve the API with uvicorn on the configured port."""
    import uvicorn

    uvicorn.run("iamprovider.app:app", host="0.0.0.0", port=get_settings().port)


if __name__ == "__main__":
    main()
