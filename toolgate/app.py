from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from toolgate.api.error_handling import register_exception_handlers
from toolgate.api.routes import router
from toolgate.config import Settings, get_settings
from toolgate.logging import get_logger, set_correlation_id
from toolgate.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and tear it down on shutdown."""
    runtime: Optional[Runtime] = app.state.runtime
    if runtime is None:
        runtime = Runtime(app.state.settings)
        app.state.runtime = runtime
    await runtime.startup()

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc), error_type=type(exc).__name__)


def create_app(settings: Optional[Settings] = None, runtime: Optional[Runtime] = None) -> FastAPI:
    settings = settings or (runtime.settings if runtime else get_settings())
    app = FastAPI(title="Toolgate", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag every log line of a request with its X-Request-ID."""
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
    async def health(request: Request):
        current: Optional[Runtime] = request.app.state.runtime
        checks: Dict[str, Dict[str, Any]] = {}
        healthy = current is not None
        if current is not None:
            verify = getattr(current.store, "verify_connection", None)
            store_ok = True
            if verify is not None:
                try:
                    await asyncio.wait_for(asyncio.to_thread(verify), HEALTH_CHECK_TIMEOUT_SECONDS)
                except asyncio.TimeoutError:
                    logger.error("health_check_timeout", component="store")
                    store_ok = False
                except Exception as exc:
                    logger.error("health_check_store_failed", error=str(exc))
                    store_ok = False
            checks["store"] = {"status": "ok" if store_ok else "error"}
            checks["maintenance"] = {"running": current.maintenance.running}
            checks["executions"] = {"running": current.executions.running_count()}
            healthy = store_ok
        body = {
            "status": "healthy" if healthy else "unhealthy",
            "version": __version__,
            "checks": checks,
        }
        return JSONResponse(status_code=200 if healthy else 503, content=body)

    return app


app = create_app()
