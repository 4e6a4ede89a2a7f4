# api/server.py
# ============================================================================
# SKILLNESTX PAYMENTS: FASTAPI SERVER
# ============================================================================
# App factory with lifespan-managed resources, trace/timing middleware,
# one error body shape for every failure, and health probes.
# ============================================================================

import asyncio
import os
import signal
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.dependencies import ServiceContainer, build_container
from api.routes import router
from core.config import server_config
from core.errors import DomainError, ErrorCode, status_for
from core.observability import TRACE_HEADER, bind_trace_id, configure_logging, resolve_trace_id

logger = structlog.get_logger(component="server")

VERSION = "1.0.0"

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
}


def error_response(
    code: ErrorCode,
    message: str,
    trace_id: Optional[str],
    status_code: Optional[int] = None,
    details: Optional[dict] = None,
) -> JSONResponse:
    body = {"success": False, "code": code.value, "message": message, "traceId": trace_id}
    if details:
        body["details"] = details
    return JSONResponse(status_code=status_code or status_for(code), content=body)


def _trace_id(request: Request) -> Optional[str]:
    return getattr(request.state, "trace_id", None)


# =============================================================================
# PROCESS BOUNDARY
# =============================================================================

def _install_loop_exception_handler() -> None:
    """Unhandled loop errors stop the process through uvicorn's graceful path."""
    loop = asyncio.get_running_loop()

    def handle(loop: asyncio.AbstractEventLoop, context: dict) -> None:
        error = context.get("exception")
        logger.critical(
            "unhandled_loop_exception",
            message=context.get("message"),
            error=str(error) if error else None,
            exc_info=error,
        )
        os.kill(os.getpid(), signal.SIGTERM)

    loop.set_exception_handler(handle)


# =============================================================================
# APP FACTORY
# =============================================================================

def create_app(
    container: Optional[ServiceContainer] = None,
    configure_logs: bool = True,
) -> FastAPI:
    if configure_logs:
        configure_logging(server_config.LOG_LEVEL, server_config.LOG_JSON)

    container = container or build_container()
    started_at = datetime.now(timezone.utc)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("server_starting", version=VERSION, env=container.server.ENV)
        _install_loop_exception_handler()
        await container.startup()

        yield

        logger.info("server_shutting_down")
        await container.shutdown()

    app = FastAPI(
        title="SkillNestX Payments",
        description="Course payments, access grants, refunds and learning progress",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.container = container

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=container.server.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[TRACE_HEADER, "X-Response-Time-Ms"],
    )

    # -------------------------------------------------------------------------
    # Middleware
    # -------------------------------------------------------------------------

    @app.middleware("http")
    async def trace_and_timing(request: Request, call_next):
        """Trace id in, trace id + timing + security headers out."""
        trace_id = resolve_trace_id(request.headers.get(TRACE_HEADER))
        request.state.trace_id = trace_id
        bind_trace_id(trace_id)
        start = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as e:
            logger.exception("unhandled_error", path=request.url.path, method=request.method)
            response = error_response(
                ErrorCode.SERVER_ERROR,
                str(e) if container.debug else "Internal server error",
                trace_id,
            )

        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        response.headers[TRACE_HEADER] = trace_id
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)

        logger.info("request_completed",
                    method=request.method,
                    path=request.url.path,
                    status_code=response.status_code,
                    duration_ms=round(duration, 2))
        return response

    # -------------------------------------------------------------------------
    # Error handlers
    # -------------------------------------------------------------------------

    @app.exception_handler(DomainError)
    async def domain_error_handler(request: Request, exc: DomainError):
        status_code = exc.status_code
        if status_code >= 500:
            logger.error("request_failed", code=exc.code.value, error=exc.message, details=exc.details)
        else:
            logger.warning("request_rejected", code=exc.code.value, error=exc.message)
        return error_response(
            exc.code,
            exc.public_message(container.debug),
            _trace_id(request),
            status_code=status_code,
            details=exc.details if container.debug else None,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = first.get("msg", "Invalid request")
        if location:
            message = f"{location}: {message}"
        logger.warning("request_validation_failed", error=message)
        return error_response(ErrorCode.VALIDATION_ERROR, message, _trace_id(request))

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        code = ErrorCode.NOT_FOUND if exc.status_code == 404 else ErrorCode.INVALID_REQUEST
        return error_response(code, str(exc.detail), _trace_id(request), status_code=exc.status_code)

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        store_ok = await container.store.ping()
        return {
            "status": "healthy" if store_ok else "degraded",
            "version": VERSION,
            "uptimeSeconds": (datetime.now(timezone.utc) - started_at).total_seconds(),
            "store": type(container.store).__name__,
            "storeConnected": store_ok,
            "gatewayConfigured": container.razorpay.has_credentials,
            "emailEnabled": container.notifications.sender.enabled,
        }

    @app.get("/ready")
    async def readiness_check():
        """Kubernetes readiness probe"""
        ready = await container.store.ping()
        return JSONResponse(status_code=200 if ready else 503, content={"ready": ready})

    @app.get("/live")
    async def liveness_check():
        """Kubernetes liveness probe"""
        return {"live": True}

    app.include_router(router)
    return app


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    uvicorn.run(
        "api.server:create_app",
        factory=True,
        host=server_config.HOST,
        port=server_config.PORT,
        reload=server_config.DEBUG,
        log_level=server_config.LOG_LEVEL.lower(),
    )
