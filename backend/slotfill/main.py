"""FastAPI entry-point for the slot filling service."""
from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Dict, List

import structlog
from fastapi import Depends, FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from opentelemetry import trace
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware
from structlog.contextvars import bind_contextvars, unbind_contextvars
from structlog.stdlib import ProcessorFormatter

from .api.capabilities import get_capability_service, router as capabilities_router
from .cache import ping_draft_store
from .config import Settings, get_settings
from .services.capability_service import CapabilityService
from .telemetry import configure_tracing, correlation_id_var

logger = structlog.get_logger("slotfill.api")


def _add_correlation_id(_: Any, __: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    event_dict.setdefault("correlation_id", correlation_id_var.get() or "unknown")
    return event_dict


def configure_logging(level: int = logging.INFO) -> None:
    """Route structlog and stdlib logging through one JSON formatter."""

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        _add_correlation_id,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
    ]

    handler = logging.StreamHandler()
    handler.setFormatter(
        ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(ensure_ascii=False),
            foreign_pre_chain=shared_processors,
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)

    structlog.configure(
        processors=shared_processors + [ProcessorFormatter.wrap_for_formatter],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def configure_rate_limiter(app: FastAPI, settings: Settings) -> None:
    """Configure SlowAPI rate limiting according to runtime settings."""

    default_limits: List[str] = [settings.rate_limit_default] if settings.rate_limit_default else []
    limiter = Limiter(
        key_func=get_remote_address,
        default_limits=default_limits,
        headers_enabled=settings.rate_limit_headers_enabled,
        enabled=settings.rate_limit_enabled,
    )
    app.state.limiter = limiter
    app.add_middleware(SlowAPIMiddleware)

    async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
        return JSONResponse(
            {"error": f"Rate limit exceeded: {exc.detail}"},
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        )

    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Attach correlation identifiers and timing information to responses."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        correlation_id = request.headers.get("X-Correlation-ID", str(uuid.uuid4()))
        token = correlation_id_var.set(correlation_id)
        bind_contextvars(correlation_id=correlation_id)
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("request_failed", path=request.url.path)
            raise
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            correlation_id_var.reset(token)
            unbind_contextvars("correlation_id")
        logger.info(
            "request_completed",
            path=request.url.path,
            method=request.method,
            status_code=response.status_code,
            duration_ms=round(duration_ms, 2),
        )
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            current_span.set_attribute("correlation.id", correlation_id)
        response.headers["X-Correlation-ID"] = correlation_id
        response.headers["X-Process-Time-ms"] = f"{duration_ms:.2f}"
        return response


REQUEST_DURATION = Histogram(
    "slotfill_request_duration_seconds",
    "Time spent processing requests",
    labelnames=("method", "path", "status_code"),
)
REQUEST_COUNT = Counter(
    "slotfill_request_total",
    "Total number of processed requests",
    labelnames=("method", "path", "status_code"),
)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging()

    app = FastAPI(title="Slot Filling API", version="0.1.0")
    configure_tracing(app, service_name="slotfill")
    configure_rate_limiter(app, settings)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(CorrelationIdMiddleware)
    app.include_router(capabilities_router)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):  # type: ignore[override]
        if request.url.path == "/metrics":
            return await call_next(request)
        start_time = time.perf_counter()
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            route = request.scope.get("route")
            labels = {
                "method": request.method,
                "path": getattr(route, "path", request.url.path),
                "status_code": str(status_code),
            }
            REQUEST_DURATION.labels(**labels).observe(time.perf_counter() - start_time)
            REQUEST_COUNT.labels(**labels).inc()

    @app.get("/healthz", tags=["Monitoring"], summary="Service diagnostics")
    def healthz(
        service: CapabilityService = Depends(get_capability_service),
        current: Settings = Depends(get_settings),
    ) -> Dict[str, Any]:
        """Report catalog size and draft storage reachability."""

        payload: Dict[str, Any] = {
            "status": "ok",
            "capabilities": len(service.catalog),
            "draft_backend": current.draft_backend,
        }
        if current.draft_backend == "redis":
            if ping_draft_store():
                payload["draft_store"] = "up"
            else:
                payload["status"] = "degraded"
                payload["draft_store"] = "down"
        return payload

    @app.get("/metrics", include_in_schema=False)
    def metrics() -> Response:
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()
