import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Callable, Iterable

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware

from wns_payments.api.problem_details import (
    PROBLEM_TYPE_DOMAIN,
    PROBLEM_TYPE_SERVER,
    PROBLEM_TYPE_VALIDATION,
    problem_details,
)
from wns_payments.api.routes_checkout import router as checkout_router
from wns_payments.api.routes_earnings import router as earnings_router
from wns_payments.api.routes_health import router as health_router
from wns_payments.api.routes_stripe_webhook import router as stripe_webhook_router
from wns_payments.domain.errors import DomainError
from wns_payments.infra.db import dispose_engine, get_session_factory
from wns_payments.infra.logging import clear_log_context, configure_logging, update_log_context
from wns_payments.infra.metrics import configure_metrics
from wns_payments.infra.tracing import configure_tracing, instrument_fastapi
from wns_payments.services import build_app_services
from wns_payments.settings import settings

logger = logging.getLogger(__name__)


def _resolve_log_identity(request: Request) -> dict[str, str]:
    user_id = getattr(request.state, "current_user_id", None)
    return {"user_id": str(user_id)} if user_id else {}


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        logger = logging.getLogger("wns_payments.request")
        start = time.time()
        request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID")
        if not request_id:
            request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        update_log_context(request_id=request_id, method=request.method, path=request.url.path)
        span = trace.get_current_span()
        if span and span.is_recording():
            span.set_attribute("request_id", request_id)

        response = None
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            latency_ms = int((time.time() - start) * 1000)
            update_log_context(status_code=status_code, latency_ms=latency_ms, **_resolve_log_identity(request))
            logger.info("request", extra={"latency_ms": latency_ms})
            if response is not None:
                response.headers.setdefault("X-Request-ID", request_id)
            clear_log_context()


class MetricsMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: FastAPI, metrics_client) -> None:
        super().__init__(app)
        self.metrics = metrics_client

    async def dispatch(self, request: Request, call_next: Callable):
        route_label = "unmatched"
        start = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        except Exception:
            route = request.scope.get("route")
            route_label = getattr(route, "path", route_label)
            self.metrics.record_http_5xx(request.method, route_label)
            raise
        finally:
            route = request.scope.get("route")
            route_label = getattr(route, "path", route_label)
            self.metrics.record_http_latency(request.method, route_label, status_code, time.perf_counter() - start)
        if status_code >= 500:
            self.metrics.record_http_5xx(request.method, route_label)
        return response


def _resolve_cors_origins(app_settings) -> Iterable[str]:
    if app_settings.cors_origins:
        return app_settings.cors_origins
    if app_settings.strict_cors:
        return []
    if app_settings.app_env == "dev":
        return ["http://localhost:3000"]
    return []


def _validate_prod_config(app_settings) -> None:
    if app_settings.app_env != "prod":
        return
    if not app_settings.stripe_secret_key:
        logger.warning("stripe_secret_key_missing")
    if not app_settings.stripe_webhook_secret:
        logger.warning("stripe_webhook_secret_missing")


def create_app(app_settings, *, tracer_provider=None) -> FastAPI:
    if tracer_provider is None and app_settings.tracing_enabled:
        configure_tracing(service_name=app_settings.app_name)
    configure_logging()
    metrics_client = configure_metrics(app_settings.metrics_enabled, service_name=app_settings.app_name)
    _validate_prod_config(app_settings)

    services = build_app_services(app_settings, metrics=metrics_client)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        state_services = getattr(app.state, "services", None) or services
        app.state.services = state_services

        app.state.metrics = getattr(app.state, "metrics", None) or state_services.metrics
        app.state.app_settings = getattr(app.state, "app_settings", app_settings)
        app.state.db_session_factory = getattr(app.state, "db_session_factory", None) or get_session_factory()
        app.state.email_adapter = getattr(app.state, "email_adapter", None) or state_services.email_adapter
        app.state.stripe_client = getattr(app.state, "stripe_client", None) or state_services.stripe_client
        app.state.webhook_dispatcher = (
            getattr(app.state, "webhook_dispatcher", None) or state_services.webhook_dispatcher
        )
        yield
        await dispose_engine()

    app = FastAPI(title="WNS Payments", version="1.0.0", lifespan=lifespan)

    app.add_middleware(LoggingMiddleware)
    app.add_middleware(MetricsMiddleware, metrics_client=metrics_client)
    app.add_middleware(RequestIdMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(_resolve_cors_origins(app_settings)),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # OTel instrumentation must be added last so it wraps all middleware.
    if app_settings.tracing_enabled or tracer_provider is not None:
        instrument_fastapi(app, tracer_provider=tracer_provider)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = []
        for error in exc.errors():
            loc = error.get("loc", [])
            field = ".".join(str(part) for part in loc if part not in {"body", "query", "path"}) or "body"
            errors.append({"field": field, "message": error.get("msg", "Invalid value")})
        return problem_details(
            request=request,
            status=422,
            title="Validation Error",
            detail="Request validation failed",
            errors=errors,
            type_=PROBLEM_TYPE_VALIDATION,
        )

    @app.exception_handler(DomainError)
    async def domain_exception_handler(request: Request, exc: DomainError):
        return problem_details(
            request=request,
            status=exc.status_code,
            title=exc.title,
            detail=exc.detail,
            errors=exc.errors or [],
            type_=exc.type or PROBLEM_TYPE_DOMAIN,
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return problem_details(
            request=request,
            status=exc.status_code,
            title=None,
            detail=exc.detail if isinstance(exc.detail, str) else "Request failed",
            type_=PROBLEM_TYPE_DOMAIN if exc.status_code < 500 else PROBLEM_TYPE_SERVER,
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        request_id = getattr(request.state, "request_id", None)
        error_type = type(exc).__name__
        update_log_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            status_code=500,
            error_type=error_type,
        )
        logger.exception(
            "unhandled_exception",
            extra={"request_id": request_id, "path": request.url.path, "error_type": error_type},
        )
        return problem_details(
            request=request,
            status=500,
            title="Internal Server Error",
            detail="Unexpected error",
            type_=PROBLEM_TYPE_SERVER,
        )

    app.include_router(health_router)
    app.include_router(stripe_webhook_router)
    app.include_router(checkout_router)
    app.include_router(earnings_router)
    if app_settings.metrics_enabled:
        from wns_payments.api.routes_metrics import router as metrics_router

        app.include_router(metrics_router)
    return app


app = create_app(settings)
