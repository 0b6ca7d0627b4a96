import atexit
import logging
import os

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

_TRACING_CONFIGURED = False
_SQLALCHEMY_ENGINES: set[int] = set()
_TRACING_SHUTDOWN = False

logger = logging.getLogger(__name__)


def _set_route_attributes(span, *, path: str | None, scheme: str | None, host: str | None) -> None:
    if not span or not span.is_recording():
        return
    route_path = path or "/"
    if scheme and host:
        span.set_attribute("http.url", f"{scheme}://{host}{route_path}")
    span.set_attribute("http.target", route_path)


def _fastapi_request_hook(span, scope) -> None:  # noqa: ANN001
    # Route templates only; webhook and checkout query strings never reach spans.
    server = scope.get("server") or (None, None)
    route = scope.get("route")
    _set_route_attributes(
        span,
        path=getattr(route, "path", None) or scope.get("path", "/"),
        scheme=scope.get("scheme"),
        host=server[0] if server else None,
    )


def _httpx_request_hook(span, request) -> None:  # noqa: ANN001
    url = request.url.copy_with(query=None)
    _set_route_attributes(span, path=url.path, scheme=url.scheme, host=url.host)


def configure_tracing(*, service_name: str | None = None) -> None:
    """Install the global tracer provider once per process.

    Spans are exported over OTLP only when ``OTEL_EXPORTER_OTLP_ENDPOINT`` is
    set and the process is not running tests. Outbound email calls made with
    httpx are traced as child spans.
    """
    global _TRACING_CONFIGURED
    if _TRACING_CONFIGURED:
        return

    resource_attrs = {
        SERVICE_NAME: os.getenv("OTEL_SERVICE_NAME") or service_name or "wns-payments",
        DEPLOYMENT_ENVIRONMENT: os.getenv("DEPLOYMENT_ENV", "local"),
    }
    service_version = os.getenv("SERVICE_VERSION") or os.getenv("GIT_SHA")
    if service_version:
        resource_attrs[SERVICE_VERSION] = service_version

    tracer_provider = TracerProvider(resource=Resource.create(resource_attrs))
    trace.set_tracer_provider(tracer_provider)

    otlp_endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    is_testing = os.getenv("TESTING", "").lower() == "true"
    if otlp_endpoint and not is_testing:
        exporter = OTLPSpanExporter(endpoint=otlp_endpoint, insecure=otlp_endpoint.startswith("http://"))
        tracer_provider.add_span_processor(BatchSpanProcessor(exporter))
    elif not is_testing:
        logger.debug("tracing_exporter_skipped_no_endpoint")

    HTTPXClientInstrumentor().instrument(tracer_provider=tracer_provider, request_hook=_httpx_request_hook)
    _TRACING_CONFIGURED = True
    atexit.register(shutdown_tracing)


def instrument_fastapi(app: FastAPI, *, tracer_provider=None) -> None:  # noqa: ANN001
    FastAPIInstrumentor().instrument_app(
        app,
        tracer_provider=tracer_provider or trace.get_tracer_provider(),
        server_request_hook=_fastapi_request_hook,
    )


def instrument_sqlalchemy(engine) -> None:  # noqa: ANN001
    if engine is None or id(engine) in _SQLALCHEMY_ENGINES:
        return
    SQLAlchemyInstrumentor().instrument(
        engine=engine,
        tracer_provider=trace.get_tracer_provider(),
        capture_statement=False,
    )
    _SQLALCHEMY_ENGINES.add(id(engine))


def shutdown_tracing(*, force_flush: bool = True) -> None:
    global _TRACING_SHUTDOWN
    if _TRACING_SHUTDOWN:
        return
    _TRACING_SHUTDOWN = True
    try:
        tracer_provider = trace.get_tracer_provider()
        if force_flush:
            flush = getattr(tracer_provider, "force_flush", None)
            if callable(flush):
                flush()
        shutdown = getattr(tracer_provider, "shutdown", None)
        if callable(shutdown):
            shutdown()
    except Exception as exc:  # noqa: BLE001
        logger.warning("tracing_shutdown_failed", extra={"extra": {"error": type(exc).__name__}})
