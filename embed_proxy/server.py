from typing import Optional, Sequence

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import ReadableSpan, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    SpanExporter,
    SpanExportResult,
)
from prometheus_client import Info
from prometheus_fastapi_instrumentator import Instrumentator

from embed_proxy.config import ProxyConfig, load_config
from embed_proxy.models import ErrorResponse, HealthResponse
from embed_proxy.proxy.errors import ProxyError
from embed_proxy.proxy.route import create_router
from embed_proxy.vars import OTLP_ENDPOINT, OTLP_HEADERS, SERVICE_NAME


class FilteringSpanExporter(SpanExporter):
    """
    Wrapper exporter that filters out noisy ASGI body spans from streaming responses.
    Every relayed chunk of a passthrough response would otherwise become its own span.
    """

    def __init__(self, exporter: SpanExporter):
        self.exporter = exporter

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        # Filter out http.response.body spans that clutter streaming traces
        filtered_spans = [
            span
            for span in spans
            if not (
                span.attributes
                and span.attributes.get("asgi.event.type") == "http.response.body"
            )
        ]
        if filtered_spans:
            return self.exporter.export(filtered_spans)
        return SpanExportResult.SUCCESS

    def shutdown(self):
        return self.exporter.shutdown()

    def force_flush(self, timeout_millis: int = 30000):
        return self.exporter.force_flush(timeout_millis)


async def proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
    """Render proxy failures as a structured JSON body."""
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse.from_exception(exc).model_dump(),
    )


def create_app(config: Optional[ProxyConfig] = None) -> FastAPI:
    """Build the proxy application around an immutable configuration."""
    config = config or load_config()
    application = FastAPI(title=SERVICE_NAME)
    application.state.proxy_config = config
    application.add_exception_handler(ProxyError, proxy_error_handler)

    @application.get("/healthz", response_model=HealthResponse)
    async def healthz() -> HealthResponse:
        return HealthResponse()

    application.include_router(create_router(config))
    return application


app = create_app()
instrumentator = Instrumentator()

instrumentator.instrument(app).expose(app)

trace.set_tracer_provider(
    TracerProvider(resource=Resource.create({"service.name": SERVICE_NAME}))
)
tracer_provider = trace.get_tracer_provider()
if OTLP_ENDPOINT:
    otlp_exporter = OTLPSpanExporter(
        endpoint=OTLP_ENDPOINT,
        headers=OTLP_HEADERS or None,
    )

    # Wrap exporter with filtering to remove noisy ASGI body spans
    filtering_exporter = FilteringSpanExporter(otlp_exporter)
    span_processor = BatchSpanProcessor(filtering_exporter)
    tracer_provider.add_span_processor(span_processor)

# Instrument FastAPI
FastAPIInstrumentor.instrument_app(
    app,
    excluded_urls="healthz,metrics",
    server_request_hook=None,
    client_request_hook=None,
)

# Add app_name to the metrics
app_info = Info("fastapi_app_info", "Application Info")
app_info.info({"app_name": SERVICE_NAME})
