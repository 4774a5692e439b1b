from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os
from typing import Any

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

from leadflow.core.config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
_EMPTY_TRACE_ID = "0" * 32
_EMPTY_SPAN_ID = "0" * 16

logger = logging.getLogger(__name__)


class _TraceContextRecordFactory:
    """Wraps the active record factory so every record carries the current span ids."""

    def __init__(self, wrapped: Any) -> None:
        self.wrapped = wrapped

    def __call__(self, *args: Any, **kwargs: Any) -> logging.LogRecord:
        record = self.wrapped(*args, **kwargs)
        span_context = trace.get_current_span().get_span_context()
        if span_context.is_valid:
            record.trace_id = f"{span_context.trace_id:032x}"
            record.span_id = f"{span_context.span_id:016x}"
        else:
            record.trace_id = _EMPTY_TRACE_ID
            record.span_id = _EMPTY_SPAN_ID
        return record


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    provider: TracerProvider | None
    component: str = "worker"
    httpx_instrumentor: HTTPXClientInstrumentor | None = None
    instrumented_apps: list[FastAPI] = field(default_factory=list)

    def instrument_app(self, app: FastAPI) -> None:
        if not self.enabled or app in self.instrumented_apps:
            return
        FastAPIInstrumentor.instrument_app(app, tracer_provider=self.provider)
        self.instrumented_apps.append(app)

    def close(self) -> None:
        while self.instrumented_apps:
            FastAPIInstrumentor.uninstrument_app(self.instrumented_apps.pop())
        if self.httpx_instrumentor is not None:
            self.httpx_instrumentor.uninstrument()
            self.httpx_instrumentor = None
        if self.provider is not None:
            self.provider.force_flush()
            self.provider.shutdown()
            self.provider = None
        self.enabled = False


def install_trace_context() -> None:
    current = logging.getLogRecordFactory()
    if isinstance(current, _TraceContextRecordFactory):
        return
    logging.setLogRecordFactory(_TraceContextRecordFactory(current))


def configure_logging(level: int = logging.INFO) -> None:
    install_trace_context()
    root = logging.getLogger()
    if root.handlers:
        return
    logging.basicConfig(level=level, format=LOG_FORMAT)


def setup_telemetry(settings: Settings, component: str = "worker") -> TelemetryRuntime:
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False, provider=None, component=component)
    if settings.otel_log_correlation:
        install_trace_context()

    provider = TracerProvider(
        resource=_resource_for(settings, component),
        sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio),
    )
    exporter = _span_exporter(settings)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)

    instrumentor = HTTPXClientInstrumentor()
    instrumentor.instrument(tracer_provider=provider)
    return TelemetryRuntime(enabled=True, provider=provider, component=component, httpx_instrumentor=instrumentor)


def setup_api_telemetry(app: FastAPI, settings: Settings) -> TelemetryRuntime:
    runtime = setup_telemetry(settings, component="api")
    runtime.instrument_app(app)
    return runtime


def shutdown_telemetry(runtime: TelemetryRuntime) -> None:
    runtime.close()


def shutdown_api_telemetry(app: FastAPI, runtime: TelemetryRuntime) -> None:
    if app in runtime.instrumented_apps:
        runtime.instrumented_apps.remove(app)
        FastAPIInstrumentor.uninstrument_app(app)
    runtime.close()


def _resource_for(settings: Settings, component: str) -> Resource:
    return Resource.create(
        {
            SERVICE_NAME: settings.otel_service_name,
            SERVICE_VERSION: settings.version,
            DEPLOYMENT_ENVIRONMENT: settings.environment,
            "leadflow.component": component,
        }
    )


def _span_exporter(settings: Settings) -> OTLPSpanExporter | None:
    endpoint = (
        settings.otel_exporter_otlp_endpoint
        or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
        or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    )
    if not endpoint:
        logger.info("no OTLP endpoint configured; spans stay in-process service=%s", settings.otel_service_name)
        return None
    headers = otlp_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS", ""))
    return OTLPSpanExporter(endpoint=endpoint, headers=headers or None)


def otlp_headers(raw: str | None) -> dict[str, str]:
    # "k1=v1,k2=v2"; pairs without "=" or with an empty key are dropped.
    pairs = (item.split("=", 1) for item in (raw or "").split(",") if "=" in item)
    return {key.strip(): value.strip() for key, value in pairs if key.strip()}
