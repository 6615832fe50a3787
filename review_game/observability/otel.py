from __future__ import annotations

from fastapi import FastAPI

from ..settings import Settings
from .logging import get_logger


def configure_otel(settings: Settings) -> None:
    """
    Optional OpenTelemetry setup (install the ``otel`` extra).

    - If OTEL is disabled, do nothing.
    - If the extra is not installed, log once and do nothing.
    - If no OTLP endpoint is configured, export spans to the console.
    """
    if not settings.otel_enabled:
        return

    log = get_logger("otel")

    try:
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
            OTLPSpanExporter,
        )
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
    except ImportError:
        log.warning("otel_disabled_missing_deps")
        return

    service_name = str(settings.otel_service_name or settings.service_name).strip()
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))

    endpoint = str(settings.otel_exporter_otlp_endpoint or "").strip()
    if endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
        log.info("otel_configured", exporter="otlp_http", endpoint=endpoint)
    else:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
        log.info("otel_configured", exporter="console")

    trace.set_tracer_provider(provider)


def instrument_app(app: FastAPI, settings: Settings) -> None:
    """Instrument inbound FastAPI requests and outbound httpx calls when tracing is on."""
    if not settings.otel_enabled:
        return

    log = get_logger("otel")

    try:
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
    except ImportError:
        log.warning("otel_instrument_skipped_missing_deps")
        return

    FastAPIInstrumentor.instrument_app(app)
    HTTPXClientInstrumentor().instrument()
    log.info("otel_instrumented", targets=["fastapi", "httpx"])
