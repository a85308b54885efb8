from __future__ import annotations

import os
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import Span, Status, StatusCode

from app.core.config import get_settings


_exporters_installed = False
_provider: TracerProvider | None = None


def _resource(service_name: str) -> Resource:
    return Resource.create(
        {
            "service.name": f"dealflow-{service_name}",
            "service.version": os.getenv("APP_VERSION", "0.1.0"),
            "deployment.environment": get_settings().app_env,
        }
    )


def _provider_for(service_name: str) -> TracerProvider:
    global _provider

    if _provider is None:
        _provider = TracerProvider(resource=_resource(service_name))
        trace.set_tracer_provider(_provider)
    return _provider


def setup_otel(service_name: str, enable: bool) -> TracerProvider | None:
    """Install the tracer provider for the API process or the sweep worker.

    Exporters are picked from the environment: OTLP when
    ``OTEL_EXPORTER_OTLP_ENDPOINT`` is set, console when
    ``OTEL_CONSOLE_EXPORTER=true``. Calling it twice is harmless.
    """
    global _exporters_installed

    if not enable:
        return None

    provider = _provider_for(service_name)
    if _exporters_installed:
        return provider

    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    if os.getenv("OTEL_CONSOLE_EXPORTER", "false").lower() == "true":
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    _exporters_installed = True
    return provider


def setup_inmemory_otel(service_name: str = "api") -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    _provider_for(service_name).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def set_span_attributes(span: Span, **attributes: Any) -> None:
    """Set string/number/bool attributes, stringifying UUIDs and dropping ``None``."""
    for key, value in attributes.items():
        if value is None:
            continue
        if not isinstance(value, (str, bool, int, float)):
            value = str(value)
        span.set_attribute(key, value)


def mark_span_error(span: Span, exc: BaseException) -> None:
    span.record_exception(exc)
    span.set_status(Status(StatusCode.ERROR, str(exc)[:500]))


def get_fastapi_server_request_hook():
    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None or not span.is_recording():
            return
        headers = dict(scope.get("headers", []))
        set_span_attributes(
            span,
            correlation_id=_header(headers, b"x-correlation-id"),
            organization_id=_header(headers, b"x-organization-id"),
        )

    return server_request_hook


def _header(headers: dict[bytes, bytes], name: bytes) -> str | None:
    raw = headers.get(name)
    if not raw:
        return None
    return raw.decode("utf-8", errors="replace")
