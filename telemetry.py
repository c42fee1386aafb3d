#!/usr/bin/env python3
"""
OpenTelemetry tracing for the ingester.

Every poll gets an ``ingester.poll_feed`` span with the HTTP request as a
child span (aiohttp client instrumentation). Log records carry the active
trace and span ids. Spans leave the process only when a connection string
is set and the Azure Monitor exporter is installed.

Environment:
  APPLICATIONINSIGHTS_CONNECTION_STRING / AZURE_MONITOR_CONNECTION_STRING
  OTEL_SERVICE_NAME      service.name resource attribute
  OTEL_ENVIRONMENT       deployment.environment resource attribute
  DISABLE_TELEMETRY=true skips initialization entirely (used by the tests)
"""

from __future__ import annotations

import os
import atexit
import logging
import threading
from functools import wraps
from typing import Callable, Optional
import inspect

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor

_init_lock = threading.Lock()
_initialized = False
_provider: Optional[TracerProvider] = None

_logger = logging.getLogger(__name__)


def _telemetry_disabled() -> bool:
    return os.environ.get("DISABLE_TELEMETRY", "false").lower() == "true"


def _connection_string() -> Optional[str]:
    return os.environ.get("APPLICATIONINSIGHTS_CONNECTION_STRING") or os.environ.get(
        "AZURE_MONITOR_CONNECTION_STRING"
    )


def _add_azure_exporter(provider: TracerProvider, conn: str, svc: str) -> bool:
    """Attach the Azure Monitor exporter; returns False when it is not installed."""
    try:
        from azure.monitor.opentelemetry.exporter import AzureMonitorTraceExporter
    except ImportError as e:
        _logger.warning(
            "Azure exporter package unavailable; install 'azure-monitor-opentelemetry-exporter'. Import error: %r",
            e,
        )
        return False
    exporter = AzureMonitorTraceExporter.from_connection_string(conn)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    _logger.info("Telemetry initialized: Azure Monitor trace exporter enabled (service=%s)", svc)
    return True


def init_telemetry(service_name: Optional[str] = None) -> None:
    """Install the tracer provider and the aiohttp/logging instrumentation once."""
    global _initialized, _provider
    if _telemetry_disabled() or _initialized:
        return
    with _init_lock:
        if _initialized:
            return

        svc = service_name or os.environ.get("OTEL_SERVICE_NAME", "feed-ingester")
        attrs = {"service.name": svc}
        env = os.environ.get("OTEL_ENVIRONMENT")
        if env:
            attrs["deployment.environment"] = env

        # Reuse a provider installed by external auto-instrumentation
        existing = trace.get_tracer_provider()
        if isinstance(existing, TracerProvider):
            provider = existing
        else:
            provider = TracerProvider(resource=Resource.create(attrs))
            trace.set_tracer_provider(provider)
        _provider = provider

        conn = _connection_string()
        if not (conn and _add_azure_exporter(provider, conn, svc)):
            _logger.info("Telemetry initialized without exporter (service=%s); spans stay in-process", svc)

        AioHttpClientInstrumentor().instrument()
        # Inject trace/span ids into log records as otelTraceID / otelSpanID without changing format
        LoggingInstrumentor().instrument()

        atexit.register(provider.shutdown)
        _initialized = True


def get_tracer(name: str = "feed-ingester"):
    """Get the OpenTelemetry tracer for a named subsystem."""
    return trace.get_tracer(name)


def trace_span(
    span_name: str | None = None,
    *,
    tracer_name: str | None = None,
    static_attrs: dict | None = None,
    attr_from_args: Optional[Callable[..., dict]] = None,
):
    """Run the decorated sync or async callable inside a span.

    ``attr_from_args`` receives the call's arguments and returns extra span
    attributes (e.g. the feed id); ``static_attrs`` are added to every span.
    The tracer defaults to the first dotted segment of the span name. Raised
    exceptions are recorded on the span and propagate unchanged.
    """

    def _decorator(func):
        name = span_name or f"{func.__module__}.{func.__name__}"
        tname = tracer_name or name.split(".")[0] or "feed-ingester"

        def _set_attrs(span, args, kwargs):
            attrs = dict(static_attrs or {})
            if callable(attr_from_args):
                try:
                    attrs.update(attr_from_args(*args, **kwargs) or {})
                except (TypeError, ValueError, AttributeError):
                    # Attribute extraction must never break the wrapped call
                    pass
            for k, v in attrs.items():
                span.set_attribute(k, v)

        def _record(span, e):
            span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR))

        if inspect.iscoroutinefunction(func):

            @wraps(func)
            async def _aw(*args, **kwargs):
                with get_tracer(tname).start_as_current_span(name) as span:
                    _set_attrs(span, args, kwargs)
                    try:
                        return await func(*args, **kwargs)
                    except Exception as e:
                        _record(span, e)
                        raise

            return _aw

        @wraps(func)
        def _w(*args, **kwargs):
            with get_tracer(tname).start_as_current_span(name) as span:
                _set_attrs(span, args, kwargs)
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    _record(span, e)
                    raise

        return _w

    return _decorator
