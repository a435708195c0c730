#!/usr/bin/env python3
"""
Telemetry setup using OpenTelemetry and (optionally) Azure Application Insights.

Tracing covers aiohttp client requests, sqlite3 calls and the pipeline's own
spans (per-source fetch, relay fetch, store operations, export, verification).
Spans are exported to Azure Monitor when a connection string is configured and
the exporter package is installed; otherwise they stay in-process.

Initialization is driven by values from Config and is idempotent.
"""

from __future__ import annotations

import asyncio
import atexit
import functools
import logging
import threading
from typing import Callable, Optional

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.instrumentation.sqlite3 import SQLite3Instrumentor

try:
    # Azure Monitor exporter is optional; only used when a connection string is present
    from azure.monitor.opentelemetry.exporter import AzureMonitorTraceExporter  # type: ignore
    _AZURE_AVAILABLE = True
except ImportError:
    AzureMonitorTraceExporter = None  # type: ignore
    _AZURE_AVAILABLE = False

_init_lock = threading.Lock()
_initialized = False
_provider: Optional[TracerProvider] = None

_logger = logging.getLogger("SmallWeb.telemetry")


def init_telemetry(
    service_name: str = "smallweb-ingest",
    enabled: bool = True,
    connection_string: Optional[str] = None,
    environment: Optional[str] = None,
) -> bool:
    """Initialize OpenTelemetry tracing and instrumentation.

    Returns True when a tracer provider was installed by this call.
    """
    global _initialized, _provider
    if not enabled or _initialized:
        return False
    with _init_lock:
        if _initialized:
            return False

        attrs = {"service.name": service_name}
        if environment:
            attrs["deployment.environment"] = environment

        existing = trace.get_tracer_provider()
        if isinstance(existing, TracerProvider):
            provider = existing
        else:
            provider = TracerProvider(resource=Resource.create(attrs))
            trace.set_tracer_provider(provider)

        if connection_string and _AZURE_AVAILABLE:
            try:
                exporter = AzureMonitorTraceExporter.from_connection_string(connection_string)  # type: ignore
                provider.add_span_processor(BatchSpanProcessor(exporter))
                _logger.info("Telemetry initialized: Azure Monitor trace exporter enabled (service=%s)", service_name)
            except ValueError as e:
                _logger.warning("Telemetry init: failed to enable Azure exporter (%s); spans will not be exported", e)
        else:
            _logger.info("Telemetry initialized without exporter (service=%s); spans stay in-process", service_name)
            if connection_string and not _AZURE_AVAILABLE:
                _logger.warning("Azure exporter package unavailable; install 'azure-monitor-opentelemetry-exporter'")

        # Inject trace/span ids into log records without changing the log format
        LoggingInstrumentor().instrument(set_logging_format=False)
        AioHttpClientInstrumentor().instrument()
        SQLite3Instrumentor().instrument()

        _provider = provider
        _initialized = True
        atexit.register(shutdown_telemetry)
        return True


def shutdown_telemetry() -> None:
    """Flush pending spans (safe to call more than once)."""
    if _provider is not None:
        _provider.shutdown()


def get_tracer(name: str = "smallweb-ingest"):
    """Get the OpenTelemetry tracer for a named subsystem."""
    return trace.get_tracer(name)


def _apply_attributes(span, static_attrs: Optional[dict], attr_from_args: Optional[Callable], args, kwargs) -> None:
    if span is None or not span.is_recording():
        return
    attributes = dict(static_attrs or {})
    if callable(attr_from_args):
        try:
            attributes.update(attr_from_args(*args, **kwargs) or {})
        except (TypeError, ValueError, AttributeError, KeyError) as e:
            _logger.debug("Span attribute extraction failed: %s", e)
    for key, value in attributes.items():
        if value is not None:
            span.set_attribute(key, value)


def trace_span(
    span_name: str | None = None,
    *,
    tracer_name: str | None = None,
    static_attrs: dict | None = None,
    attr_from_args: Optional[Callable] = None,
):
    """Decorator to wrap a function call in an OpenTelemetry span.

    Args:
        span_name: Name of the span (defaults to module.funcname)
        tracer_name: Tracer name (defaults to the first segment of span_name)
        static_attrs: Attributes set on every span
        attr_from_args: Callable receiving the wrapped call's (*args, **kwargs)
                        and returning extra attributes

    Works with sync and async functions. Exceptions are recorded on the span
    and re-raised.
    """

    def _decorator(func):
        name = span_name or f"{func.__module__}.{func.__name__}"
        tracer = get_tracer(tracer_name or name.split(".")[0] or "smallweb-ingest")

        if asyncio.iscoroutinefunction(func):
            @functools.wraps(func)
            async def _async_wrapper(*args, **kwargs):
                with tracer.start_as_current_span(name, record_exception=False, set_status_on_exception=False) as span:
                    _apply_attributes(span, static_attrs, attr_from_args, args, kwargs)
                    try:
                        return await func(*args, **kwargs)
                    except Exception as e:
                        span.record_exception(e)
                        span.set_status(Status(StatusCode.ERROR))
                        raise

            return _async_wrapper

        @functools.wraps(func)
        def _sync_wrapper(*args, **kwargs):
            with tracer.start_as_current_span(name, record_exception=False, set_status_on_exception=False) as span:
                _apply_attributes(span, static_attrs, attr_from_args, args, kwargs)
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    span.record_exception(e)
                    span.set_status(Status(StatusCode.ERROR))
                    raise

        return _sync_wrapper

    return _decorator
