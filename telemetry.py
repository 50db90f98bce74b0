#!/usr/bin/env python3
"""
Telemetry setup using OpenTelemetry and Azure Application Insights.

This module configures tracing for aiohttp client requests, Redis commands,
sqlite3 queries and the engine's own spans, exporting to Azure Monitor when an
Application Insights connection string is provided via environment variable.

Environment variables:
  - APPLICATIONINSIGHTS_CONNECTION_STRING or AZURE_MONITOR_CONNECTION_STRING
  - OTEL_SERVICE_NAME (default: feed-sync)
  - OTEL_ENVIRONMENT (maps to deployment.environment)
  - DISABLE_TELEMETRY=true to fully disable

The module is safe to import multiple times; initialization is idempotent.
"""

from __future__ import annotations

import os
import atexit
import functools
import logging
import threading
from typing import Optional
import asyncio

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.instrumentation.redis import RedisInstrumentor
from opentelemetry.instrumentation.sqlite3 import SQLite3Instrumentor

try:
    # Azure Monitor exporter is optional; only used when connection string is present
    from azure.monitor.opentelemetry.exporter import AzureMonitorTraceExporter  # type: ignore
except ImportError:
    AzureMonitorTraceExporter = None  # type: ignore

_init_lock = threading.Lock()
_initialized = False
_provider: Optional[TracerProvider] = None

_logger = logging.getLogger(__name__)


def _connection_string() -> Optional[str]:
    conn = os.environ.get("APPLICATIONINSIGHTS_CONNECTION_STRING") or os.environ.get(
        "AZURE_MONITOR_CONNECTION_STRING"
    )
    return conn or None


def init_telemetry(service_name: Optional[str] = None) -> None:
    """Initialize OpenTelemetry tracing and instrumentation.

    Safe to call multiple times. If DISABLE_TELEMETRY=true, it's a no-op.
    """
    global _initialized, _provider
    if os.environ.get("DISABLE_TELEMETRY", "false").lower() == "true":
        return
    if _initialized:
        return
    with _init_lock:
        if _initialized:
            return

        svc = service_name or os.environ.get("OTEL_SERVICE_NAME", "feed-sync")
        attrs = {"service.name": svc}
        env = os.environ.get("OTEL_ENVIRONMENT")
        if env:
            attrs["deployment.environment"] = env
        provider = TracerProvider(resource=Resource.create(attrs))

        conn = _connection_string()
        if conn and AzureMonitorTraceExporter is not None:
            try:
                provider.add_span_processor(
                    BatchSpanProcessor(AzureMonitorTraceExporter.from_connection_string(conn))
                )
                _logger.info("Telemetry initialized: exporting spans to Azure Monitor (service=%s)", svc)
            except ValueError:
                _logger.warning("Telemetry init: invalid Azure connection string; spans will not be exported")
        else:
            _logger.info("Telemetry initialized without an exporter (service=%s)", svc)

        trace.set_tracer_provider(provider)
        _provider = provider

        for instrumentor in (
            AioHttpClientInstrumentor(),
            LoggingInstrumentor(),
            RedisInstrumentor(),
            SQLite3Instrumentor(),
        ):
            try:
                instrumentor.instrument()
            except Exception as e:  # instrumentation must never block startup
                _logger.debug("Telemetry: could not enable %s: %s", type(instrumentor).__name__, e)

        _initialized = True
        atexit.register(provider.shutdown)


def get_tracer(name: str = "feed-sync"):
    """Get the OpenTelemetry tracer for a named subsystem."""
    return trace.get_tracer(name)


def trace_span(
    span_name: str | None = None,
    *,
    tracer_name: str | None = None,
    static_attrs: dict | None = None,
    attr_from_args: Optional[callable] = None,
):
    """Decorator to wrap a function call in an OpenTelemetry span.

    Args:
        span_name: Name of the span (defaults to module.funcname)
        tracer_name: Tracer name (defaults to the first dotted part of span_name)
        static_attrs: Attributes set on every span
        attr_from_args: Callable taking the call's (*args, **kwargs) and
                        returning a dict of per-call attributes

    Works with sync and async functions. Exceptions are recorded on the span
    and re-raised.
    """

    def _decorator(func):
        name = span_name or f"{func.__module__}.{func.__name__}"
        tracer = get_tracer(tracer_name or name.split(".")[0] or "feed-sync")

        def _set_attrs(span, args, kwargs):
            attrs = dict(static_attrs or {})
            if callable(attr_from_args):
                try:
                    attrs.update(attr_from_args(*args, **kwargs) or {})
                except (TypeError, AttributeError, KeyError) as e:
                    _logger.debug("Telemetry: no attributes for span %s: %s", name, e)
            for key, value in attrs.items():
                span.set_attribute(key, value)

        def _fail(span, e):
            span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR))

        if asyncio.iscoroutinefunction(func):

            @functools.wraps(func)
            async def _aw(*args, **kwargs):
                with tracer.start_as_current_span(name) as span:
                    _set_attrs(span, args, kwargs)
                    try:
                        return await func(*args, **kwargs)
                    except Exception as e:
                        _fail(span, e)
                        raise

            return _aw

        @functools.wraps(func)
        def _w(*args, **kwargs):
            with tracer.start_as_current_span(name) as span:
                _set_attrs(span, args, kwargs)
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    _fail(span, e)
                    raise

        return _w

    return _decorator
