#!/usr/bin/env python3
"""
OpenTelemetry tracing for the ingestion pipeline.

Spans wrap each refresh cycle, each feed fetch, each transport request, each
enrichment job and every prune. aiohttp, logging and sqlite3 are instrumented
so their work nests under those spans. Settings come from ``config``:

  - DISABLE_TELEMETRY=true turns tracing off (spans become no-ops)
  - OTEL_SERVICE_NAME (default: newsdeck)
  - OTEL_ENVIRONMENT (maps to deployment.environment)
  - OTEL_CONSOLE_EXPORT=true prints finished spans to stdout
"""

import atexit
import threading
from functools import wraps
from inspect import iscoroutinefunction
from typing import Any, Callable, Dict, Optional

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.instrumentation.sqlite3 import SQLite3Instrumentor

from config import config, get_logger

logger = get_logger("telemetry")

AttrCallback = Callable[..., Optional[Dict[str, Any]]]

INSTRUMENTORS = (
    ("aiohttp", AioHttpClientInstrumentor),
    ("logging", LoggingInstrumentor),
    ("sqlite3", SQLite3Instrumentor),
)

_init_lock = threading.Lock()
_provider: Optional[TracerProvider] = None


def init_telemetry(service_name: Optional[str] = None) -> Optional[TracerProvider]:
    """Install the tracer provider and library instrumentation, once per process.

    Returns the provider in use, or None when telemetry is disabled.
    """
    global _provider
    if not config.TELEMETRY_ENABLED:
        return None
    with _init_lock:
        if _provider is not None:
            return _provider

        attrs = {"service.name": service_name or config.OTEL_SERVICE_NAME}
        if config.OTEL_ENVIRONMENT:
            attrs["deployment.environment"] = config.OTEL_ENVIRONMENT

        existing = trace.get_tracer_provider()
        if isinstance(existing, TracerProvider):
            # Installed by external auto-instrumentation
            provider = existing
        else:
            provider = TracerProvider(resource=Resource.create(attrs))
            trace.set_tracer_provider(provider)

        if config.OTEL_CONSOLE_EXPORT:
            provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

        for label, instrumentor in INSTRUMENTORS:
            try:
                instrumentor().instrument()
            except Exception as e:
                logger.debug(f"{label} instrumentation unavailable: {e}")

        atexit.register(provider.shutdown)
        _provider = provider
        logger.info(f"Tracing enabled for {attrs['service.name']} "
                    f"(console export {'on' if config.OTEL_CONSOLE_EXPORT else 'off'})")
        return provider


def _attributes(callback: Optional[AttrCallback], *args, **kwargs) -> Dict[str, Any]:
    if callback is None:
        return {}
    try:
        return callback(*args, **kwargs) or {}
    except Exception as e:
        logger.debug(f"Span attribute callback failed: {e}")
        return {}


def _set_attributes(span, attrs: Dict[str, Any]) -> None:
    for key, value in attrs.items():
        if value is not None:
            span.set_attribute(key, value)


def trace_span(span_name: Optional[str] = None, *,
               tracer_name: str = "newsdeck",
               attr_from_args: Optional[AttrCallback] = None,
               attr_from_result: Optional[AttrCallback] = None):
    """Run the decorated function (sync or async) inside a span.

    Args:
        span_name: Span name; defaults to ``module.qualname``.
        tracer_name: Pipeline stage the span belongs to.
        attr_from_args: Called with the call's arguments, returns span attributes.
        attr_from_result: Called with the return value, returns span attributes.

    Exceptions are recorded on the span, marked as errors and re-raised.
    Attribute callbacks never break the wrapped call.
    """

    def _decorator(func):
        name = span_name or f"{func.__module__}.{func.__qualname__}"

        if iscoroutinefunction(func):
            @wraps(func)
            async def _async_wrapper(*args, **kwargs):
                with trace.get_tracer(tracer_name).start_as_current_span(name) as span:
                    _set_attributes(span, _attributes(attr_from_args, *args, **kwargs))
                    result = await func(*args, **kwargs)
                    _set_attributes(span, _attributes(attr_from_result, result))
                    return result

            return _async_wrapper

        @wraps(func)
        def _wrapper(*args, **kwargs):
            with trace.get_tracer(tracer_name).start_as_current_span(name) as span:
                _set_attributes(span, _attributes(attr_from_args, *args, **kwargs))
                result = func(*args, **kwargs)
                _set_attributes(span, _attributes(attr_from_result, result))
                return result

        return _wrapper

    return _decorator
