#!/usr/bin/env python3
"""
OpenTelemetry tracing for the aggregator.

Spans cover scheduler ticks, feed fetches, ingestion batches, database
operations and the `agg` command. Nothing is exported unless
OTEL_TRACES_CONSOLE=true, in which case finished spans are printed to stderr.

Environment variables:
  - OTEL_SERVICE_NAME (default: gator)
  - OTEL_ENVIRONMENT (maps to deployment.environment)
  - OTEL_TRACES_CONSOLE=true to print finished spans to stderr
  - DISABLE_TELEMETRY=true to skip provider setup entirely
"""

import atexit
import inspect
import logging
import os
import sys
import threading
from functools import wraps
from typing import Any, Callable, Dict, Optional

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

_logger = logging.getLogger("Gator.telemetry")
_lock = threading.Lock()
_provider: Optional[TracerProvider] = None


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "false").strip().lower() == "true"


def init_telemetry(service_name: Optional[str] = None) -> None:
    """Install the tracer provider once per process; later calls are no-ops."""
    global _provider
    if _provider is not None or _env_flag("DISABLE_TELEMETRY"):
        return
    with _lock:
        if _provider is not None:
            return

        current = trace.get_tracer_provider()
        if isinstance(current, TracerProvider):
            # Someone (e.g. opentelemetry-instrument) already configured tracing
            _provider = current
            return

        attributes = {"service.name": service_name or os.environ.get("OTEL_SERVICE_NAME", "gator")}
        environment = os.environ.get("OTEL_ENVIRONMENT")
        if environment:
            attributes["deployment.environment"] = environment

        provider = TracerProvider(resource=Resource.create(attributes))
        if _env_flag("OTEL_TRACES_CONSOLE"):
            provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter(out=sys.stderr)))
        trace.set_tracer_provider(provider)
        _provider = provider
        atexit.register(provider.shutdown)
        _logger.debug(f"Tracing enabled for {attributes['service.name']}")


def trace_span(
    span_name: Optional[str] = None,
    *,
    tracer_name: str = "gator",
    static_attrs: Optional[Dict[str, Any]] = None,
    attr_from_args: Optional[Callable[..., Dict[str, Any]]] = None,
):
    """Run the decorated function (sync or async) inside a span.

    static_attrs are set on every span; attr_from_args receives the call's
    arguments and returns extra attributes. Exceptions are recorded on the
    span and re-raised unchanged.
    """

    def decorator(func):
        name = span_name or f"{func.__module__}.{func.__name__}"

        def start(args, kwargs):
            attributes = dict(static_attrs or {})
            if attr_from_args is not None:
                try:
                    attributes.update(attr_from_args(*args, **kwargs) or {})
                except Exception as e:
                    _logger.debug(f"Span attributes for {name} unavailable: {e}")
            return trace.get_tracer(tracer_name).start_as_current_span(
                name, attributes=attributes, record_exception=False, set_status_on_exception=False
            )

        def fail(span, error: Exception) -> None:
            span.record_exception(error)
            span.set_status(Status(StatusCode.ERROR, str(error)))

        if inspect.iscoroutinefunction(func):
            @wraps(func)
            async def async_wrapper(*args, **kwargs):
                with start(args, kwargs) as span:
                    try:
                        return await func(*args, **kwargs)
                    except Exception as e:
                        fail(span, e)
                        raise
            return async_wrapper

        @wraps(func)
        def wrapper(*args, **kwargs):
            with start(args, kwargs) as span:
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    fail(span, e)
                    raise
        return wrapper

    return decorator
