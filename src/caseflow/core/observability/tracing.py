"""
OpenTelemetry Tracing

Spans around case mutations and analytics runs. Without `init_tracing` the
global no-op provider is used, so spans cost nothing in tests.
"""

import logging
from contextlib import contextmanager
from functools import wraps
from typing import Any, Callable, Dict, List, Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.propagate import set_global_textmap
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SpanExporter
from opentelemetry.trace import Span, Status, StatusCode
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

logger = logging.getLogger(__name__)

TRACER_NAME = "caseflow"

_tracer: Optional[trace.Tracer] = None


def _exporters(otlp_endpoint: Optional[str], console_export: bool) -> List[SpanExporter]:
    exporters: List[SpanExporter] = []
    if otlp_endpoint:
        exporters.append(OTLPSpanExporter(endpoint=otlp_endpoint, insecure=True))
        logger.info(f"Span export to {otlp_endpoint}")
    if console_export:
        exporters.append(ConsoleSpanExporter())
    return exporters


def init_tracing(
    service_name: str,
    service_version: str,
    otlp_endpoint: Optional[str] = None,
    console_export: bool = False,
) -> trace.Tracer:
    """
    Install an SDK tracer provider for the service.

    Args:
        service_name: Reported as `service.name`
        service_version: Reported as `service.version`
        otlp_endpoint: gRPC collector, e.g. "http://localhost:4317"
        console_export: Print finished spans to stdout
    """
    global _tracer

    provider = TracerProvider(
        resource=Resource.create({SERVICE_NAME: service_name, SERVICE_VERSION: service_version})
    )
    for exporter in _exporters(otlp_endpoint, console_export):
        provider.add_span_processor(BatchSpanProcessor(exporter))

    trace.set_tracer_provider(provider)
    set_global_textmap(TraceContextTextMapPropagator())

    _tracer = trace.get_tracer(TRACER_NAME, service_version)
    return _tracer


def get_tracer() -> trace.Tracer:
    global _tracer
    if _tracer is None:
        _tracer = trace.get_tracer(TRACER_NAME)
    return _tracer


def get_trace_id() -> Optional[str]:
    """Hex trace id of the active span, or None outside a recorded span."""
    context = trace.get_current_span().get_span_context()
    if context.is_valid:
        return format(context.trace_id, "032x")
    return None


def get_span_id() -> Optional[str]:
    context = trace.get_current_span().get_span_context()
    if context.is_valid:
        return format(context.span_id, "016x")
    return None


@contextmanager
def create_span(name: str, attributes: Optional[Dict[str, Any]] = None):
    """
    Run a block inside a span; exceptions mark the span as failed.

    Usage:
        with create_span("case.transition", {"case_id": 7}) as span:
            ...
    """
    with get_tracer().start_as_current_span(name, attributes=attributes or {}) as span:
        try:
            yield span
        except Exception as e:
            span.set_status(Status(StatusCode.ERROR, str(e)))
            span.record_exception(e)
            raise


def traced(name: Optional[str] = None) -> Callable:
    """Decorator wrapping a function call in a span."""
    def decorator(func: Callable) -> Callable:
        span_name = name or func.__qualname__

        @wraps(func)
        def wrapper(*args, **kwargs):
            with create_span(span_name):
                return func(*args, **kwargs)

        return wrapper

    return decorator


def add_case_to_span(case_id: int, case_number: Optional[str] = None, span: Optional[Span] = None):
    """Tag a span with the case being mutated."""
    span = span or trace.get_current_span()
    span.set_attribute("case.id", case_id)
    if case_number:
        span.set_attribute("case.number", case_number)
