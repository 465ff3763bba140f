"""
Observability: OpenTelemetry tracing and metrics, JSON logging.
"""

from .logging import StructuredFormatter, configure_logging
from .metrics import init_metrics, record_counter, record_histogram
from .tracing import (
    add_case_to_span,
    create_span,
    get_span_id,
    get_trace_id,
    init_tracing,
    traced,
)

__all__ = [
    "init_tracing",
    "get_trace_id",
    "get_span_id",
    "create_span",
    "traced",
    "add_case_to_span",
    "init_metrics",
    "record_counter",
    "record_histogram",
    "configure_logging",
    "StructuredFormatter",
]
