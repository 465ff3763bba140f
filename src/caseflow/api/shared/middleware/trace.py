"""
Request Context Middleware

Carries the trace and correlation ids of each request in context variables
and logs every request with its status and duration.
"""

import contextvars
import logging
import time
from typing import Optional
from uuid import uuid4

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from ....core.observability import get_trace_id as get_otel_trace_id

logger = logging.getLogger(__name__)

trace_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("trace_id", default="")
correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("correlation_id", default="")


def get_trace_id() -> str:
    """
    Get the current trace ID.

    Prefers the request's trace ID, then the active OpenTelemetry span,
    and generates one otherwise.
    """
    return trace_id_var.get() or get_otel_trace_id() or str(uuid4())


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID, or None if not set."""
    return correlation_id_var.get() or None


class TraceMiddleware(BaseHTTPMiddleware):
    """
    Reads `X-Trace-ID` (generated when absent) and `X-Correlation-ID`
    (typically a case number) and echoes both on the response.
    """

    async def dispatch(self, request: Request, call_next):
        trace_id = request.headers.get("X-Trace-ID") or get_otel_trace_id() or str(uuid4())
        trace_id_var.set(trace_id)

        correlation_id = request.headers.get("X-Correlation-ID") or ""
        correlation_id_var.set(correlation_id)

        request.state.trace_id = trace_id
        request.state.correlation_id = correlation_id

        started = time.monotonic()
        response = await call_next(request)
        elapsed_ms = round((time.monotonic() - started) * 1000, 1)

        logger.info(
            f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms}ms)",
            extra={"trace_id": trace_id, "path": request.url.path, "duration_ms": elapsed_ms},
        )

        response.headers["X-Trace-ID"] = trace_id
        if correlation_id:
            response.headers["X-Correlation-ID"] = correlation_id

        return response
