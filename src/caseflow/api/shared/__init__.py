"""
Shared API plumbing: response envelopes, error codes and middleware.
"""

from .error_codes import ErrorCode, get_status_code, is_server_error, to_error_code
from .middleware import TraceMiddleware, get_correlation_id, get_trace_id, register_error_handlers
from .responses import ERROR_RESPONSES, ErrorBody, ErrorDetail, ErrorResponse, ListMeta, ListResponse

__all__ = [
    "ListMeta",
    "ListResponse",
    "ErrorDetail",
    "ErrorBody",
    "ErrorResponse",
    "ERROR_RESPONSES",
    "ErrorCode",
    "get_status_code",
    "to_error_code",
    "is_server_error",
    "register_error_handlers",
    "TraceMiddleware",
    "get_trace_id",
    "get_correlation_id",
]
