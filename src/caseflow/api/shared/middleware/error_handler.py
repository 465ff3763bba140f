"""
Global Error Handlers

Turn engine errors, request validation failures and unexpected exceptions
into the `{"error": {...}}` envelope.
"""

import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ....core.cases.errors import CaseWorkflowError
from ..error_codes import ErrorCode, get_status_code, is_server_error, to_error_code
from ..responses import ErrorBody, ErrorDetail
from .trace import get_trace_id

logger = logging.getLogger(__name__)


def _error_response(status_code: int, body: ErrorBody) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": body.model_dump(mode="json")}
    )


def register_error_handlers(app: FastAPI):
    """
    Register exception handlers on the app.

    - CaseWorkflowError: status from its code, context passed through
    - RequestValidationError: 400 with one detail per field
    - ValueError: 400 (engine argument checks, snapshot validation)
    - Exception: 500 without internals
    """

    @app.exception_handler(CaseWorkflowError)
    async def workflow_exception_handler(request: Request, exc: CaseWorkflowError):
        trace_id = get_trace_id()
        code = to_error_code(exc.code)
        server_side = is_server_error(code)

        log = logger.error if server_side else logger.warning
        log(
            f"Workflow Error: {exc.code} - {exc.message}",
            extra={
                "trace_id": trace_id,
                "error_code": exc.code,
                "path": request.url.path,
                "case_id": exc.context.get("case_id"),
            }
        )

        # Persistence messages carry driver text; keep it in the logs only
        message = exc.message
        if code is ErrorCode.PERSISTENCE_ERROR:
            message = f"Persistence failure during {exc.context.get('operation')}"

        return _error_response(
            get_status_code(code),
            ErrorBody(
                code=code.value,
                message=message,
                context=exc.context or None,
                trace_id=trace_id,
            )
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        trace_id = get_trace_id()

        details = [
            ErrorDetail(
                field=".".join(str(loc) for loc in error["loc"]),
                message=error["msg"],
                code=error["type"],
            )
            for error in exc.errors()
        ]

        logger.warning(
            f"Validation Error: {len(details)} field(s)",
            extra={
                "trace_id": trace_id,
                "path": request.url.path,
                "errors": [d.model_dump() for d in details]
            }
        )

        return _error_response(
            400,
            ErrorBody(
                code=ErrorCode.VALIDATION_ERROR.value,
                message="Request validation failed",
                details=details,
                trace_id=trace_id
            )
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        trace_id = get_trace_id()

        logger.warning(
            f"Rejected request: {exc}",
            extra={"trace_id": trace_id, "path": request.url.path}
        )

        return _error_response(
            400,
            ErrorBody(
                code=ErrorCode.VALIDATION_ERROR.value,
                message=str(exc),
                trace_id=trace_id
            )
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        trace_id = get_trace_id()

        logger.error(
            f"Unhandled Exception: {type(exc).__name__}: {exc}",
            extra={
                "trace_id": trace_id,
                "path": request.url.path,
                "traceback": traceback.format_exc()
            }
        )

        return _error_response(
            500,
            ErrorBody(
                code=ErrorCode.INTERNAL_ERROR.value,
                message="An internal error occurred",
                trace_id=trace_id
            )
        )
