"""
API Response Envelopes

List endpoints wrap their rows in `{"data": [...], "meta": {...}}`; every
error is returned as `{"error": {...}}`.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ListMeta(BaseModel):
    """Pagination and request metadata of a list response."""
    total: int
    limit: int
    offset: int
    has_more: bool
    trace_id: str
    correlation_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)


class ListResponse(BaseModel, Generic[T]):
    data: List[T]
    meta: ListMeta

    @classmethod
    def create(
        cls,
        data: List[T],
        total: int,
        limit: int,
        offset: int,
        trace_id: str,
        correlation_id: Optional[str] = None,
    ) -> "ListResponse[T]":
        return cls(
            data=data,
            meta=ListMeta(
                total=total,
                limit=limit,
                offset=offset,
                has_more=(offset + len(data)) < total,
                trace_id=trace_id,
                correlation_id=correlation_id,
            ),
        )


class ErrorDetail(BaseModel):
    """One failing field of a rejected request."""
    field: Optional[str] = None
    message: str
    code: Optional[str] = None


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Optional[List[ErrorDetail]] = None
    context: Optional[Dict[str, Any]] = Field(
        None, description="Structured facts about the failure, e.g. case_id and allowed targets"
    )
    trace_id: str
    timestamp: datetime = Field(default_factory=_utcnow)


class ErrorResponse(BaseModel):
    """
    Error envelope.

    {
        "error": {
            "code": "INVALID_TRANSITION",
            "message": "Invalid transition: enquiry -> production. ...",
            "context": {"case_id": 1, "from_state": "enquiry", "allowed": [...]},
            "trace_id": "...",
            "timestamp": "2026-01-19T12:00:00Z"
        }
    }
    """
    error: ErrorBody


ERROR_RESPONSES: Dict[int, Dict[str, Any]] = {
    status: {"model": ErrorResponse, "description": description}
    for status, description in (
        (400, "Request validation failed"),
        (404, "Case or backup not found"),
        (409, "Conflicts with the current state or version of the case"),
        (422, "Transition not allowed by the stage graph"),
    )
}
