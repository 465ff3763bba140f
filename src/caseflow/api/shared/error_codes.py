"""
Error Codes

Machine-readable codes returned in the error envelope and their HTTP status.
Workflow codes match `CaseWorkflowError.code` one to one.
"""

from enum import Enum


class ErrorCode(str, Enum):
    # Request
    VALIDATION_ERROR = "VALIDATION_ERROR"

    # Case workflow
    CASE_NOT_FOUND = "CASE_NOT_FOUND"
    BACKUP_NOT_FOUND = "BACKUP_NOT_FOUND"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    CASE_CLOSED = "CASE_CLOSED"
    STAGE_NOT_DELETABLE = "STAGE_NOT_DELETABLE"
    ALREADY_RECREATED = "ALREADY_RECREATED"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"

    # Server
    PERSISTENCE_ERROR = "PERSISTENCE_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


ERROR_STATUS_CODES = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.CASE_NOT_FOUND: 404,
    ErrorCode.BACKUP_NOT_FOUND: 404,
    ErrorCode.CASE_CLOSED: 409,
    ErrorCode.STAGE_NOT_DELETABLE: 409,
    ErrorCode.ALREADY_RECREATED: 409,
    ErrorCode.CONCURRENT_MODIFICATION: 409,
    ErrorCode.INVALID_TRANSITION: 422,
    ErrorCode.PERSISTENCE_ERROR: 500,
    ErrorCode.INTERNAL_ERROR: 500,
}


def get_status_code(error_code: ErrorCode) -> int:
    """HTTP status for an error code; unmapped codes are 500."""
    return ERROR_STATUS_CODES.get(error_code, 500)


def to_error_code(code: str) -> ErrorCode:
    """Map a workflow error's string code onto the API enum."""
    try:
        return ErrorCode(code)
    except ValueError:
        return ErrorCode.INTERNAL_ERROR


def is_server_error(error_code: ErrorCode) -> bool:
    return get_status_code(error_code) >= 500
