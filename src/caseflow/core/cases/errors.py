"""
Case Workflow Errors

Every business-rule violation carries a machine-readable `code`; the API layer
maps codes to HTTP statuses.
"""

from typing import Any, Dict, List, Optional


class CaseWorkflowError(Exception):
    """Base class for case workflow failures."""

    code = "CASE_WORKFLOW_ERROR"

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.context: Dict[str, Any] = {k: v for k, v in context.items() if v is not None}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.context}


class CaseNotFoundError(CaseWorkflowError):
    code = "CASE_NOT_FOUND"

    def __init__(self, case_id: Any):
        super().__init__(f"Case not found: {case_id}", case_id=case_id)


class InvalidTransitionError(CaseWorkflowError):
    code = "INVALID_TRANSITION"

    def __init__(
        self,
        from_state: Optional[str],
        to_state: str,
        allowed: Optional[List[str]] = None,
        case_id: Any = None,
        message: Optional[str] = None,
    ):
        allowed = allowed or []
        super().__init__(
            message or (
                f"Invalid transition: {from_state} -> {to_state}. "
                f"Valid transitions: {allowed}"
            ),
            case_id=case_id,
            from_state=from_state,
            to_state=to_state,
            allowed=allowed,
        )


class CaseClosedError(CaseWorkflowError):
    code = "CASE_CLOSED"

    def __init__(self, case_id: Any, state: str):
        super().__init__(f"Case {case_id} is in terminal state '{state}'", case_id=case_id, state=state)


class StageNotDeletableError(CaseWorkflowError):
    code = "STAGE_NOT_DELETABLE"

    def __init__(self, case_id: Any, stage: str, current_state: str, reason: str):
        super().__init__(
            f"Stage '{stage}' of case {case_id} cannot be deleted: {reason}",
            case_id=case_id,
            stage=stage,
            current_state=current_state,
        )


class BackupNotFoundError(CaseWorkflowError):
    code = "BACKUP_NOT_FOUND"

    def __init__(self, backup_id: Any):
        super().__init__(f"Stage backup not found: {backup_id}", backup_id=backup_id)


class AlreadyRecreatedError(CaseWorkflowError):
    code = "ALREADY_RECREATED"

    def __init__(self, backup_id: Any, recreated_at: Optional[str] = None):
        super().__init__(
            f"Stage backup {backup_id} was already recreated",
            backup_id=backup_id,
            recreated_at=recreated_at,
        )


class ConcurrentModificationError(CaseWorkflowError):
    code = "CONCURRENT_MODIFICATION"

    def __init__(self, case_id: Any, expected_version: Optional[int], actual_version: Optional[int]):
        super().__init__(
            f"Case {case_id} was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})",
            case_id=case_id,
            expected_version=expected_version,
            actual_version=actual_version,
        )


class PersistenceError(CaseWorkflowError):
    """Storage failure; the enclosing transaction was rolled back."""

    code = "PERSISTENCE_ERROR"

    def __init__(self, operation: str, case_id: Any = None, cause: Optional[BaseException] = None):
        super().__init__(
            f"Persistence failure during {operation}: {cause}",
            operation=operation,
            case_id=case_id,
        )
