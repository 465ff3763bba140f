"""
Case Lifecycle

Stage graph, workflow engine, stage backups, progress and analytics.
"""

from .stages import (
    CaseStage,
    PIPELINE,
    TERMINAL_STAGES,
    STAGE_DISPLAY_NAMES,
    StageDefinition,
    get_stage_definition,
)
from .errors import (
    CaseWorkflowError,
    CaseNotFoundError,
    InvalidTransitionError,
    CaseClosedError,
    StageNotDeletableError,
    BackupNotFoundError,
    AlreadyRecreatedError,
    ConcurrentModificationError,
    PersistenceError,
)
from .models import (
    CaseRecord,
    CaseAssignment,
    Transition,
    TransitionKind,
    StageRecord,
    StageBackup,
    StageSnapshot,
    WorkflowProgress,
    CaseAnalytics,
    load_snapshot,
)
from .store import CaseStore
from .document_ids import DocumentIdGenerator, SequenceDocumentIdGenerator, fiscal_year_code
from .progress import WorkflowProgressCalculator
from .analytics import AnalyticsAggregator
from .integrity import IntegrityReport, check_chain
from .workflow import CaseMutation, CaseWorkflowEngine, get_workflow_engine, reset_workflow_engine

__all__ = [
    "CaseStage",
    "PIPELINE",
    "TERMINAL_STAGES",
    "STAGE_DISPLAY_NAMES",
    "StageDefinition",
    "get_stage_definition",
    "CaseWorkflowError",
    "CaseNotFoundError",
    "InvalidTransitionError",
    "CaseClosedError",
    "StageNotDeletableError",
    "BackupNotFoundError",
    "AlreadyRecreatedError",
    "ConcurrentModificationError",
    "PersistenceError",
    "CaseRecord",
    "CaseAssignment",
    "Transition",
    "TransitionKind",
    "StageRecord",
    "StageBackup",
    "StageSnapshot",
    "WorkflowProgress",
    "CaseAnalytics",
    "load_snapshot",
    "CaseStore",
    "DocumentIdGenerator",
    "SequenceDocumentIdGenerator",
    "fiscal_year_code",
    "WorkflowProgressCalculator",
    "AnalyticsAggregator",
    "IntegrityReport",
    "check_chain",
    "CaseMutation",
    "CaseWorkflowEngine",
    "get_workflow_engine",
    "reset_workflow_engine",
]
