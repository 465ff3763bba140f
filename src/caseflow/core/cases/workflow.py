"""
Case Workflow Engine

Moves cases through the stage pipeline. Every mutation runs in one store
transaction that validates the move, writes or soft-deletes the stage record,
appends to the transition log and updates the case row.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from ..config import WorkflowConfig, get_config
from ..observability import add_case_to_span, create_span, record_counter, record_histogram
from .analytics import AnalyticsAggregator
from .document_ids import DocumentIdGenerator, SequenceDocumentIdGenerator, parse_document_number
from .errors import (
    AlreadyRecreatedError,
    BackupNotFoundError,
    CaseClosedError,
    CaseNotFoundError,
    ConcurrentModificationError,
    InvalidTransitionError,
    StageNotDeletableError,
)
from .integrity import IntegrityReport, build_report
from .models import (
    CaseAnalytics,
    CaseAssignment,
    CaseRecord,
    SlaBreach,
    StageBackup,
    StageRecord,
    StageSnapshot,
    Transition,
    TransitionKind,
    WorkflowProgress,
    load_snapshot,
    now_utc,
    snapshot_matches_stage,
    to_iso,
)
from .progress import WorkflowProgressCalculator
from .stages import CaseStage, StageDefinition, get_stage_definition
from .store import CaseStore

logger = logging.getLogger(__name__)

SnapshotInput = Union[StageSnapshot, Dict[str, Any]]


@dataclass
class CaseMutation:
    """Outcome of a state-changing engine call."""
    case: CaseRecord
    transition: Transition
    stage_record: Optional[StageRecord] = None
    backup: Optional[StageBackup] = None


def _require(value: Optional[str], name: str) -> str:
    if value is None or not str(value).strip():
        raise ValueError(f"{name} is required")
    return str(value).strip()


class CaseWorkflowEngine:
    """
    Manages the case lifecycle: creation, transitions, stage deletion and recreation.
    """

    def __init__(
        self,
        store: CaseStore,
        config: Optional[WorkflowConfig] = None,
        definition: Optional[StageDefinition] = None,
        id_generator: Optional[DocumentIdGenerator] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.config = config or get_config()
        self.definition = definition or get_stage_definition()
        self.id_generator = id_generator or SequenceDocumentIdGenerator(
            prefix=self.config.document_prefix,
            start_month=self.config.fiscal_year_start_month,
            padding=self.config.sequence_padding,
        )
        self.clock = clock or now_utc
        self.progress_calculator = WorkflowProgressCalculator(self.definition)
        self.aggregator = AnalyticsAggregator(self.config.sla_hours, self.definition)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _load_case(self, conn: sqlite3.Connection, case_id: int) -> CaseRecord:
        case = self.store.fetch_case(conn, case_id)
        if case is None:
            raise CaseNotFoundError(case_id)
        return case

    def _check_version(self, case: CaseRecord, expected_version: Optional[int]) -> None:
        if expected_version is not None and expected_version != case.version:
            record_counter("concurrent_modifications_total", 1, {"case_stage": case.current_state.value})
            raise ConcurrentModificationError(case.case_id, expected_version, case.version)

    def _check_open(self, case: CaseRecord) -> None:
        if case.is_terminal:
            raise CaseClosedError(case.case_id, case.current_state.value)

    def _build_record(
        self,
        case_id: int,
        stage: CaseStage,
        snapshot: SnapshotInput,
        actor: str,
        now: datetime,
        restored_from_backup: Optional[int] = None,
    ) -> StageRecord:
        parsed = load_snapshot(snapshot)
        if not snapshot_matches_stage(parsed, stage):
            raise ValueError(
                f"Record of type '{parsed.record_type}' does not belong to stage '{stage.value}'"
            )
        return StageRecord(
            case_id=case_id,
            stage=stage,
            snapshot=parsed,
            created_by=actor,
            created_at=now,
            restored_from_backup=restored_from_backup,
        )

    def _apply(
        self,
        conn: sqlite3.Connection,
        case: CaseRecord,
        to_state: CaseStage,
        actor: str,
        now: datetime,
        kind: TransitionKind,
        notes: Optional[str] = None,
        reference_id: Optional[str] = None,
    ) -> Transition:
        """Append the transition and move the case row, guarded by its version."""
        last = self.store.last_transition(conn, case.case_id)
        duration = 0.0
        if last is not None:
            duration = max(0.0, (now - last.transition_date).total_seconds())

        closed_at = now if self.definition.is_terminal(to_state) else None
        updated = self.store.update_case_state(
            conn,
            case_id=case.case_id,
            expected_version=case.version,
            state=to_state,
            now=now,
            closed_at=closed_at,
        )
        if not updated:
            actual = self.store.fetch_case(conn, case.case_id)
            raise ConcurrentModificationError(
                case.case_id, case.version, actual.version if actual else None
            )

        transition = self.store.append_transition(
            conn,
            case_id=case.case_id,
            from_state=case.current_state,
            to_state=to_state,
            transitioned_by=actor,
            transition_date=now,
            duration_in_state=duration,
            notes=notes,
            reference_id=reference_id,
            kind=kind,
        )
        record_histogram(
            "case_time_in_state_seconds", duration, {"stage": case.current_state.value}
        )
        return transition

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create_case(
        self,
        client_id: str,
        project_name: str,
        actor: str,
        assigned_to: Optional[str] = None,
        enquiry: Optional[SnapshotInput] = None,
        notes: Optional[str] = None,
    ) -> CaseMutation:
        """
        Open a new case in the enquiry stage.

        The case number is allocated and the initial `None -> enquiry`
        transition written in the same transaction. An enquiry snapshot,
        when given, becomes the enquiry stage record.
        """
        client_id = _require(client_id, "client_id")
        project_name = _require(project_name, "project_name")
        actor = _require(actor, "actor")
        first_stage = self.definition.pipeline[0]

        with create_span("case.create", {"client_id": client_id}) as span:
            with self.store.transaction("create_case") as conn:
                now = self.clock()
                case_number = self.id_generator.generate(conn, self.config.case_doctype, now)
                case_id = self.store.insert_case(
                    conn,
                    case_number=case_number,
                    client_id=client_id,
                    project_name=project_name,
                    state=first_stage,
                    assigned_to=assigned_to,
                    created_by=actor,
                    now=now,
                )

                record = None
                if enquiry is not None:
                    record = self._build_record(case_id, first_stage, enquiry, actor, now)
                    self.store.insert_stage_record(conn, record)

                transition = self.store.append_transition(
                    conn,
                    case_id=case_id,
                    from_state=None,
                    to_state=first_stage,
                    transitioned_by=actor,
                    transition_date=now,
                    duration_in_state=0.0,
                    notes=notes or "Case created",
                    reference_id=record.id if record else None,
                    kind=TransitionKind.CREATED,
                )
                if assigned_to:
                    self.store.append_assignment(
                        conn,
                        case_id=case_id,
                        assigned_to=assigned_to,
                        previous_assignee=None,
                        assigned_by=actor,
                        now=now,
                        notes="Assigned at creation",
                    )
                case = self._load_case(conn, case_id)

            add_case_to_span(case.case_id, case.case_number, span)

        record_counter("cases_created_total", 1, {"doctype": self.config.case_doctype})
        logger.info(
            f"Case {case.case_number} created by {actor}",
            extra={"case_id": case.case_id, "operation": "create_case"},
        )
        return CaseMutation(case=case, transition=transition, stage_record=record)

    def transition(
        self,
        case_id: int,
        to_state: Union[CaseStage, str],
        actor: str,
        notes: Optional[str] = None,
        reference_id: Optional[str] = None,
        record: Optional[SnapshotInput] = None,
        expected_version: Optional[int] = None,
    ) -> CaseMutation:
        """
        Move a case along one edge of the stage graph.

        Args:
            case_id: Case to move
            to_state: Target stage
            actor: User performing the transition
            notes: Free-text note stored on the transition
            reference_id: Id of the stage record the caller already persisted
            record: Stage snapshot for the engine to persist; its id becomes the reference
            expected_version: Case version the caller last read

        Raises:
            CaseNotFoundError, ConcurrentModificationError, CaseClosedError,
            InvalidTransitionError
        """
        actor = _require(actor, "actor")
        try:
            target = CaseStage(to_state)
        except ValueError:
            raise InvalidTransitionError(
                None, str(to_state), case_id=case_id, message=f"Unknown stage: {to_state}"
            ) from None
        if record is not None and reference_id is not None:
            raise ValueError("Pass either reference_id or record, not both")

        with create_span("case.transition", {"case_id": case_id, "to_state": target.value}) as span:
            with self.store.transaction("transition", case_id=case_id) as conn:
                case = self._load_case(conn, case_id)
                self._check_version(case, expected_version)
                self._check_open(case)

                if not self.definition.valid_transition(case.current_state, target):
                    record_counter(
                        "case_transitions_rejected_total",
                        1,
                        {"from_state": case.current_state.value, "to_state": target.value},
                    )
                    raise InvalidTransitionError(
                        case.current_state.value,
                        target.value,
                        allowed=[s.value for s in self.definition.allowed_targets(case.current_state)],
                        case_id=case_id,
                    )

                now = self.clock()
                stage_record = None
                if record is not None:
                    stage_record = self._build_record(case_id, target, record, actor, now)
                    self.store.insert_stage_record(conn, stage_record)
                    reference_id = stage_record.id

                transition = self._apply(
                    conn,
                    case,
                    target,
                    actor,
                    now,
                    TransitionKind.ADVANCE,
                    notes=notes,
                    reference_id=reference_id,
                )
                updated = self._load_case(conn, case_id)

            add_case_to_span(updated.case_id, updated.case_number, span)

        record_counter(
            "case_transitions_total",
            1,
            {"from_state": case.current_state.value, "to_state": target.value, "kind": "advance"},
        )
        logger.info(
            f"Case {updated.case_number} transitioned: {case.current_state.value} -> {target.value}",
            extra={"case_id": case_id, "operation": "transition", "actor": actor},
        )
        return CaseMutation(case=updated, transition=transition, stage_record=stage_record)

    def close(
        self,
        case_id: int,
        actor: str,
        notes: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> CaseMutation:
        """Close a delivered case; sets closed_at."""
        return self.transition(
            case_id, CaseStage.CLOSED, actor, notes=notes, expected_version=expected_version
        )

    def reject(
        self,
        case_id: int,
        actor: str,
        reason: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> CaseMutation:
        return self.transition(
            case_id, CaseStage.REJECTED, actor, notes=reason, expected_version=expected_version
        )

    def assign(
        self,
        case_id: int,
        assignee: Optional[str],
        actor: str,
        expected_version: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> CaseRecord:
        """
        Set the case owner and append the change to the assignment history.

        Re-assigning to the current owner is a no-op: no version bump and no
        history row, so repeated submissions are harmless.
        """
        actor = _require(actor, "actor")
        assignee = assignee.strip() if assignee and assignee.strip() else None

        with create_span("case.assign", {"case_id": case_id}):
            with self.store.transaction("assign", case_id=case_id) as conn:
                case = self._load_case(conn, case_id)
                self._check_version(case, expected_version)
                self._check_open(case)

                if case.assigned_to == assignee:
                    return case

                now = self.clock()
                updated = self.store.update_assignment(
                    conn,
                    case_id=case_id,
                    expected_version=case.version,
                    assigned_to=assignee,
                    now=now,
                )
                if not updated:
                    actual = self.store.fetch_case(conn, case_id)
                    raise ConcurrentModificationError(
                        case_id, case.version, actual.version if actual else None
                    )
                self.store.append_assignment(
                    conn,
                    case_id=case_id,
                    assigned_to=assignee,
                    previous_assignee=case.assigned_to,
                    assigned_by=actor,
                    now=now,
                    notes=notes,
                )
                result = self._load_case(conn, case_id)

        logger.info(
            f"Case {result.case_number} assigned to {assignee} by {actor}",
            extra={"case_id": case_id, "operation": "assign"},
        )
        return result

    def delete_stage(
        self,
        case_id: int,
        stage: Union[CaseStage, str],
        actor: str,
        reason: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> CaseMutation:
        """
        Soft-delete the current stage and revert the case to its predecessor.

        The stage record (if the engine holds one) is captured into a one-shot
        backup before it is marked deleted.
        """
        actor = _require(actor, "actor")
        stage = CaseStage(stage)

        with create_span("case.delete_stage", {"case_id": case_id, "stage": stage.value}) as span:
            with self.store.transaction("delete_stage", case_id=case_id) as conn:
                case = self._load_case(conn, case_id)
                self._check_version(case, expected_version)
                self._check_open(case)

                if stage != case.current_state:
                    raise StageNotDeletableError(
                        case_id,
                        stage.value,
                        case.current_state.value,
                        "only the current stage can be deleted",
                    )
                predecessor = self.definition.predecessor_of(stage)
                if predecessor is None:
                    raise StageNotDeletableError(
                        case_id, stage.value, case.current_state.value, "stage has no predecessor"
                    )

                now = self.clock()
                reference_id = self.store.latest_reference(conn, case_id, stage)

                live_record = None
                if reference_id:
                    live_record = self.store.fetch_stage_record(conn, reference_id)
                    if live_record is not None and not live_record.is_live:
                        # Already backed up by an earlier deletion
                        live_record = None
                        reference_id = None
                if live_record is not None:
                    self.store.soft_delete_stage_record(
                        conn, record_id=live_record.id, deleted_by=actor, now=now
                    )

                backup = self.store.insert_backup(
                    conn,
                    case=case,
                    stage=stage,
                    stage_record_id=reference_id,
                    snapshot=live_record.snapshot if live_record else None,
                    previous_state=case.current_state,
                    reverted_to_state=predecessor,
                    deleted_by=actor,
                    deletion_reason=reason,
                    now=now,
                )
                transition = self._apply(
                    conn,
                    case,
                    predecessor,
                    actor,
                    now,
                    TransitionKind.STAGE_DELETED,
                    notes=f"Stage {stage.value} deleted" + (f": {reason}" if reason else ""),
                )
                updated = self._load_case(conn, case_id)

            add_case_to_span(updated.case_id, updated.case_number, span)

        record_counter("stage_deletions_total", 1, {"stage": stage.value})
        logger.warning(
            f"Stage {stage.value} of case {updated.case_number} deleted by {actor} (backup {backup.id})",
            extra={"case_id": case_id, "operation": "delete_stage", "reason": reason},
        )
        return CaseMutation(case=updated, transition=transition, backup=backup)

    def recreate_stage(
        self,
        backup_id: int,
        actor: str,
        expected_version: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> CaseMutation:
        """
        Restore a deleted stage from its backup, once.

        The snapshot is persisted as a new stage record with the same business
        content and the case returns to the stage it held before deletion.
        """
        actor = _require(actor, "actor")

        with create_span("case.recreate_stage", {"backup_id": backup_id}) as span:
            with self.store.transaction("recreate_stage") as conn:
                backup = self.store.fetch_backup(conn, backup_id)
                if backup is None:
                    raise BackupNotFoundError(backup_id)
                if backup.recreated:
                    raise AlreadyRecreatedError(backup_id, to_iso(backup.recreated_at))

                case = self._load_case(conn, backup.case_id)
                self._check_version(case, expected_version)
                self._check_open(case)
                if case.current_state != backup.reverted_to_state:
                    raise InvalidTransitionError(
                        case.current_state.value,
                        backup.previous_state.value,
                        case_id=case.case_id,
                        message=(
                            f"Backup {backup_id} reverted the case to {backup.reverted_to_state.value}, "
                            f"but it is now in {case.current_state.value}"
                        ),
                    )

                now = self.clock()
                stage_record = None
                if backup.snapshot_data is not None:
                    stage_record = self._build_record(
                        case.case_id,
                        backup.stage,
                        backup.snapshot_data,
                        actor,
                        now,
                        restored_from_backup=backup.id,
                    )
                    self.store.insert_stage_record(conn, stage_record)

                if not self.store.mark_backup_recreated(
                    conn,
                    backup_id=backup_id,
                    recreated_by=actor,
                    recreated_record_id=stage_record.id if stage_record else None,
                    now=now,
                ):
                    raise AlreadyRecreatedError(backup_id)

                transition = self._apply(
                    conn,
                    case,
                    backup.previous_state,
                    actor,
                    now,
                    TransitionKind.STAGE_RECREATED,
                    notes=notes or f"Stage {backup.stage.value} recreated from backup {backup_id}",
                    reference_id=stage_record.id if stage_record else None,
                )
                updated = self._load_case(conn, case.case_id)
                backup = self.store.fetch_backup(conn, backup_id)

            add_case_to_span(updated.case_id, updated.case_number, span)

        record_counter("stage_recreations_total", 1, {"stage": backup.stage.value})
        logger.info(
            f"Stage {backup.stage.value} of case {updated.case_number} recreated by {actor}",
            extra={"case_id": updated.case_id, "operation": "recreate_stage", "backup_id": backup_id},
        )
        return CaseMutation(case=updated, transition=transition, stage_record=stage_record, backup=backup)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_case(self, case_id: int) -> CaseRecord:
        case = self.store.get_case(case_id)
        if case is None:
            raise CaseNotFoundError(case_id)
        return case

    def get_case_by_number(self, case_number: str) -> CaseRecord:
        """Look a case up by its business key; malformed numbers raise ValueError."""
        if parse_document_number(case_number) is None:
            raise ValueError(f"Malformed case number: {case_number!r}")
        case = self.store.get_case_by_number(case_number)
        if case is None:
            raise CaseNotFoundError(case_number)
        return case

    def list_cases(
        self,
        state: Optional[str] = None,
        assigned_to: Optional[str] = None,
        client_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[CaseRecord]:
        if state:
            state = CaseStage(state).value
        return self.store.list_cases(
            state=state, assigned_to=assigned_to, client_id=client_id, limit=limit, offset=offset
        )

    def count_cases(
        self,
        state: Optional[str] = None,
        assigned_to: Optional[str] = None,
        client_id: Optional[str] = None,
    ) -> int:
        if state:
            state = CaseStage(state).value
        return self.store.count_cases(state=state, assigned_to=assigned_to, client_id=client_id)

    def get_history(self, case_id: int) -> List[Transition]:
        """Transition log of a case, oldest first."""
        self.get_case(case_id)
        return self.store.list_transitions(case_id)

    def get_assignment_history(self, case_id: int) -> List[CaseAssignment]:
        """Who owned the case and who changed it, oldest first."""
        self.get_case(case_id)
        return self.store.list_assignments(case_id)

    def valid_transitions(self, case_id: int) -> List[str]:
        case = self.get_case(case_id)
        return [s.value for s in self.definition.allowed_targets(case.current_state)]

    def stage_summary(self) -> Dict[str, int]:
        """Count of cases in each stage, zero-filled."""
        counts = self.store.stage_counts()
        return {s.value: counts.get(s.value, 0) for s in CaseStage}

    def get_stage_records(self, case_id: int, include_deleted: bool = False) -> List[StageRecord]:
        self.get_case(case_id)
        return self.store.list_stage_records(case_id, include_deleted=include_deleted)

    def get_deleted_stages(
        self,
        case_id: Optional[int] = None,
        stage: Optional[str] = None,
        include_recreated: bool = True,
    ) -> List[StageBackup]:
        """Stage backups, newest first, optionally narrowed to one case and/or stage."""
        if case_id is not None:
            self.get_case(case_id)
        return self.store.list_backups(
            case_id=case_id, stage=stage, include_recreated=include_recreated
        )

    def get_backup(self, backup_id: int) -> StageBackup:
        backup = self.store.get_backup(backup_id)
        if backup is None:
            raise BackupNotFoundError(backup_id)
        return backup

    def get_workflow_progress(self, case_id: int) -> WorkflowProgress:
        case = self.get_case(case_id)
        return self.progress_calculator.calculate(
            case,
            self.store.list_transitions(case_id),
            self.store.deleted_reference_ids(case_id),
        )

    def get_analytics(self, top_n: int = 10) -> CaseAnalytics:
        return self.aggregator.aggregate(
            self.store.all_cases(),
            self.store.transitions_by_case(),
            now=self.clock(),
            top_n=top_n,
        )

    def sla_breaches(self) -> List[SlaBreach]:
        return self.aggregator.sla_breaches(
            self.store.all_cases(), self.store.transitions_by_case(), now=self.clock()
        )

    def verify_integrity(self, case_id: int) -> IntegrityReport:
        """Replay the transition log and report chain defects."""
        case = self.get_case(case_id)
        report = build_report(case, self.store.list_transitions(case_id), self.definition)
        if not report.ok:
            logger.warning(
                f"Integrity check failed for case {case.case_number}: "
                f"{[i.code for i in report.issues]}",
                extra={"case_id": case_id, "operation": "verify_integrity"},
            )
        return report


# Singleton instance
_workflow_engine: Optional[CaseWorkflowEngine] = None


def get_workflow_engine() -> CaseWorkflowEngine:
    """Get workflow engine instance."""
    global _workflow_engine
    if _workflow_engine is None:
        config = get_config()
        _workflow_engine = CaseWorkflowEngine(CaseStore(config.db_path), config=config)
    return _workflow_engine


def reset_workflow_engine() -> None:
    """Drop the cached engine (configuration changed)."""
    global _workflow_engine
    _workflow_engine = None
