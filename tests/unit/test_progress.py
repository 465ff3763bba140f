"""
Tests for workflow progress.
"""

from datetime import datetime, timedelta, timezone

import pytest

from caseflow.core.cases.models import (
    CaseRecord,
    EnquirySnapshot,
    EstimationSnapshot,
    QuotationSnapshot,
    Transition,
    TransitionKind,
)
from caseflow.core.cases.progress import WorkflowProgressCalculator
from caseflow.core.cases.stages import CaseStage

T0 = datetime(2025, 5, 1, 9, 0, tzinfo=timezone.utc)


def _case(state, closed=False):
    return CaseRecord(
        case_id=1,
        case_number="VESPL/EQ/2526/001",
        client_id="CLIENT-001",
        project_name="Boiler retrofit",
        current_state=state,
        version=1,
        created_by="alice",
        created_at=T0,
        updated_at=T0,
        closed_at=T0 + timedelta(days=1) if closed else None,
    )


def _log(*steps):
    """Build a contiguous log from (to_state, reference_id) pairs."""
    transitions = []
    previous = None
    for index, (to_state, reference_id) in enumerate(steps):
        transitions.append(
            Transition(
                id=index + 1,
                case_id=1,
                from_state=previous,
                to_state=to_state,
                transitioned_by="alice",
                transition_date=T0 + timedelta(hours=index),
                duration_in_state=0 if index == 0 else 3600,
                reference_id=reference_id,
                kind=TransitionKind.CREATED if index == 0 else TransitionKind.ADVANCE,
            )
        )
        previous = to_state
    return transitions


def _completed(progress):
    return [s.stage.value for s in progress.stages if s.completed]


class TestCalculator:
    """Pure calculation from a log."""

    def test_new_case_without_enquiry_record(self):
        progress = WorkflowProgressCalculator().calculate(
            _case(CaseStage.ENQUIRY), _log((CaseStage.ENQUIRY, None))
        )
        assert progress.completed_count == 0
        assert progress.total_stages == 7
        assert progress.progress_percentage == 0.0

    def test_new_case_with_enquiry_record(self):
        progress = WorkflowProgressCalculator().calculate(
            _case(CaseStage.ENQUIRY), _log((CaseStage.ENQUIRY, "ENQ-1"))
        )
        assert _completed(progress) == ["enquiry"]
        assert progress.progress_percentage == pytest.approx(14.3)

    def test_advanced_past_counts_as_completed(self):
        progress = WorkflowProgressCalculator().calculate(
            _case(CaseStage.QUOTATION),
            _log((CaseStage.ENQUIRY, None), (CaseStage.ESTIMATION, None), (CaseStage.QUOTATION, "Q1")),
        )
        assert _completed(progress) == ["enquiry", "estimation", "quotation"]
        assert progress.progress_percentage == pytest.approx(42.9)

    def test_deleted_reference_is_not_completion(self):
        progress = WorkflowProgressCalculator().calculate(
            _case(CaseStage.QUOTATION),
            _log((CaseStage.ENQUIRY, None), (CaseStage.ESTIMATION, "E1"), (CaseStage.QUOTATION, "Q1")),
            deleted_reference_ids={"Q1"},
        )
        assert _completed(progress) == ["enquiry", "estimation"]
        quotation = progress.stages[2]
        assert quotation.reference_id is None
        assert quotation.entered_at == T0 + timedelta(hours=2)

    def test_closed_is_always_complete(self):
        log = _log(
            (CaseStage.ENQUIRY, None), (CaseStage.ESTIMATION, None), (CaseStage.QUOTATION, None),
            (CaseStage.ORDER, None), (CaseStage.PRODUCTION, None), (CaseStage.DELIVERY, None),
            (CaseStage.CLOSED, None),
        )
        progress = WorkflowProgressCalculator().calculate(_case(CaseStage.CLOSED, closed=True), log)
        assert progress.completed_count == 7
        assert progress.progress_percentage == 100.0

    def test_rejected_is_forced_to_full(self):
        log = _log((CaseStage.ENQUIRY, None), (CaseStage.ESTIMATION, "E1"), (CaseStage.REJECTED, None))
        progress = WorkflowProgressCalculator().calculate(_case(CaseStage.REJECTED, closed=True), log)
        assert progress.progress_percentage == 100.0
        assert _completed(progress) == ["enquiry", "estimation"]
        assert progress.current_stage_name == "Rejected"

    def test_identical_inputs_identical_output(self):
        calculator = WorkflowProgressCalculator()
        case = _case(CaseStage.ESTIMATION)
        log = _log((CaseStage.ENQUIRY, "ENQ-1"), (CaseStage.ESTIMATION, "E1"))
        assert calculator.calculate(case, log) == calculator.calculate(case, log)


class TestEngineProgress:
    """Progress through the engine, reflecting deletions immediately."""

    def test_delete_and_recreate_reflected(self, engine, clock):
        case = engine.create_case(
            "CLIENT-001", "Boiler retrofit", "alice", enquiry=EnquirySnapshot(description="Boiler")
        ).case
        engine.transition(case.case_id, CaseStage.ESTIMATION, "alice", record=EstimationSnapshot())
        engine.transition(case.case_id, CaseStage.QUOTATION, "alice", record=QuotationSnapshot(grand_total=10))
        assert _completed(engine.get_workflow_progress(case.case_id)) == ["enquiry", "estimation", "quotation"]

        backup = engine.delete_stage(case.case_id, CaseStage.QUOTATION, "admin").backup
        after_delete = engine.get_workflow_progress(case.case_id)
        assert after_delete.current_stage == CaseStage.ESTIMATION
        assert _completed(after_delete) == ["enquiry", "estimation"]

        recreated = engine.recreate_stage(backup.id, "admin")
        after_recreate = engine.get_workflow_progress(case.case_id)
        assert _completed(after_recreate) == ["enquiry", "estimation", "quotation"]
        assert after_recreate.stages[2].reference_id == recreated.stage_record.id

    def test_repeated_calls_agree(self, engine, new_case):
        case = new_case()
        engine.transition(case.case_id, CaseStage.ESTIMATION, "alice", reference_id="E1")
        assert engine.get_workflow_progress(case.case_id) == engine.get_workflow_progress(case.case_id)

    def test_definition_version_reported(self, engine, new_case):
        case = new_case()
        progress = engine.get_workflow_progress(case.case_id)
        assert progress.definition_version == engine.definition.version
        assert [s.name for s in progress.stages][3] == "Sales Order"
