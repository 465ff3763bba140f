"""
Case Workflow API

Endpoints for creating cases and moving them through the stage pipeline.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from ....core.cases.integrity import IntegrityReport
from ....core.cases.models import (
    CaseAssignment,
    CaseRecord,
    StageBackup,
    StageRecord,
    Transition,
    WorkflowProgress,
)
from ....core.cases.stages import CaseStage
from ....core.cases.workflow import CaseMutation, get_workflow_engine
from ...shared.middleware import get_correlation_id, get_trace_id
from ...shared.responses import ERROR_RESPONSES, ListResponse

router = APIRouter(prefix="/api/cases", tags=["cases"], responses=ERROR_RESPONSES)

ACTOR_QUERY = Query(..., min_length=1, description="User performing the action")


class CreateCaseRequest(BaseModel):
    """Request to open a new case."""
    client_id: str = Field(..., min_length=1)
    project_name: str = Field(..., min_length=1, max_length=200)
    assigned_to: Optional[str] = None
    enquiry: Optional[Dict[str, Any]] = Field(
        None, description="Enquiry snapshot registered as the enquiry stage record"
    )
    notes: Optional[str] = None


class TransitionRequest(BaseModel):
    """Request to move a case to the next stage."""
    to_state: CaseStage
    notes: Optional[str] = None
    reference_id: Optional[str] = Field(
        None, description="Id of the stage record the caller already persisted"
    )
    record: Optional[Dict[str, Any]] = Field(
        None, description="Stage snapshot for the engine to persist with the transition"
    )
    expected_version: Optional[int] = Field(None, ge=1)


class CloseRequest(BaseModel):
    notes: Optional[str] = None
    expected_version: Optional[int] = Field(None, ge=1)


class RejectRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)
    expected_version: Optional[int] = Field(None, ge=1)


class AssignRequest(BaseModel):
    assignee: Optional[str] = Field(None, description="New owner; null clears the assignment")
    expected_version: Optional[int] = Field(None, ge=1)
    notes: Optional[str] = None


class CaseMutationResponse(BaseModel):
    """Case state after a mutation plus what the mutation wrote."""
    case: CaseRecord
    transition: Transition
    stage_record: Optional[StageRecord] = None
    backup: Optional[StageBackup] = None


class HistoryResponse(BaseModel):
    case_id: int
    case_number: str
    current_state: CaseStage
    history: List[Transition]


class ValidTransitionsResponse(BaseModel):
    """Response with valid transitions."""
    case_id: int
    current_state: CaseStage
    valid_transitions: List[str]


def _mutation_response(result: CaseMutation) -> CaseMutationResponse:
    return CaseMutationResponse(
        case=result.case,
        transition=result.transition,
        stage_record=result.stage_record,
        backup=result.backup,
    )


@router.post("", response_model=CaseMutationResponse, status_code=201)
def create_case(body: CreateCaseRequest, actor: str = ACTOR_QUERY):
    """Open a case in the enquiry stage and allocate its case number."""
    engine = get_workflow_engine()
    result = engine.create_case(
        client_id=body.client_id,
        project_name=body.project_name,
        actor=actor,
        assigned_to=body.assigned_to,
        enquiry=body.enquiry,
        notes=body.notes,
    )
    return _mutation_response(result)


@router.get("", response_model=ListResponse[CaseRecord])
def list_cases(
    state: Optional[CaseStage] = Query(None),
    assigned_to: Optional[str] = Query(None),
    client_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    """List cases, newest first."""
    engine = get_workflow_engine()
    state_value = state.value if state else None
    cases = engine.list_cases(
        state=state_value, assigned_to=assigned_to, client_id=client_id, limit=limit, offset=offset
    )
    total = engine.count_cases(state=state_value, assigned_to=assigned_to, client_id=client_id)
    return ListResponse[CaseRecord].create(
        data=cases,
        total=total,
        limit=limit,
        offset=offset,
        trace_id=get_trace_id(),
        correlation_id=get_correlation_id(),
    )


@router.get("/by-number", response_model=CaseRecord)
def get_case_by_number(case_number: str = Query(..., min_length=1, description="PREFIX/DOCTYPE/FY/SEQ")):
    """Look a case up by its case number."""
    return get_workflow_engine().get_case_by_number(case_number)


@router.get("/summary")
def get_stages_summary():
    """Get count of cases in each stage."""
    engine = get_workflow_engine()
    return {
        "stages": engine.stage_summary(),
        "available_stages": [s.value for s in CaseStage],
    }


@router.get("/{case_id}", response_model=CaseRecord)
def get_case(case_id: int):
    return get_workflow_engine().get_case(case_id)


@router.post("/{case_id}/transition", response_model=CaseMutationResponse)
def transition_case(case_id: int, body: TransitionRequest, actor: str = ACTOR_QUERY):
    """
    Transition a case to a new stage.

    Pass `expected_version` from the last read to fail with 409 instead of
    acting on a case someone else has moved in the meantime.
    """
    result = get_workflow_engine().transition(
        case_id,
        body.to_state,
        actor,
        notes=body.notes,
        reference_id=body.reference_id,
        record=body.record,
        expected_version=body.expected_version,
    )
    return _mutation_response(result)


@router.post("/{case_id}/close", response_model=CaseMutationResponse)
def close_case(case_id: int, body: Optional[CloseRequest] = None, actor: str = ACTOR_QUERY):
    body = body or CloseRequest()
    result = get_workflow_engine().close(
        case_id, actor, notes=body.notes, expected_version=body.expected_version
    )
    return _mutation_response(result)


@router.post("/{case_id}/reject", response_model=CaseMutationResponse)
def reject_case(case_id: int, body: RejectRequest, actor: str = ACTOR_QUERY):
    result = get_workflow_engine().reject(
        case_id, actor, reason=body.reason, expected_version=body.expected_version
    )
    return _mutation_response(result)


@router.post("/{case_id}/assign", response_model=CaseRecord)
def assign_case(case_id: int, body: AssignRequest, actor: str = ACTOR_QUERY):
    """Assign the case owner; repeating the same assignment changes nothing."""
    return get_workflow_engine().assign(
        case_id, body.assignee, actor, expected_version=body.expected_version, notes=body.notes
    )


@router.get("/{case_id}/assignments", response_model=List[CaseAssignment])
def get_assignment_history(case_id: int):
    """Assignment changes for a case, oldest first."""
    return get_workflow_engine().get_assignment_history(case_id)


@router.get("/{case_id}/history", response_model=HistoryResponse)
def get_history(case_id: int):
    """Get the transition log for a case, oldest first."""
    engine = get_workflow_engine()
    case = engine.get_case(case_id)
    return HistoryResponse(
        case_id=case.case_id,
        case_number=case.case_number,
        current_state=case.current_state,
        history=engine.get_history(case_id),
    )


@router.get("/{case_id}/progress", response_model=WorkflowProgress)
def get_progress(case_id: int):
    return get_workflow_engine().get_workflow_progress(case_id)


@router.get("/{case_id}/valid-transitions", response_model=ValidTransitionsResponse)
def get_valid_transitions(case_id: int):
    """Get valid stage transitions for a case."""
    engine = get_workflow_engine()
    case = engine.get_case(case_id)
    return ValidTransitionsResponse(
        case_id=case_id,
        current_state=case.current_state,
        valid_transitions=engine.valid_transitions(case_id),
    )


@router.get("/{case_id}/integrity", response_model=IntegrityReport)
def verify_integrity(case_id: int):
    """Replay the transition log and report chain defects."""
    return get_workflow_engine().verify_integrity(case_id)
