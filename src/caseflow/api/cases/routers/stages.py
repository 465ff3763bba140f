"""
Stage Deletion API

Administrative soft-delete of a case's current stage and one-shot recreation
from the resulting backup.
"""

from typing import List, Optional

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from ....core.cases.models import StageBackup, StageRecord
from ....core.cases.stages import CaseStage
from ....core.cases.workflow import get_workflow_engine
from ...shared.responses import ERROR_RESPONSES
from .cases import ACTOR_QUERY, CaseMutationResponse, _mutation_response

router = APIRouter(tags=["stages"], responses=ERROR_RESPONSES)


class DeleteStageRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)
    expected_version: Optional[int] = Field(None, ge=1)


class RecreateStageRequest(BaseModel):
    notes: Optional[str] = None
    expected_version: Optional[int] = Field(None, ge=1)


class DeletedStagesResponse(BaseModel):
    case_id: Optional[int] = None
    stage: Optional[CaseStage] = None
    backups: List[StageBackup]


@router.post("/api/cases/{case_id}/stages/{stage}/delete", response_model=CaseMutationResponse)
def delete_stage(
    case_id: int,
    stage: CaseStage,
    body: Optional[DeleteStageRequest] = None,
    actor: str = ACTOR_QUERY,
):
    """
    Soft-delete the case's current stage.

    The case reverts to the previous stage and the stage record is kept in a
    backup that can be recreated once.
    """
    body = body or DeleteStageRequest()
    result = get_workflow_engine().delete_stage(
        case_id, stage, actor, reason=body.reason, expected_version=body.expected_version
    )
    return _mutation_response(result)


@router.get("/api/cases/{case_id}/deleted-stages", response_model=DeletedStagesResponse)
def get_case_deleted_stages(
    case_id: int,
    stage: Optional[CaseStage] = Query(None),
    include_recreated: bool = Query(True),
):
    backups = get_workflow_engine().get_deleted_stages(
        case_id=case_id,
        stage=stage.value if stage else None,
        include_recreated=include_recreated,
    )
    return DeletedStagesResponse(case_id=case_id, stage=stage, backups=backups)


@router.get("/api/cases/{case_id}/stage-records", response_model=List[StageRecord])
def get_stage_records(case_id: int, include_deleted: bool = Query(False)):
    """Stage records the engine holds for a case."""
    return get_workflow_engine().get_stage_records(case_id, include_deleted=include_deleted)


@router.get("/api/stage-backups", response_model=DeletedStagesResponse)
def list_stage_backups(
    stage: Optional[CaseStage] = Query(None),
    include_recreated: bool = Query(True),
):
    """All stage backups, newest first."""
    backups = get_workflow_engine().get_deleted_stages(
        stage=stage.value if stage else None, include_recreated=include_recreated
    )
    return DeletedStagesResponse(stage=stage, backups=backups)


@router.get("/api/stage-backups/{backup_id}", response_model=StageBackup)
def get_stage_backup(backup_id: int):
    return get_workflow_engine().get_backup(backup_id)


@router.post("/api/stage-backups/{backup_id}/recreate", response_model=CaseMutationResponse)
def recreate_stage(
    backup_id: int,
    body: Optional[RecreateStageRequest] = None,
    actor: str = ACTOR_QUERY,
):
    """Restore a deleted stage; a backup can be recreated only once."""
    body = body or RecreateStageRequest()
    result = get_workflow_engine().recreate_stage(
        backup_id, actor, expected_version=body.expected_version, notes=body.notes
    )
    return _mutation_response(result)
