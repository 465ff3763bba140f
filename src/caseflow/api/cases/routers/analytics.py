"""
Workflow Definition & Analytics API
"""

from typing import Any, Dict, List

from fastapi import APIRouter, Query

from ....core.cases.models import CaseAnalytics, SlaBreach
from ....core.cases.workflow import get_workflow_engine

router = APIRouter(tags=["analytics"])


@router.get("/api/workflow/definition")
def get_workflow_definition() -> Dict[str, Any]:
    """The stage graph every client should render from."""
    return get_workflow_engine().definition.to_dict()


@router.get("/api/analytics/cases", response_model=CaseAnalytics)
def get_case_analytics(top_n: int = Query(10, ge=1, le=100)):
    """
    Cross-case rollups: stage durations and efficiency, bottlenecks,
    top performers and monthly trends. Durations are in hours.
    """
    return get_workflow_engine().get_analytics(top_n=top_n)


@router.get("/api/analytics/sla-breaches", response_model=List[SlaBreach])
def get_sla_breaches():
    """Open cases that have exceeded the SLA of their current stage."""
    return get_workflow_engine().sla_breaches()
