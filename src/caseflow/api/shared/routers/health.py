"""
Health Check Endpoints

Provides health and readiness endpoints for container orchestration.
"""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Response

from ....core.cases.errors import CaseWorkflowError
from ....core.cases.workflow import get_workflow_engine
from ....core.config import get_config

router = APIRouter(tags=["health"])


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@router.get("/health")
async def health_check() -> Dict[str, Any]:
    """
    Basic health check.

    Returns 200 if the service is running.
    """
    return {
        "status": "healthy",
        "timestamp": _now(),
        "version": get_config().service_version,
    }


@router.get("/health/ready")
def readiness_check(response: Response) -> Dict[str, Any]:
    """
    Readiness check.

    Returns 200 once the case database answers queries and the
    configuration is valid.
    """
    checks = {}
    all_healthy = True

    try:
        get_workflow_engine().store.count_cases()
        checks["database"] = "healthy"
    except CaseWorkflowError as e:
        checks["database"] = f"unhealthy: {e.message[:100]}"
        all_healthy = False

    issues = get_config().validate()
    checks["config"] = "valid" if not issues else "; ".join(issues)[:200]
    if issues:
        all_healthy = False

    if not all_healthy:
        response.status_code = 503

    return {
        "status": "ready" if all_healthy else "not_ready",
        "checks": checks,
        "timestamp": _now(),
    }
