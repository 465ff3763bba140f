"""Case API routers."""

from .cases import router as cases_router
from .stages import router as stages_router
from .analytics import router as analytics_router

__all__ = ["cases_router", "stages_router", "analytics_router"]
