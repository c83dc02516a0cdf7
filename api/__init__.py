"""
API Module
FastAPI routers for the MedNudge application
"""

from api.occurrences import router as occurrences_router
from api.escalations import router as escalations_router

from api.deps import (
    get_db,
    get_services,
    get_current_patient_id,
)
from config import settings


__all__ = [
    # Routers
    "occurrences_router",
    "escalations_router",
    # Dependencies
    "get_db",
    "get_services",
    "get_current_patient_id",
]


def include_routers(app):
    """
    Include all API routers in the FastAPI app

    Usage:
        from api import include_routers
        include_routers(app)
    """
    app.include_router(occurrences_router, prefix=settings.API_PREFIX)
    app.include_router(escalations_router, prefix=settings.API_PREFIX)
