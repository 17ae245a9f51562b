"""
Calibra — Main API Router

Aggregates all sub-routers under a single prefix so that ``app.main``
can mount the entire API surface with one ``include_router`` call.
"""

from fastapi import APIRouter

from app.api import calibration

router = APIRouter()

router.include_router(calibration.router, prefix="/calibration/sessions", tags=["Calibration"])
