"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from rideshare.app.api.v1.endpoints import rides, bookings, notifications

router = APIRouter()

router.include_router(rides.router)
router.include_router(bookings.router)
router.include_router(notifications.router)
