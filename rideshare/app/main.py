"""
FastAPI Application Entry Point.

This is the main application file for the Rideshare Backend.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from rideshare.app.core.config import settings
from rideshare.app.api.v1.router import router as api_v1_router
from rideshare.app.db.session import engine, Base
from rideshare.app.core.observability import ObservabilityMiddleware, configure_logging
from rideshare.app.core.exceptions import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    generic_exception_handler
)
from rideshare.app.core.redis_client import ping_redis
from rideshare.app.services.geocoding import close_geocoding_client

# Import models to ensure they are registered with Base
from rideshare.app.models.user import User
from rideshare.app.models.ride import Ride
from rideshare.app.models.booking import Booking
from rideshare.app.models.notification import Notification
from rideshare.app.models.audit_log import AuditLog

configure_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for application startup/shutdown.

    1. Creates database tables on startup.
    2. Closes the routing provider client on shutdown.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await close_geocoding_client()

# Initialize FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.api_version,
    debug=settings.debug,
    description="Ride booking, seat inventory and route search API",
    lifespan=lifespan,
)

app.add_middleware(ObservabilityMiddleware)

# Register global exception handlers
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint.

    Returns:
        dict: Status and application information
    """
    return {
        "status": "healthy",
        "app_name": settings.app_name,
        "version": settings.api_version,
        "cache": "connected" if await ping_redis() else "unavailable",
    }


# Include API v1 router
app.include_router(api_v1_router, prefix=f"/{settings.api_version}")


@app.get("/", tags=["Root"])
async def root():
    return {
        "message": "Welcome to Rideshare Backend API",
        "docs": "/docs",
        "health": "/health",
    }
