"""
Custom exceptions and error handlers for consistent error responses.

Provides standardized error codes and global exception handlers.
Every error leaves the API as {"success": false, "error_code", "message", "details"}.
"""

import logging
from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from typing import Any, Dict

from rideshare.app.core.config import settings

logger = logging.getLogger(__name__)


class AppException(Exception):
    """Base application exception."""

    def __init__(self, message: str, error_code: str, status_code: int = 500, details: Dict[str, Any] = None):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)

    def add_context(self, prefix: str, **details: Any) -> "AppException":
        """Prefix the message and merge extra details, keeping the error type."""
        self.message = f"{prefix}{self.message}"
        self.details.update(details)
        self.args = (self.message,)
        return self


class InsufficientPermissionsError(AppException):
    """Raised when user doesn't have permission to perform an action."""

    def __init__(self, message: str = "Insufficient permissions", details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_PERM_001",
            status_code=status.HTTP_403_FORBIDDEN,
            details=details
        )


class ResourceNotFoundError(AppException):
    """Raised when requested resource is not found."""

    def __init__(self, resource: str, resource_id: Any = None, error_code: str = "ERR_NOT_FOUND_001"):
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with ID {resource_id} not found"
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "id": resource_id}
        )


class AuthenticationError(AppException):
    """Raised for authentication failures."""

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(
            message=message,
            error_code="ERR_AUTH_001",
            status_code=status.HTTP_401_UNAUTHORIZED
        )


# Geocoding / routing (ride creation time)

class GeocodingError(AppException):
    """Base class for geocoding and routing provider failures."""


class MissingLocationData(GeocodingError):
    """Neither usable coordinates nor an address were supplied for an endpoint."""

    def __init__(self, endpoint: str):
        super().__init__(
            message=f"Either coordinates or an address is required for the {endpoint} location",
            error_code="ERR_GEO_MISSING_LOCATION",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details={"endpoint": endpoint}
        )


class InvalidCoordinates(GeocodingError):
    def __init__(self, lat: Any, lng: Any):
        super().__init__(
            message=f"Coordinates out of range: lat={lat}, lng={lng}",
            error_code="ERR_GEO_INVALID_COORDINATES",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details={"lat": lat, "lng": lng}
        )


class GeocodeNotFound(GeocodingError):
    def __init__(self, address: str):
        super().__init__(
            message=f"No results found for address '{address}'",
            error_code="ERR_GEO_NOT_FOUND",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details={"address": address}
        )


class GeocodeMalformed(GeocodingError):
    """Top geocoding result has no usable coordinates."""

    def __init__(self, address: str):
        super().__init__(
            message=f"Geocoding result for '{address}' has no coordinates",
            error_code="ERR_GEO_MALFORMED",
            status_code=status.HTTP_502_BAD_GATEWAY,
            details={"address": address}
        )


class ProviderUnavailable(GeocodingError):
    def __init__(self, message: str = "Routing provider unavailable", details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_GEO_PROVIDER_UNAVAILABLE",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details=details
        )


class IdenticalEndpoints(GeocodingError):
    def __init__(self):
        super().__init__(
            message="Pickup and destination are the same point; no route possible",
            error_code="ERR_GEO_IDENTICAL_ENDPOINTS",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY
        )


class RouteUnavailable(GeocodingError):
    def __init__(self, message: str = "No route found between these points", details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_GEO_ROUTE_UNAVAILABLE",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details
        )


class InvalidRouteSelection(GeocodingError):
    def __init__(self, route_index: int, available: int):
        super().__init__(
            message=f"Invalid route selection {route_index}; available routes: 0-{available - 1}",
            error_code="ERR_GEO_INVALID_ROUTE_INDEX",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details={"route_index": route_index, "available": available}
        )


# Rides

class RideNotFound(ResourceNotFoundError):
    def __init__(self, ride_id: int):
        super().__init__("Ride", ride_id, error_code="ERR_RIDE_NOT_FOUND")


class NotOwner(AppException):
    def __init__(self, message: str = "Only the ride driver can perform this action"):
        super().__init__(
            message=message,
            error_code="ERR_NOT_OWNER",
            status_code=status.HTTP_403_FORBIDDEN
        )


class AlreadyCancelled(AppException):
    def __init__(self, ride_id: int):
        super().__init__(
            message=f"Ride {ride_id} is already cancelled",
            error_code="ERR_RIDE_ALREADY_CANCELLED",
            status_code=status.HTTP_409_CONFLICT,
            details={"ride_id": ride_id}
        )


class InvalidDepartureTime(AppException):
    def __init__(self, minutes: int):
        super().__init__(
            message=f"Departure time must be at least {minutes} minutes in the future",
            error_code="ERR_RIDE_DEPARTURE_TIME",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY
        )


class InvalidRideTransition(AppException):
    def __init__(self, current: str, target: str):
        super().__init__(
            message=f"Ride cannot move from '{current}' to '{target}'",
            error_code="ERR_RIDE_TRANSITION",
            status_code=status.HTTP_409_CONFLICT,
            details={"current": current, "target": target}
        )


class RideNotBookable(AppException):
    def __init__(self, ride_id: int, ride_status: str):
        super().__init__(
            message=f"Ride {ride_id} is {ride_status} and cannot be booked",
            error_code="ERR_RIDE_NOT_BOOKABLE",
            status_code=status.HTTP_409_CONFLICT,
            details={"ride_id": ride_id, "status": ride_status}
        )


# Bookings

class BookingNotFound(ResourceNotFoundError):
    def __init__(self, booking_id: int):
        super().__init__("Booking", booking_id, error_code="ERR_BOOKING_NOT_FOUND")


class InvalidSeatCount(AppException):
    def __init__(self, seats: int, maximum: int):
        super().__init__(
            message=f"Seats must be between 1 and {maximum}, got {seats}",
            error_code="ERR_BOOKING_SEAT_COUNT",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details={"seats": seats, "max": maximum}
        )


class InsufficientSeats(AppException):
    def __init__(self, requested: int, available: int):
        super().__init__(
            message=f"Not enough available seats: requested {requested}, available {available}",
            error_code="ERR_BOOKING_INSUFFICIENT_SEATS",
            status_code=status.HTTP_409_CONFLICT,
            details={"requested": requested, "available": available}
        )


class SelfBookingNotAllowed(AppException):
    def __init__(self):
        super().__init__(
            message="Drivers cannot book their own rides",
            error_code="ERR_BOOKING_SELF",
            status_code=status.HTTP_403_FORBIDDEN
        )


class DuplicateBooking(AppException):
    def __init__(self, ride_id: int):
        super().__init__(
            message="You have already booked this ride",
            error_code="ERR_BOOKING_DUPLICATE",
            status_code=status.HTTP_409_CONFLICT,
            details={"ride_id": ride_id}
        )


class InvalidBookingTransition(AppException):
    def __init__(self, current: str, target: str):
        super().__init__(
            message=f"Booking cannot move from '{current}' to '{target}'",
            error_code="ERR_BOOKING_TRANSITION",
            status_code=status.HTTP_409_CONFLICT,
            details={"current": current, "target": target}
        )


# Global Exception Handlers

def _error_body(error_code: str, message: str, details: Dict[str, Any]) -> dict:
    return {
        "success": False,
        "error_code": error_code,
        "message": message,
        "details": details,
    }


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handler for custom application exceptions."""
    details = exc.details
    # Upstream diagnostics stay out of production 5xx responses
    if exc.status_code >= 500 and settings.is_production:
        details = {}

    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(exc.error_code, exc.message, details)
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handler for FastAPI HTTPException with standardized format."""
    # Map status code to error code
    error_code_map = {
        400: "ERR_BAD_REQUEST",
        401: "ERR_UNAUTHORIZED",
        403: "ERR_FORBIDDEN",
        404: "ERR_NOT_FOUND",
        409: "ERR_CONFLICT",
        500: "ERR_INTERNAL_SERVER"
    }

    error_code = error_code_map.get(exc.status_code, "ERR_UNKNOWN")

    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(error_code, exc.detail, {}),
        headers=getattr(exc, "headers", None)
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handler for Pydantic validation errors."""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=_error_body(
            "ERR_VALIDATION",
            "Validation error",
            {"errors": jsonable_errors(exc)}
        )
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    # ctx may carry exception instances that JSONResponse cannot encode
    errors = []
    for error in exc.errors():
        error = dict(error)
        if "ctx" in error:
            error["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        errors.append(error)
    return errors


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)

    details = {} if settings.is_production else {"exception": type(exc).__name__}
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_body("ERR_INTERNAL_SERVER", "An internal server error occurred", details)
    )
