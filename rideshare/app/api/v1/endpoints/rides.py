"""
Ride API Endpoints.

Drivers create, cancel and finish rides; passengers search and book.
"""

from typing import List, Optional, Tuple

from fastapi import APIRouter, Depends, Path, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from rideshare.app.db.session import get_db
from rideshare.app.core.guards import require_role, require_admin
from rideshare.app.core.dependencies import get_current_user
from rideshare.app.core.exceptions import MissingLocationData
from rideshare.app.models.enums import UserRole
from rideshare.app.schemas.common import ApiResponse
from rideshare.app.schemas.ride import (
    RideCreate,
    RideResponse,
    RideWithDriverResponse,
    DriverRideResponse,
    RouteOptionsRequest,
    RouteOption,
    RideSearchRequest,
    LocationPoint,
    AutocompleteSuggestion,
)
from rideshare.app.schemas.booking import BookingCreate, BookingResponse
from rideshare.app.services.geocoding import GeocodingClient, get_geocoding_client
from rideshare.app.services.ride_store import RideStore
from rideshare.app.services.booking_engine import BookingEngine
from rideshare.app.services.ride_search import RideSearchService
from rideshare.app.services.notification_service import InAppNotificationSink
from rideshare.app.services.audit import log_event, AuditAction
from rideshare.app.core.config import settings

router = APIRouter(prefix="/rides", tags=["Rides"])


@router.post("", status_code=status.HTTP_201_CREATED, response_model=ApiResponse[RideResponse])
async def create_ride(
    ride_data: RideCreate,
    current_user: dict = Depends(require_role([UserRole.DRIVER])),
    geocoder: GeocodingClient = Depends(get_geocoding_client),
    db: AsyncSession = Depends(get_db)
):
    """
    Create a ride (Driver only).

    Each endpoint needs coordinates or an address. Pass route_index to pick
    one of the alternatives returned by /rides/route-options.
    """
    store = RideStore(geocoder=geocoder)
    ride = await store.create(db, current_user["user_id"], ride_data)

    await log_event(
        db=db,
        action=AuditAction.RIDE_CREATED,
        actor_id=current_user["user_id"],
        actor_username=current_user.get("sub"),
        ride_id=ride.id,
        metadata={"seats": ride.available_seats, "route_index": ride.chosen_route_index}
    )

    return ApiResponse(data=RideResponse.model_validate(ride), message="Ride created")


@router.get("", response_model=ApiResponse[List[RideWithDriverResponse]])
async def list_upcoming_rides(
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """All rides departing in the future, soonest first."""
    rides = await RideStore().list_upcoming(db)
    return ApiResponse(data=[RideWithDriverResponse.model_validate(ride) for ride in rides])


@router.get("/mine", response_model=ApiResponse[List[DriverRideResponse]])
async def list_my_rides(
    current_user: dict = Depends(require_role([UserRole.DRIVER])),
    db: AsyncSession = Depends(get_db)
):
    """Driver's own rides with booking counts."""
    rows = await RideStore().list_for_driver(db, current_user["user_id"])
    return ApiResponse(data=[
        DriverRideResponse(**RideResponse.model_validate(ride).model_dump(), bookings_count=count)
        for ride, count in rows
    ])


@router.get("/autocomplete", response_model=ApiResponse[List[AutocompleteSuggestion]])
async def autocomplete_address(
    text: str = Query(..., min_length=2, max_length=255),
    current_user: dict = Depends(get_current_user),
    geocoder: GeocodingClient = Depends(get_geocoding_client)
):
    """Address suggestions for ride creation forms."""
    results = await geocoder.autocomplete(text)
    return ApiResponse(data=[
        AutocompleteSuggestion(label=item.label, lat=item.lat, lng=item.lng) for item in results
    ])


@router.post("/route-options", response_model=ApiResponse[List[RouteOption]])
async def route_options(
    request: RouteOptionsRequest,
    current_user: dict = Depends(require_role([UserRole.DRIVER])),
    geocoder: GeocodingClient = Depends(get_geocoding_client)
):
    """Alternative routes between two points; the index is passed back on ride creation."""
    routes = await geocoder.route_alternatives(
        (request.pickup.lat, request.pickup.lng),
        (request.destination.lat, request.destination.lng),
        count=settings.route_alternatives,
    )
    return ApiResponse(data=[
        RouteOption(index=index, distance=route.distance, duration=route.duration, geometry=route.geometry)
        for index, route in enumerate(routes)
    ])


async def _search_point(
    geocoder: GeocodingClient,
    endpoint: str,
    point: Optional[LocationPoint],
    address: Optional[str],
) -> Tuple[float, float]:
    if point is not None:
        return point.lat, point.lng
    if address and address.strip():
        result = await geocoder.geocode(address.strip())
        return result.lat, result.lng
    raise MissingLocationData(endpoint)


@router.post("/search", response_model=ApiResponse[List[RideWithDriverResponse]])
async def search_rides(
    request: RideSearchRequest,
    current_user: dict = Depends(get_current_user),
    geocoder: GeocodingClient = Depends(get_geocoding_client),
    db: AsyncSession = Depends(get_db)
):
    """Active rides on a date that pass near both the source and the destination."""
    source = await _search_point(geocoder, "source", request.source, request.source_address)
    destination = await _search_point(geocoder, "destination", request.destination, request.destination_address)
    rides = await RideSearchService().search(db, request.date, request.seats_required, source, destination)
    return ApiResponse(data=[RideWithDriverResponse.model_validate(ride) for ride in rides])


@router.get("/{ride_id}", response_model=ApiResponse[RideWithDriverResponse])
async def get_ride(
    ride_id: int = Path(..., description="Ride ID"),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    ride = await RideStore().get_by_id(db, ride_id, with_driver=True)
    return ApiResponse(data=RideWithDriverResponse.model_validate(ride))


@router.post("/{ride_id}/book", status_code=status.HTTP_201_CREATED, response_model=ApiResponse[BookingResponse])
async def book_ride(
    booking_data: BookingCreate,
    ride_id: int = Path(..., description="Ride ID"),
    current_user: dict = Depends(require_role([UserRole.PASSENGER])),
    db: AsyncSession = Depends(get_db)
):
    """
    Book seats on a ride.

    Direct rides confirm immediately; request rides wait for the driver.
    """
    engine = BookingEngine(notifier=InAppNotificationSink(db))
    booking = await engine.book(
        db,
        ride_id,
        current_user["user_id"],
        booking_data.seats,
        communication_number=booking_data.communication_number,
    )

    await log_event(
        db=db,
        action=AuditAction.BOOKING_CREATED,
        actor_id=current_user["user_id"],
        actor_username=current_user.get("sub"),
        ride_id=ride_id,
        booking_id=booking.id,
        metadata={"seats": booking.seats, "status": booking.status.value}
    )

    return ApiResponse(data=BookingResponse.model_validate(booking), message="Booking created")


@router.patch("/{ride_id}/cancel", response_model=ApiResponse[RideResponse])
async def cancel_ride(
    ride_id: int = Path(..., description="Ride ID"),
    current_user: dict = Depends(require_role([UserRole.DRIVER])),
    db: AsyncSession = Depends(get_db)
):
    """Cancel a ride and every active booking on it (owning driver only)."""
    store = RideStore(notifier=InAppNotificationSink(db))
    ride = await store.cancel(db, ride_id, current_user["user_id"])

    await log_event(
        db=db,
        action=AuditAction.RIDE_CANCELLED,
        actor_id=current_user["user_id"],
        actor_username=current_user.get("sub"),
        ride_id=ride.id
    )

    return ApiResponse(data=RideResponse.model_validate(ride), message="Ride cancelled")


@router.patch("/{ride_id}/finish", response_model=ApiResponse[RideResponse])
async def finish_ride(
    ride_id: int = Path(..., description="Ride ID"),
    current_user: dict = Depends(require_role([UserRole.DRIVER])),
    db: AsyncSession = Depends(get_db)
):
    store = RideStore(notifier=InAppNotificationSink(db))
    ride = await store.finish(db, ride_id, current_user["user_id"])

    await log_event(
        db=db,
        action=AuditAction.RIDE_FINISHED,
        actor_id=current_user["user_id"],
        actor_username=current_user.get("sub"),
        ride_id=ride.id
    )

    return ApiResponse(data=RideResponse.model_validate(ride), message="Ride finished, awaiting confirmation")


@router.patch("/{ride_id}/driver-confirm", response_model=ApiResponse[RideResponse])
async def confirm_ride_completion(
    ride_id: int = Path(..., description="Ride ID"),
    current_user: dict = Depends(require_role([UserRole.DRIVER])),
    db: AsyncSession = Depends(get_db)
):
    store = RideStore(notifier=InAppNotificationSink(db))
    ride = await store.confirm_driver_completion(db, ride_id, current_user["user_id"])

    await log_event(
        db=db,
        action=AuditAction.RIDE_DRIVER_CONFIRMED,
        actor_id=current_user["user_id"],
        actor_username=current_user.get("sub"),
        ride_id=ride.id,
        metadata={"status": ride.status.value}
    )

    return ApiResponse(data=RideResponse.model_validate(ride))


@router.delete("/{ride_id}", response_model=ApiResponse[None])
async def delete_ride(
    ride_id: int = Path(..., description="Ride ID"),
    current_user: dict = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    """Hard delete a ride and its bookings (Admin only)."""
    await RideStore().delete(db, ride_id)

    await log_event(
        db=db,
        action=AuditAction.RIDE_DELETED,
        actor_id=current_user["user_id"],
        actor_username=current_user.get("sub"),
        ride_id=ride_id
    )

    return ApiResponse(message="Ride deleted")
