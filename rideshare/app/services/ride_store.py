"""
Ride store.

Owns ride records: creation with geocoded endpoints and route data,
status transitions, retrieval and deletion. All provider calls happen
before the database transaction is opened; the ride row is only written
once every endpoint and the route have been resolved.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from sqlalchemy import select, func, delete as sql_delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from rideshare.app.core.config import settings
from rideshare.app.core.exceptions import (
    AlreadyCancelled,
    GeocodingError,
    InvalidCoordinates,
    InvalidDepartureTime,
    InvalidRideTransition,
    InvalidRouteSelection,
    MissingLocationData,
    NotOwner,
    RideNotFound,
)
from rideshare.app.models.booking import Booking
from rideshare.app.models.ride import Ride
from rideshare.app.models.ride_enums import RideStatus, BookingStatus, ACTIVE_BOOKING_STATUSES, OPEN_RIDE_STATUSES
from rideshare.app.schemas.ride import RideCreate
from rideshare.app.services.geo import is_valid_coordinate, sanitize_route_geometry
from rideshare.app.services.geocoding import GeocodingClient, GeocodeResult
from rideshare.app.services.notification_service import NotificationSink, NullNotificationSink, NotificationKind

logger = logging.getLogger(__name__)


# Explicit transitions. active <-> full is derived from the seat count and
# cancellation goes through RideStore.cancel.
ALLOWED_RIDE_TRANSITIONS = {
    RideStatus.ACTIVE: {RideStatus.AWAITING_CONFIRMATION},
    RideStatus.FULL: {RideStatus.AWAITING_CONFIRMATION},
    RideStatus.AWAITING_CONFIRMATION: {RideStatus.COMPLETED},
    RideStatus.CANCELLED: set(),
    RideStatus.COMPLETED: set(),
}


def utc_naive(value: datetime) -> datetime:
    """Normalize to naive UTC, the representation stored in the database."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


async def lock_ride(db: AsyncSession, ride_id: int) -> Ride:
    """
    Load a ride with an exclusive row lock held until the transaction ends.

    populate_existing refreshes an instance already in the identity map,
    so the caller always sees the row as of lock acquisition.
    """
    result = await db.execute(
        select(Ride)
        .where(Ride.id == ride_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    ride = result.scalar_one_or_none()
    if not ride:
        raise RideNotFound(ride_id)
    return ride


def check_ride_transition(ride: Ride, target: RideStatus):
    if ride.status == RideStatus.CANCELLED:
        raise AlreadyCancelled(ride.id)
    if target not in ALLOWED_RIDE_TRANSITIONS[ride.status]:
        raise InvalidRideTransition(ride.status.value, target.value)


async def complete_ride_if_confirmed(db: AsyncSession, ride: Ride) -> bool:
    """
    Complete a finished ride once the driver and every confirmed passenger
    have confirmed. Must be called with the ride row locked.
    """
    if ride.status != RideStatus.AWAITING_CONFIRMATION or ride.driver_confirmed_at is None:
        return False

    result = await db.execute(
        select(Booking).where(
            Booking.ride_id == ride.id,
            Booking.status == BookingStatus.CONFIRMED
        )
    )
    confirmed = result.scalars().all()
    if any(booking.passenger_confirmed_at is None for booking in confirmed):
        return False

    now = datetime.utcnow()
    for booking in confirmed:
        booking.status = BookingStatus.COMPLETED
        booking.completed_at = now

    ride.status = RideStatus.COMPLETED
    ride.passengers_confirmed = True
    logger.info("Ride %s completed with %s confirmed bookings", ride.id, len(confirmed))
    return True


async def notify_ride_completed(notifier: NotificationSink, ride: Ride, passenger_ids: List[int]):
    for user_id in [ride.driver_id, *passenger_ids]:
        await notifier.safe_notify(
            user_id,
            NotificationKind.RIDE_COMPLETED,
            "Ride completed",
            f"Ride from {ride.pickup_address} to {ride.destination_address} is complete.",
            {"ride_id": ride.id},
        )


class RideStore:
    """Ride lifecycle operations. Every method takes the request's session."""

    def __init__(self, geocoder: Optional[GeocodingClient] = None, notifier: Optional[NotificationSink] = None):
        self.geocoder = geocoder
        self.notifier = notifier or NullNotificationSink()

    # ------------------------------------------------------------ Creation

    async def _resolve_endpoint(
        self,
        endpoint: str,
        address: Optional[str],
        lat: Optional[float],
        lng: Optional[float],
    ) -> GeocodeResult:
        if lat is not None and lng is not None:
            if not is_valid_coordinate(lat, lng):
                raise InvalidCoordinates(lat, lng)
            try:
                label = await self.geocoder.reverse_geocode(lat, lng)
            except GeocodingError as exc:
                logger.warning("Reverse geocoding %s (%s, %s) failed: %s", endpoint, lat, lng, exc.message)
                label = address or f"{lat}, {lng}"
            return GeocodeResult(lat=lat, lng=lng, label=label)

        if address and address.strip():
            return await self.geocoder.geocode(address.strip())

        raise MissingLocationData(endpoint)

    async def create(self, db: AsyncSession, driver_id: int, data: RideCreate) -> Ride:
        """
        Create a ride for a driver.

        Resolves both endpoints and the route first. Any geocoding or
        routing failure is re-raised with ride-creation context and nothing
        is written.
        """
        departure_time = utc_naive(data.departure_time)
        min_lead = settings.min_departure_lead_minutes
        if departure_time < datetime.utcnow() + timedelta(minutes=min_lead):
            raise InvalidDepartureTime(min_lead)

        try:
            pickup = await self._resolve_endpoint("pickup", data.pickup_address, data.pickup_lat, data.pickup_lng)
            destination = await self._resolve_endpoint(
                "destination", data.destination_address, data.destination_lat, data.destination_lng
            )

            origin = (pickup.lat, pickup.lng)
            target = (destination.lat, destination.lng)
            if data.route_index is not None:
                routes = await self.geocoder.route_alternatives(origin, target, count=settings.route_alternatives)
                if not 0 <= data.route_index < len(routes):
                    raise InvalidRouteSelection(data.route_index, len(routes))
                route = routes[data.route_index]
            else:
                route = await self.geocoder.route(origin, target)
        except GeocodingError as exc:
            logger.error("Ride creation for driver %s failed during geocoding: %s", driver_id, exc.message)
            raise exc.add_context("Could not create ride: ", stage="ride_creation")

        geometry = sanitize_route_geometry(route.geometry)
        if geometry is None and route.geometry is not None:
            logger.warning("Ride for driver %s stored without route geometry", driver_id)

        ride = Ride(
            driver_id=driver_id,
            pickup_address=pickup.label,
            pickup_lat=pickup.lat,
            pickup_lng=pickup.lng,
            destination_address=destination.label,
            destination_lat=destination.lat,
            destination_lng=destination.lng,
            distance=route.distance,
            duration=route.duration,
            route_geometry=geometry,
            chosen_route_index=data.route_index,
            offered_seats=data.available_seats,
            available_seats=data.available_seats,
            price_per_seat=data.price_per_seat,
            departure_time=departure_time,
            vehicle_type=data.vehicle_type,
            payment_method=data.payment_method,
            booking_type=data.booking_type,
            notes=data.notes,
            communication_number=data.communication_number,
            status=RideStatus.ACTIVE,
        )

        try:
            db.add(ride)
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        await db.refresh(ride)

        logger.info("Ride %s created by driver %s (%s seats)", ride.id, driver_id, ride.available_seats)
        return ride

    # ------------------------------------------------------------- Queries

    async def get_by_id(self, db: AsyncSession, ride_id: int, with_driver: bool = False, with_bookings: bool = False) -> Ride:
        query = select(Ride).where(Ride.id == ride_id)
        if with_driver:
            query = query.options(selectinload(Ride.driver))
        if with_bookings:
            query = query.options(selectinload(Ride.bookings))

        result = await db.execute(query)
        ride = result.scalar_one_or_none()
        if not ride:
            raise RideNotFound(ride_id)
        return ride

    async def list_upcoming(self, db: AsyncSession) -> List[Ride]:
        result = await db.execute(
            select(Ride)
            .where(Ride.departure_time > datetime.utcnow())
            .options(selectinload(Ride.driver))
            .order_by(Ride.departure_time.asc())
        )
        return result.scalars().all()

    async def list_for_driver(self, db: AsyncSession, driver_id: int) -> List[Tuple[Ride, int]]:
        """Driver's rides, newest departure first, each with its booking count."""
        result = await db.execute(
            select(Ride, func.count(Booking.id))
            .outerjoin(Booking, Booking.ride_id == Ride.id)
            .where(Ride.driver_id == driver_id)
            .group_by(Ride.id)
            .order_by(Ride.departure_time.desc())
        )
        return [(ride, count) for ride, count in result.all()]

    # --------------------------------------------------------- Transitions

    async def update_status(self, db: AsyncSession, ride_id: int, new_status: RideStatus) -> Ride:
        """
        Move a ride along ALLOWED_RIDE_TRANSITIONS. Finishing through here
        applies the same checks as finish and stamps finished_at.
        """
        try:
            ride = await lock_ride(db, ride_id)
            check_ride_transition(ride, new_status)
            if new_status == RideStatus.AWAITING_CONFIRMATION:
                await self._mark_finished(db, ride)
            else:
                ride.status = new_status
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        return ride

    async def cancel(self, db: AsyncSession, ride_id: int, by_driver_id: int) -> Ride:
        """
        Cancel a ride (irreversible).

        Active bookings are cancelled with it and their seats returned;
        affected passengers are notified after the commit.
        """
        try:
            ride = await lock_ride(db, ride_id)
            if ride.status == RideStatus.CANCELLED:
                raise AlreadyCancelled(ride_id)
            if ride.driver_id != by_driver_id:
                raise NotOwner("Only the ride driver can cancel this ride")
            if ride.status not in OPEN_RIDE_STATUSES:
                raise InvalidRideTransition(ride.status.value, RideStatus.CANCELLED.value)

            result = await db.execute(
                select(Booking).where(
                    Booking.ride_id == ride.id,
                    Booking.status.in_(ACTIVE_BOOKING_STATUSES)
                ).with_for_update()
            )
            affected = result.scalars().all()

            now = datetime.utcnow()
            refunds = []
            for booking in affected:
                refund = 0
                if booking.status == BookingStatus.CONFIRMED:
                    ride.available_seats += booking.seats
                    refund = booking.seats * ride.price_per_seat
                booking.status = BookingStatus.CANCELLED
                booking.cancelled_at = now
                refunds.append((booking.user_id, booking.id, refund))

            ride.status = RideStatus.CANCELLED
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info("Ride %s cancelled by driver %s, %s bookings cancelled", ride.id, by_driver_id, len(refunds))

        for user_id, booking_id, refund in refunds:
            await self.notifier.safe_notify(
                user_id,
                NotificationKind.RIDE_CANCELLED,
                "Ride cancelled",
                f"Your ride from {ride.pickup_address} to {ride.destination_address} was cancelled by the driver.",
                {"ride_id": ride.id, "booking_id": booking_id, "refund_amount": str(refund)},
            )
        return ride

    async def _mark_finished(self, db: AsyncSession, ride: Ride) -> List[int]:
        """Set the ride awaiting confirmation; needs at least one confirmed booking."""
        result = await db.execute(
            select(Booking.user_id).where(
                Booking.ride_id == ride.id,
                Booking.status == BookingStatus.CONFIRMED
            )
        )
        passenger_ids = list(result.scalars().all())
        if not passenger_ids:
            raise InvalidRideTransition(ride.status.value, RideStatus.AWAITING_CONFIRMATION.value)

        ride.status = RideStatus.AWAITING_CONFIRMATION
        ride.finished_at = datetime.utcnow()
        return passenger_ids

    async def finish(self, db: AsyncSession, ride_id: int, driver_id: int) -> Ride:
        """Driver marks the ride as driven; completion waits for confirmations."""
        try:
            ride = await lock_ride(db, ride_id)
            if ride.driver_id != driver_id:
                raise NotOwner("Only the ride driver can finish this ride")
            check_ride_transition(ride, RideStatus.AWAITING_CONFIRMATION)
            passenger_ids = await self._mark_finished(db, ride)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        for user_id in [ride.driver_id, *passenger_ids]:
            await self.notifier.safe_notify(
                user_id,
                NotificationKind.RIDE_FINISHED,
                "Ride finished",
                "The driver marked this ride as finished. Please confirm completion.",
                {"ride_id": ride.id},
            )
        return ride

    async def confirm_driver_completion(self, db: AsyncSession, ride_id: int, driver_id: int) -> Ride:
        try:
            ride = await lock_ride(db, ride_id)
            if ride.driver_id != driver_id:
                raise NotOwner("Only the ride driver can confirm completion")
            if ride.status != RideStatus.AWAITING_CONFIRMATION:
                raise InvalidRideTransition(ride.status.value, RideStatus.COMPLETED.value)

            if ride.driver_confirmed_at is None:
                ride.driver_confirmed_at = datetime.utcnow()
            completed = await complete_ride_if_confirmed(db, ride)

            passenger_ids = []
            if completed:
                result = await db.execute(
                    select(Booking.user_id).where(
                        Booking.ride_id == ride.id,
                        Booking.status == BookingStatus.COMPLETED
                    )
                )
                passenger_ids = list(result.scalars().all())
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        if completed:
            await notify_ride_completed(self.notifier, ride, passenger_ids)
        return ride

    async def delete(self, db: AsyncSession, ride_id: int):
        """Hard delete a ride and its bookings."""
        try:
            ride = await lock_ride(db, ride_id)
            await db.execute(sql_delete(Booking).where(Booking.ride_id == ride.id))
            await db.delete(ride)
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        logger.info("Ride %s deleted", ride_id)
