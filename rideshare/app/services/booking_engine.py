"""
Booking engine.

Owns the seat inventory. Every seat mutation runs under the ride's row
lock inside one transaction: lock ride, validate capacity, write the
booking, adjust seats and re-derive the ride's active/full status.
Concurrent bookers for the same ride are serialized by the lock.

Booking state machine:
    pending -> confirmed -> {completed, no_show}
    {pending, confirmed} -> cancelled
"""

import logging
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from rideshare.app.core.config import settings
from rideshare.app.core.exceptions import (
    BookingNotFound,
    DuplicateBooking,
    InsufficientSeats,
    InvalidBookingTransition,
    InvalidSeatCount,
    NotOwner,
    RideNotBookable,
    SelfBookingNotAllowed,
)
from rideshare.app.models.booking import Booking
from rideshare.app.models.ride import Ride
from rideshare.app.models.ride_enums import (
    BookingStatus,
    BookingType,
    RideStatus,
    ACTIVE_BOOKING_STATUSES,
    OPEN_RIDE_STATUSES,
)
from rideshare.app.services.notification_service import NotificationSink, NullNotificationSink, NotificationKind
from rideshare.app.services.refund_policy import RefundQuote, quote_refund
from rideshare.app.services.ride_store import lock_ride, complete_ride_if_confirmed, notify_ride_completed

logger = logging.getLogger(__name__)


class BookingEngine:
    """Seat booking and booking transitions. Every method takes the request's session."""

    def __init__(self, notifier: Optional[NotificationSink] = None):
        self.notifier = notifier or NullNotificationSink()

    # ------------------------------------------------------------- Helpers

    async def _lock_booking(self, db: AsyncSession, booking_id: int) -> Tuple[Booking, Ride]:
        """Lock the booking's ride, then the booking itself."""
        result = await db.execute(select(Booking.ride_id).where(Booking.id == booking_id))
        ride_id = result.scalar_one_or_none()
        if ride_id is None:
            raise BookingNotFound(booking_id)

        ride = await lock_ride(db, ride_id)
        result = await db.execute(
            select(Booking)
            .where(Booking.id == booking_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        booking = result.scalar_one_or_none()
        if booking is None:
            raise BookingNotFound(booking_id)
        return booking, ride

    @staticmethod
    def _check_transition(booking: Booking, allowed_from, target: BookingStatus):
        if booking.status not in allowed_from:
            raise InvalidBookingTransition(booking.status.value, target.value)

    @staticmethod
    def _consume_seats(ride: Ride, seats: int) -> bool:
        """Take seats from the ride; returns True when this filled it."""
        if seats > ride.available_seats:
            raise InsufficientSeats(seats, ride.available_seats)
        ride.available_seats -= seats
        return ride.refresh_capacity_status() == RideStatus.FULL

    @staticmethod
    async def _confirmed_passenger_ids(db: AsyncSession, ride_id: int) -> List[int]:
        result = await db.execute(
            select(Booking.user_id).where(
                Booking.ride_id == ride_id,
                Booking.status == BookingStatus.CONFIRMED
            ).distinct()
        )
        return list(result.scalars().all())

    async def _notify_ride_full(self, ride: Ride, passenger_ids: List[int]):
        """One notification each to the driver and every confirmed passenger."""
        recipients = [ride.driver_id] + [user_id for user_id in passenger_ids if user_id != ride.driver_id]
        for user_id in recipients:
            await self.notifier.safe_notify(
                user_id,
                NotificationKind.RIDE_FULL,
                "Ride is full",
                f"All seats on the ride from {ride.pickup_address} to {ride.destination_address} are booked.",
                {"ride_id": ride.id},
            )

    # ------------------------------------------------------------- Booking

    async def book(
        self,
        db: AsyncSession,
        ride_id: int,
        user_id: int,
        seats: int,
        status: Optional[BookingStatus] = None,
        communication_number: Optional[str] = None,
    ) -> Booking:
        """
        Book seats on a ride.

        Without an explicit status, direct rides confirm immediately and
        request rides create a pending booking for the driver to accept.
        Only confirmed bookings consume seats. Raises InsufficientSeats
        with nothing persisted when the ride cannot hold the request.
        """
        max_seats = settings.max_seats_per_booking
        if not 1 <= seats <= max_seats:
            raise InvalidSeatCount(seats, max_seats)
        if status is not None and status not in ACTIVE_BOOKING_STATUSES:
            raise InvalidBookingTransition("new", status.value)

        became_full = False
        passenger_ids: List[int] = []
        try:
            ride = await lock_ride(db, ride_id)
            if ride.status not in OPEN_RIDE_STATUSES:
                raise RideNotBookable(ride.id, ride.status.value)
            if ride.driver_id == user_id:
                raise SelfBookingNotAllowed()

            existing = await db.execute(
                select(Booking.id).where(
                    Booking.ride_id == ride.id,
                    Booking.user_id == user_id,
                    Booking.status.in_(ACTIVE_BOOKING_STATUSES)
                ).limit(1)
            )
            if existing.scalar_one_or_none() is not None:
                raise DuplicateBooking(ride.id)

            if status is None:
                status = BookingStatus.CONFIRMED if ride.booking_type == BookingType.DIRECT else BookingStatus.PENDING

            booking = Booking(
                ride_id=ride.id,
                user_id=user_id,
                seats=seats,
                status=status,
                communication_number=communication_number,
            )
            db.add(booking)
            await db.flush()

            if status == BookingStatus.CONFIRMED:
                became_full = self._consume_seats(ride, seats)
            elif seats > ride.available_seats:
                raise InsufficientSeats(seats, ride.available_seats)

            if became_full:
                passenger_ids = await self._confirmed_passenger_ids(db, ride.id)

            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info(
            "Booking %s: user %s booked %s seats on ride %s (%s), %s left",
            booking.id, user_id, seats, ride.id, status.value, ride.available_seats,
        )

        if became_full:
            await self._notify_ride_full(ride, passenger_ids)
        elif status == BookingStatus.PENDING:
            await self.notifier.safe_notify(
                ride.driver_id,
                NotificationKind.BOOKING_REQUESTED,
                "New booking request",
                f"A passenger requested {seats} seat(s) on your ride.",
                {"ride_id": ride.id, "booking_id": booking.id},
            )
        return booking

    async def accept(self, db: AsyncSession, booking_id: int, driver_id: int) -> Booking:
        """Driver confirms a pending request; seats are taken now."""
        passenger_ids: List[int] = []
        try:
            booking, ride = await self._lock_booking(db, booking_id)
            if ride.driver_id != driver_id:
                raise NotOwner("Only the ride driver can accept bookings")
            self._check_transition(booking, (BookingStatus.PENDING,), BookingStatus.CONFIRMED)
            if ride.status not in OPEN_RIDE_STATUSES:
                raise RideNotBookable(ride.id, ride.status.value)

            became_full = self._consume_seats(ride, booking.seats)
            booking.status = BookingStatus.CONFIRMED
            if became_full:
                await db.flush()
                passenger_ids = await self._confirmed_passenger_ids(db, ride.id)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        await self.notifier.safe_notify(
            booking.user_id,
            NotificationKind.BOOKING_ACCEPTED,
            "Booking accepted",
            "The driver accepted your booking request.",
            {"ride_id": ride.id, "booking_id": booking.id},
        )
        if became_full:
            await self._notify_ride_full(ride, passenger_ids)
        return booking

    async def reject(self, db: AsyncSession, booking_id: int, driver_id: int) -> Booking:
        try:
            booking, ride = await self._lock_booking(db, booking_id)
            if ride.driver_id != driver_id:
                raise NotOwner("Only the ride driver can reject bookings")
            self._check_transition(booking, (BookingStatus.PENDING,), BookingStatus.CANCELLED)

            booking.status = BookingStatus.CANCELLED
            booking.cancelled_at = datetime.utcnow()
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        await self.notifier.safe_notify(
            booking.user_id,
            NotificationKind.BOOKING_REJECTED,
            "Booking rejected",
            "The driver declined your booking request.",
            {"ride_id": ride.id, "booking_id": booking.id},
        )
        return booking

    async def cancel(
        self,
        db: AsyncSession,
        booking_id: int,
        by_user_id: int,
        now: Optional[datetime] = None,
    ) -> Tuple[Booking, RefundQuote]:
        """
        Passenger cancels their booking.

        Seats held by a confirmed booking go back to the ride, which
        re-opens if it was full. Returns the refund quote for the booking.
        """
        now = now or datetime.utcnow()
        try:
            booking, ride = await self._lock_booking(db, booking_id)
            if booking.user_id != by_user_id:
                raise NotOwner("Only the passenger who made this booking can cancel it")
            if not booking.can_be_cancelled():
                raise InvalidBookingTransition(booking.status.value, BookingStatus.CANCELLED.value)

            was_confirmed = booking.status == BookingStatus.CONFIRMED
            if was_confirmed:
                ride.available_seats += booking.seats
                ride.refresh_capacity_status()
                quote = quote_refund(booking.seats, ride.price_per_seat, booking.created_at, ride.departure_time, now)
            else:
                quote = quote_refund(0, 0, booking.created_at, ride.departure_time, now)

            booking.status = BookingStatus.CANCELLED
            booking.cancelled_at = now
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info(
            "Booking %s cancelled by user %s, refund %s%% (%s)",
            booking.id, by_user_id, quote.percentage, quote.amount,
        )

        await self.notifier.safe_notify(
            ride.driver_id,
            NotificationKind.BOOKING_CANCELLED,
            "Booking cancelled",
            f"A passenger cancelled {booking.seats} seat(s) on your ride.",
            {"ride_id": ride.id, "booking_id": booking.id, "seats_returned": booking.seats if was_confirmed else 0},
        )
        return booking, quote

    async def cancel_seats(
        self,
        db: AsyncSession,
        booking_id: int,
        by_user_id: int,
        seats: int,
        now: Optional[datetime] = None,
    ) -> Tuple[Booking, RefundQuote]:
        """
        Passenger gives up some of their seats.

        The booking shrinks by 'seats', or is cancelled outright when none
        remain. The refund quote covers the released seats only.
        """
        now = now or datetime.utcnow()
        try:
            booking, ride = await self._lock_booking(db, booking_id)
            if booking.user_id != by_user_id:
                raise NotOwner("Only the passenger who made this booking can cancel it")
            if not booking.can_be_cancelled():
                raise InvalidBookingTransition(booking.status.value, BookingStatus.CANCELLED.value)
            if seats < 1 or seats > booking.seats:
                raise InvalidSeatCount(seats, booking.seats)

            was_confirmed = booking.status == BookingStatus.CONFIRMED
            if was_confirmed:
                ride.available_seats += seats
                ride.refresh_capacity_status()
                quote = quote_refund(seats, ride.price_per_seat, booking.created_at, ride.departure_time, now)
            else:
                quote = quote_refund(0, 0, booking.created_at, ride.departure_time, now)

            if seats == booking.seats:
                booking.status = BookingStatus.CANCELLED
                booking.cancelled_at = now
            else:
                booking.seats -= seats
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info(
            "Booking %s: user %s cancelled %s seat(s), booking now %s",
            booking.id, by_user_id, seats, booking.status.value,
        )

        await self.notifier.safe_notify(
            ride.driver_id,
            NotificationKind.BOOKING_CANCELLED,
            "Seats cancelled",
            f"A passenger cancelled {seats} seat(s) on your ride.",
            {"ride_id": ride.id, "booking_id": booking.id, "seats_returned": seats if was_confirmed else 0},
        )
        return booking, quote

    # -------------------------------------------------------- Completion

    async def mark_completed(self, db: AsyncSession, booking_id: int, driver_id: int) -> Booking:
        try:
            booking, ride = await self._lock_booking(db, booking_id)
            if ride.driver_id != driver_id:
                raise NotOwner("Only the ride driver can complete bookings")
            self._check_transition(booking, (BookingStatus.CONFIRMED,), BookingStatus.COMPLETED)

            booking.status = BookingStatus.COMPLETED
            booking.completed_at = datetime.utcnow()
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        return booking

    async def mark_no_show(self, db: AsyncSession, booking_id: int, driver_id: int) -> Booking:
        try:
            booking, ride = await self._lock_booking(db, booking_id)
            if ride.driver_id != driver_id:
                raise NotOwner("Only the ride driver can mark a no-show")
            self._check_transition(booking, (BookingStatus.CONFIRMED,), BookingStatus.NO_SHOW)

            booking.status = BookingStatus.NO_SHOW
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        return booking

    async def confirm_passenger(self, db: AsyncSession, booking_id: int, user_id: int) -> Booking:
        """
        Passenger confirms the ride happened. The status is left alone
        unless this was the last confirmation the ride was waiting for.
        """
        passenger_ids: List[int] = []
        try:
            booking, ride = await self._lock_booking(db, booking_id)
            if booking.user_id != user_id:
                raise NotOwner("Only the passenger who made this booking can confirm it")
            if booking.status != BookingStatus.CONFIRMED:
                raise InvalidBookingTransition(booking.status.value, "passenger_confirmed")

            if booking.passenger_confirmed_at is None:
                booking.passenger_confirmed_at = datetime.utcnow()
            await db.flush()

            completed = await complete_ride_if_confirmed(db, ride)
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
        return booking

    # ------------------------------------------------------------- Queries

    async def get_by_id(self, db: AsyncSession, booking_id: int) -> Booking:
        result = await db.execute(select(Booking).where(Booking.id == booking_id))
        booking = result.scalar_one_or_none()
        if not booking:
            raise BookingNotFound(booking_id)
        return booking

    async def list_for_user(self, db: AsyncSession, user_id: int) -> List[Booking]:
        """Passenger's bookings with their rides, latest departure first."""
        result = await db.execute(
            select(Booking)
            .join(Ride, Booking.ride_id == Ride.id)
            .where(Booking.user_id == user_id)
            .options(selectinload(Booking.ride))
            .order_by(Ride.departure_time.desc(), Booking.id.desc())
        )
        return result.scalars().all()
