"""
Booking API Endpoints.

Passengers cancel and confirm their bookings; drivers accept, reject and
close out bookings on their rides.
"""

from typing import List

from fastapi import APIRouter, Depends, Path
from sqlalchemy.ext.asyncio import AsyncSession

from rideshare.app.db.session import get_db
from rideshare.app.core.guards import require_role
from rideshare.app.core.dependencies import get_current_user
from rideshare.app.models.enums import UserRole
from rideshare.app.schemas.common import ApiResponse
from rideshare.app.schemas.booking import (
    BookingResponse,
    BookingWithRideResponse,
    BookingCancelResponse,
    BookingSeatsCancel,
    RefundQuoteResponse,
)
from rideshare.app.services.booking_engine import BookingEngine
from rideshare.app.services.notification_service import InAppNotificationSink
from rideshare.app.services.audit import log_event, AuditAction

router = APIRouter(prefix="/bookings", tags=["Bookings"])


async def _audit(db: AsyncSession, action: str, current_user: dict, booking, metadata=None):
    await log_event(
        db=db,
        action=action,
        actor_id=current_user["user_id"],
        actor_username=current_user.get("sub"),
        ride_id=booking.ride_id,
        booking_id=booking.id,
        metadata=metadata
    )


@router.get("/mine", response_model=ApiResponse[List[BookingWithRideResponse]])
async def list_my_bookings(
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    bookings = await BookingEngine().list_for_user(db, current_user["user_id"])
    return ApiResponse(data=[BookingWithRideResponse.model_validate(booking) for booking in bookings])


@router.patch("/{booking_id}/accept", response_model=ApiResponse[BookingResponse])
async def accept_booking(
    booking_id: int = Path(..., description="Booking ID"),
    current_user: dict = Depends(require_role([UserRole.DRIVER])),
    db: AsyncSession = Depends(get_db)
):
    """Accept a pending booking request (ride driver only)."""
    booking = await BookingEngine(notifier=InAppNotificationSink(db)).accept(db, booking_id, current_user["user_id"])
    await _audit(db, AuditAction.BOOKING_ACCEPTED, current_user, booking)
    return ApiResponse(data=BookingResponse.model_validate(booking), message="Booking accepted")


@router.patch("/{booking_id}/reject", response_model=ApiResponse[BookingResponse])
async def reject_booking(
    booking_id: int = Path(..., description="Booking ID"),
    current_user: dict = Depends(require_role([UserRole.DRIVER])),
    db: AsyncSession = Depends(get_db)
):
    booking = await BookingEngine(notifier=InAppNotificationSink(db)).reject(db, booking_id, current_user["user_id"])
    await _audit(db, AuditAction.BOOKING_REJECTED, current_user, booking)
    return ApiResponse(data=BookingResponse.model_validate(booking), message="Booking rejected")


@router.patch("/{booking_id}/cancel", response_model=ApiResponse[BookingCancelResponse])
async def cancel_booking(
    booking_id: int = Path(..., description="Booking ID"),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Cancel your own booking. The refund depends on how close departure is."""
    booking, quote = await BookingEngine(notifier=InAppNotificationSink(db)).cancel(
        db, booking_id, current_user["user_id"]
    )
    await _audit(db, AuditAction.BOOKING_CANCELLED, current_user, booking, quote.as_dict())
    return ApiResponse(
        data=BookingCancelResponse(
            booking=BookingResponse.model_validate(booking),
            refund=RefundQuoteResponse(**quote.as_dict()),
        ),
        message="Booking cancelled"
    )


@router.patch("/{booking_id}/cancel-seats", response_model=ApiResponse[BookingCancelResponse])
async def cancel_booking_seats(
    data: BookingSeatsCancel,
    booking_id: int = Path(..., description="Booking ID"),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Give up some seats of your booking; the refund covers those seats only."""
    booking, quote = await BookingEngine(notifier=InAppNotificationSink(db)).cancel_seats(
        db, booking_id, current_user["user_id"], data.seats
    )
    await _audit(
        db, AuditAction.BOOKING_SEATS_CANCELLED, current_user, booking,
        {"seats": data.seats, **quote.as_dict()}
    )
    return ApiResponse(
        data=BookingCancelResponse(
            booking=BookingResponse.model_validate(booking),
            refund=RefundQuoteResponse(**quote.as_dict()),
        ),
        message="Seats cancelled"
    )


@router.patch("/{booking_id}/passenger-confirm", response_model=ApiResponse[BookingResponse])
async def confirm_booking_completion(
    booking_id: int = Path(..., description="Booking ID"),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    booking = await BookingEngine(notifier=InAppNotificationSink(db)).confirm_passenger(
        db, booking_id, current_user["user_id"]
    )
    await _audit(db, AuditAction.BOOKING_PASSENGER_CONFIRMED, current_user, booking)
    return ApiResponse(data=BookingResponse.model_validate(booking))


@router.patch("/{booking_id}/complete", response_model=ApiResponse[BookingResponse])
async def complete_booking(
    booking_id: int = Path(..., description="Booking ID"),
    current_user: dict = Depends(require_role([UserRole.DRIVER])),
    db: AsyncSession = Depends(get_db)
):
    booking = await BookingEngine().mark_completed(db, booking_id, current_user["user_id"])
    await _audit(db, AuditAction.BOOKING_COMPLETED, current_user, booking)
    return ApiResponse(data=BookingResponse.model_validate(booking))


@router.patch("/{booking_id}/no-show", response_model=ApiResponse[BookingResponse])
async def mark_booking_no_show(
    booking_id: int = Path(..., description="Booking ID"),
    current_user: dict = Depends(require_role([UserRole.DRIVER])),
    db: AsyncSession = Depends(get_db)
):
    booking = await BookingEngine().mark_no_show(db, booking_id, current_user["user_id"])
    await _audit(db, AuditAction.BOOKING_NO_SHOW, current_user, booking)
    return ApiResponse(data=BookingResponse.model_validate(booking))
