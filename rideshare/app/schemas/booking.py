"""
Booking schemas.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional

from rideshare.app.models.ride_enums import BookingStatus
from rideshare.app.schemas.ride import RideResponse


class BookingCreate(BaseModel):
    seats: int = Field(..., description="Seats to reserve (1-10)")
    communication_number: Optional[str] = Field(None, max_length=20)


class BookingSeatsCancel(BaseModel):
    seats: int = Field(..., description="Seats to give up; all of them cancels the booking")


class BookingResponse(BaseModel):
    id: int
    ride_id: int
    user_id: int
    seats: int
    status: BookingStatus
    communication_number: Optional[str]
    cancelled_at: Optional[datetime]
    completed_at: Optional[datetime]
    passenger_confirmed_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True


class BookingWithRideResponse(BookingResponse):
    ride: RideResponse


class RefundQuoteResponse(BaseModel):
    percentage: int
    amount: str
    total: str


class BookingCancelResponse(BaseModel):
    booking: BookingResponse
    refund: RefundQuoteResponse
