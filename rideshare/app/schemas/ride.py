"""
Ride schemas.

Request and response models for ride creation, listing and search.
"""

from pydantic import BaseModel, Field
from datetime import datetime, date
from decimal import Decimal
from typing import Any, List, Optional

from rideshare.app.models.ride_enums import BookingType, PaymentMethod, RideStatus


class RideCreate(BaseModel):
    """
    Schema for creating a ride.

    Each endpoint is given either as coordinates or as a free-text address.
    """
    pickup_address: Optional[str] = Field(None, max_length=255)
    pickup_lat: Optional[float] = Field(None, ge=-90, le=90)
    pickup_lng: Optional[float] = Field(None, ge=-180, le=180)
    destination_address: Optional[str] = Field(None, max_length=255)
    destination_lat: Optional[float] = Field(None, ge=-90, le=90)
    destination_lng: Optional[float] = Field(None, ge=-180, le=180)

    departure_time: datetime
    available_seats: int = Field(..., ge=1, le=8)
    price_per_seat: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)

    vehicle_type: str = Field("Not specified", max_length=50)
    payment_method: PaymentMethod = PaymentMethod.CASH
    booking_type: BookingType = BookingType.DIRECT
    notes: Optional[str] = Field(None, max_length=500)
    communication_number: Optional[str] = Field(None, max_length=20)
    route_index: Optional[int] = Field(None, ge=0, description="Chosen alternative from /rides/route-options")


class DriverInfo(BaseModel):
    id: int
    username: str
    first_name: Optional[str]
    last_name: Optional[str]
    phone_number: Optional[str]

    class Config:
        from_attributes = True


class RideResponse(BaseModel):
    """Schema for ride response."""
    id: int
    driver_id: int
    pickup_address: str
    pickup_lat: float
    pickup_lng: float
    destination_address: str
    destination_lat: float
    destination_lng: float
    distance: int
    duration: int
    route_geometry: Optional[List[List[float]]]
    chosen_route_index: Optional[int]
    offered_seats: int
    available_seats: int
    price_per_seat: Decimal
    departure_time: datetime
    finished_at: Optional[datetime]
    driver_confirmed_at: Optional[datetime]
    passengers_confirmed: bool
    vehicle_type: str
    payment_method: PaymentMethod
    booking_type: BookingType
    notes: Optional[str]
    communication_number: Optional[str]
    status: RideStatus

    class Config:
        from_attributes = True


class RideWithDriverResponse(RideResponse):
    driver: DriverInfo


class DriverRideResponse(RideResponse):
    """Ride as listed for its driver."""
    bookings_count: int


class LocationPoint(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class RouteOptionsRequest(BaseModel):
    pickup: LocationPoint
    destination: LocationPoint


class RouteOption(BaseModel):
    index: int
    distance: int
    duration: int
    geometry: Optional[Any]


class RideSearchRequest(BaseModel):
    """
    Rides departing on 'date' whose endpoints or route corridor cover both points.

    Each end is given as a point or as an address to geocode.
    """
    date: date
    seats_required: int = Field(1, ge=1, le=10)
    source: Optional[LocationPoint] = None
    destination: Optional[LocationPoint] = None
    source_address: Optional[str] = Field(None, max_length=500)
    destination_address: Optional[str] = Field(None, max_length=500)


class AutocompleteSuggestion(BaseModel):
    label: str
    lat: float
    lng: float
