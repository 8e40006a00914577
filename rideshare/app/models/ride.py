"""
Ride database model.

A ride is offered by a driver with fixed geocoded endpoints, a departure
time and a seat inventory that bookings draw from.
"""

from sqlalchemy import Column, Integer, String, Text, Numeric, Boolean, DateTime, ForeignKey, Enum, JSON
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from rideshare.app.db.session import Base
from rideshare.app.models.ride_enums import RideStatus, BookingType, PaymentMethod, OPEN_RIDE_STATUSES


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class Ride(Base):
    """
    Ride model.
    
    Coordinates are stored as plain lat/lng columns; spatial predicates are
    evaluated in application code (see services/geo.py). Route geometry is
    the provider polyline as a JSON list of [lng, lat] pairs, or NULL.
    """
    __tablename__ = "rides"
    
    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    
    # Ownership - Ride belongs to its driver
    driver_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    
    # Endpoints
    pickup_address = Column(String(255), nullable=False)
    pickup_lat = Column(Numeric(9, 6, asdecimal=False), nullable=False)
    pickup_lng = Column(Numeric(9, 6, asdecimal=False), nullable=False)
    destination_address = Column(String(255), nullable=False)
    destination_lat = Column(Numeric(9, 6, asdecimal=False), nullable=False)
    destination_lng = Column(Numeric(9, 6, asdecimal=False), nullable=False)
    
    # Route
    distance = Column(Integer, nullable=False)  # meters
    duration = Column(Integer, nullable=False)  # seconds
    route_geometry = Column(JSON, nullable=True)
    chosen_route_index = Column(Integer, nullable=True)
    
    # Capacity
    offered_seats = Column(Integer, nullable=False)
    available_seats = Column(Integer, nullable=False)
    price_per_seat = Column(Numeric(10, 2), nullable=False)
    
    # Scheduling (naive UTC)
    departure_time = Column(DateTime, nullable=False, index=True)
    finished_at = Column(DateTime, nullable=True)
    driver_confirmed_at = Column(DateTime, nullable=True)
    passengers_confirmed = Column(Boolean, default=False, nullable=False)
    
    # Descriptive
    vehicle_type = Column(String(50), nullable=False, default="Not specified")
    payment_method = Column(Enum(PaymentMethod, values_callable=_enum_values), default=PaymentMethod.CASH, nullable=False)
    booking_type = Column(Enum(BookingType, values_callable=_enum_values), default=BookingType.DIRECT, nullable=False)
    notes = Column(Text, nullable=True)
    communication_number = Column(String(20), nullable=True)
    
    # Status
    status = Column(Enum(RideStatus, values_callable=_enum_values), default=RideStatus.ACTIVE, nullable=False, index=True)
    
    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
    
    driver = relationship("User", lazy="raise")
    bookings = relationship(
        "Booking",
        back_populates="ride",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="raise",
    )
    
    @property
    def pickup_point(self) -> tuple[float, float]:
        return (float(self.pickup_lat), float(self.pickup_lng))
    
    @property
    def destination_point(self) -> tuple[float, float]:
        return (float(self.destination_lat), float(self.destination_lng))
    
    def refresh_capacity_status(self) -> RideStatus:
        """
        Re-derive active/full from the seat count.
        
        Only touches rides that are still open; cancelled and completion
        statuses are left as they are.
        """
        if self.status in OPEN_RIDE_STATUSES:
            self.status = RideStatus.FULL if self.available_seats == 0 else RideStatus.ACTIVE
        return self.status
    
    def __repr__(self):
        return f"<Ride(id={self.id}, driver_id={self.driver_id}, status='{self.status.value}', seats={self.available_seats})>"
