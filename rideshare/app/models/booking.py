"""
Booking database model.

A booking reserves seats on a ride for one passenger. Only CONFIRMED
bookings consume ride capacity.
"""

from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Enum
from sqlalchemy.orm import relationship
from rideshare.app.db.session import Base
from rideshare.app.models.ride import _enum_values
from rideshare.app.models.ride_enums import BookingStatus, ACTIVE_BOOKING_STATUSES


class Booking(Base):
    __tablename__ = "bookings"
    
    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    
    ride_id = Column(Integer, ForeignKey('rides.id', ondelete='CASCADE'), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    
    seats = Column(Integer, nullable=False)
    status = Column(Enum(BookingStatus, values_callable=_enum_values), default=BookingStatus.PENDING, nullable=False, index=True)
    communication_number = Column(String(20), nullable=True)
    
    # Transitions
    cancelled_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    passenger_confirmed_at = Column(DateTime, nullable=True)
    
    # Timestamps (naive UTC, compared against departure_time)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    
    ride = relationship("Ride", back_populates="bookings", lazy="raise")
    user = relationship("User", lazy="raise")
    
    def can_be_cancelled(self) -> bool:
        return self.status in ACTIVE_BOOKING_STATUSES
    
    def __repr__(self):
        return f"<Booking(id={self.id}, ride_id={self.ride_id}, user_id={self.user_id}, seats={self.seats}, status='{self.status.value}')>"
