"""
Audit Log Database Model.

Tracks ride and booking lifecycle events.
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON
from sqlalchemy.sql import func
from rideshare.app.db.session import Base


class AuditLog(Base):
    """
    Audit log model.
    
    Events logged:
    - RIDE_CREATED / RIDE_CANCELLED / RIDE_DELETED / RIDE_FINISHED / RIDE_COMPLETED
    - BOOKING_CREATED / BOOKING_ACCEPTED / BOOKING_REJECTED / BOOKING_CANCELLED
    """
    __tablename__ = "audit_logs"
    
    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    
    # Who performed the action (None for system actions)
    actor_id = Column(Integer, index=True, nullable=True)
    actor_username = Column(String(100), nullable=True)
    
    # What action was performed
    action = Column(String(100), nullable=False, index=True)
    
    # What it was performed on
    ride_id = Column(Integer, index=True, nullable=True)
    booking_id = Column(Integer, index=True, nullable=True)
    
    # Additional context (JSON for flexibility)
    meta_data = Column(JSON, nullable=True)
    
    # Timestamp
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)
    
    def __repr__(self):
        return f"<AuditLog(id={self.id}, action='{self.action}', actor={self.actor_username}, ride={self.ride_id})>"
