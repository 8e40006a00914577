"""
Audit logging service for ride and booking lifecycle events.

Events are written after the business transaction has committed.
"""

from typing import Optional, Dict, Any
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, desc
from rideshare.app.models.audit_log import AuditLog


# Audit event constants
class AuditAction:
    """Standardized audit action constants."""
    RIDE_CREATED = "RIDE_CREATED"
    RIDE_CANCELLED = "RIDE_CANCELLED"
    RIDE_DELETED = "RIDE_DELETED"
    RIDE_FINISHED = "RIDE_FINISHED"
    RIDE_DRIVER_CONFIRMED = "RIDE_DRIVER_CONFIRMED"

    BOOKING_CREATED = "BOOKING_CREATED"
    BOOKING_ACCEPTED = "BOOKING_ACCEPTED"
    BOOKING_REJECTED = "BOOKING_REJECTED"
    BOOKING_CANCELLED = "BOOKING_CANCELLED"
    BOOKING_SEATS_CANCELLED = "BOOKING_SEATS_CANCELLED"
    BOOKING_COMPLETED = "BOOKING_COMPLETED"
    BOOKING_NO_SHOW = "BOOKING_NO_SHOW"
    BOOKING_PASSENGER_CONFIRMED = "BOOKING_PASSENGER_CONFIRMED"


async def log_event(
    db: AsyncSession,
    action: str,
    actor_id: Optional[int] = None,
    actor_username: Optional[str] = None,
    ride_id: Optional[int] = None,
    booking_id: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None
) -> AuditLog:
    """
    Log a ride or booking event to the audit log.

    Args:
        db: Database session
        action: Action being performed (use AuditAction constants)
        actor_id: ID of user performing the action
        actor_username: Username of actor
        ride_id: Ride the action touched
        booking_id: Booking the action touched (if applicable)
        metadata: Additional context as JSON

    Returns:
        Created AuditLog instance
    """
    audit_log = AuditLog(
        actor_id=actor_id,
        actor_username=actor_username,
        action=action,
        ride_id=ride_id,
        booking_id=booking_id,
        meta_data=metadata
    )

    db.add(audit_log)
    await db.commit()
    await db.refresh(audit_log)

    return audit_log


async def get_ride_audit_trail(
    db: AsyncSession,
    ride_id: int,
    action: Optional[str] = None,
    limit: int = 100
) -> list[AuditLog]:
    """Audit entries for one ride, most recent first."""
    query = select(AuditLog).where(AuditLog.ride_id == ride_id).order_by(desc(AuditLog.timestamp), desc(AuditLog.id))

    if action:
        query = query.where(AuditLog.action == action)

    query = query.limit(limit)

    result = await db.execute(query)
    return result.scalars().all()
