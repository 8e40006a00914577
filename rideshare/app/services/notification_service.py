"""
Notification Service.

The ride and booking services talk to a NotificationSink. Delivery is
fire-and-forget: a failed notification is logged and never reaches the
caller. InAppNotificationSink persists Notification rows; push delivery
lives outside this service.
"""

import enum
import logging
from datetime import datetime
from typing import Optional, Dict, Any

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import update

from rideshare.app.models.notification import Notification

logger = logging.getLogger(__name__)


class NotificationKind(str, enum.Enum):
    RIDE_FULL = "ride_full"
    RIDE_CANCELLED = "ride_cancelled"
    RIDE_FINISHED = "ride_finished"
    RIDE_COMPLETED = "ride_completed"
    BOOKING_REQUESTED = "booking_requested"
    BOOKING_ACCEPTED = "booking_accepted"
    BOOKING_REJECTED = "booking_rejected"
    BOOKING_CANCELLED = "booking_cancelled"


class NotificationSink:
    """Interface for out-of-band user notifications."""

    async def notify(
        self,
        user_id: int,
        kind: NotificationKind,
        title: str,
        body: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        raise NotImplementedError

    async def safe_notify(self, user_id: int, kind: NotificationKind, title: str, body: str, metadata=None) -> bool:
        """Deliver one notification, swallowing and logging any failure."""
        try:
            await self.notify(user_id, kind, title, body, metadata)
            return True
        except Exception:
            logger.exception("Failed to deliver %s notification to user %s", kind.value, user_id)
            return False


class NullNotificationSink(NotificationSink):

    async def notify(self, user_id, kind, title, body, metadata=None) -> None:
        logger.debug("Dropping %s notification for user %s", kind.value, user_id)


class InAppNotificationSink(NotificationSink):
    """
    Persists notifications as Notification rows.

    Rows are written through a short-lived session bound to the request
    session's engine; the request session is never touched. Called only
    after the business transaction commits.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def notify(self, user_id, kind, title, body, metadata=None) -> None:
        async with AsyncSession(bind=self.db.bind, expire_on_commit=False) as session:
            session.add(Notification(
                user_id=user_id,
                kind=kind.value,
                title=title,
                message=body,
                metadata_payload=metadata,
            ))
            await session.commit()


class NotificationService:

    @staticmethod
    async def mark_read(db: AsyncSession, notification_id: int, user_id: int) -> bool:
        """Mark a notification as read."""
        stmt = update(Notification).where(
            Notification.id == notification_id,
            Notification.user_id == user_id
        ).values(
            is_read=True,
            read_at=datetime.utcnow()
        )
        result = await db.execute(stmt)
        return result.rowcount > 0

    @staticmethod
    async def mark_all_read(db: AsyncSession, user_id: int) -> int:
        """Mark all notifications for user as read."""
        stmt = update(Notification).where(
            Notification.user_id == user_id,
            Notification.is_read == False
        ).values(
            is_read=True,
            read_at=datetime.utcnow()
        )
        result = await db.execute(stmt)
        return result.rowcount
