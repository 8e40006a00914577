"""
Notification API Endpoints.
"""

from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, desc
from typing import List

from rideshare.app.db.session import get_db
from rideshare.app.models.notification import Notification
from rideshare.app.core.dependencies import get_current_user
from rideshare.app.core.exceptions import ResourceNotFoundError
from rideshare.app.services.notification_service import NotificationService
from rideshare.app.schemas.common import ApiResponse
from rideshare.app.schemas.notification import NotificationResponse

router = APIRouter(prefix="/notifications", tags=["Notifications"])


@router.get("", response_model=ApiResponse[List[NotificationResponse]])
async def list_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """List current user's notifications."""
    query = select(Notification).where(Notification.user_id == current_user["user_id"])

    if unread_only:
        query = query.where(Notification.is_read == False)

    query = query.order_by(desc(Notification.created_at), desc(Notification.id)).limit(limit)

    result = await db.execute(query)
    return ApiResponse(data=[NotificationResponse.model_validate(n) for n in result.scalars().all()])


@router.patch("/read-all", response_model=ApiResponse[dict])
async def mark_all_notifications_read(
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Mark all notifications as read."""
    count = await NotificationService.mark_all_read(db, current_user["user_id"])
    await db.commit()
    return ApiResponse(data={"count": count})


@router.patch("/{notification_id}/read", response_model=ApiResponse[None])
async def mark_notification_read(
    notification_id: int = Path(...),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Mark a specific notification as read."""
    success = await NotificationService.mark_read(db, notification_id, current_user["user_id"])
    if not success:
        raise ResourceNotFoundError("Notification", notification_id)

    await db.commit()
    return ApiResponse(message="Notification marked as read")
