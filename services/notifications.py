"""
In-app notifications (intel_notifications table).

Used by the queue processor, the rules engine and the action executor.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from sqlalchemy import select, delete, func
from sqlalchemy.ext.asyncio import AsyncSession
from core.exceptions import ResourceNotFoundError
from models.base import NotificationType, NotificationPriority
from models.intel_notification import IntelNotification
import logging

logger = logging.getLogger(__name__)

RETENTION_DAYS = 30


class NotificationService:
    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def create(
        self,
        user_id: int,
        type: NotificationType,
        title: str,
        message: str,
        priority: NotificationPriority = NotificationPriority.MEDIUM,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        action_id: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        action_buttons: Optional[List[Dict[str, str]]] = None,
        expires_at: Optional[datetime] = None,
        commit: bool = True,
    ) -> IntelNotification:
        notification = IntelNotification(
            user_id=user_id,
            type=type,
            priority=priority,
            title=title,
            message=message,
            entity_type=entity_type,
            entity_id=entity_id,
            action_id=action_id,
            notification_metadata=metadata,
            action_buttons=action_buttons,
            expires_at=expires_at,
        )
        self.db.add(notification)
        if commit:
            await self.db.commit()
        else:
            await self.db.flush()
        logger.info(f"Notification for user {user_id}: {title}")
        return notification

    async def list_for_user(self, user_id: int, unread_only: bool = False, limit: int = 50) -> Dict[str, Any]:
        query = select(IntelNotification).where(
            IntelNotification.user_id == user_id,
            IntelNotification.is_dismissed.is_(False),
        )
        if unread_only:
            query = query.where(IntelNotification.is_read.is_(False))

        result = await self.db.execute(query.order_by(IntelNotification.created_at.desc()).limit(limit))
        unread = await self.db.execute(
            select(func.count()).select_from(IntelNotification).where(
                IntelNotification.user_id == user_id,
                IntelNotification.is_read.is_(False),
                IntelNotification.is_dismissed.is_(False),
            )
        )
        return {"notifications": list(result.scalars().all()), "unread_count": unread.scalar() or 0}

    async def mark_read(self, user_id: int, notification_id: int) -> IntelNotification:
        notification = await self.db.get(IntelNotification, notification_id)
        if notification is None or notification.user_id != user_id:
            raise ResourceNotFoundError(
                f"Notification {notification_id} not found",
                context={"notification_id": notification_id}
            )
        notification.mark_as_read()
        await self.db.commit()
        return notification

    async def cleanup_old(self, days: int = RETENTION_DAYS) -> int:
        """Delete notifications older than ``days``. Returns rows removed."""
        cutoff = datetime.utcnow() - timedelta(days=days)
        result = await self.db.execute(delete(IntelNotification).where(IntelNotification.created_at < cutoff))
        await self.db.commit()
        removed = result.rowcount or 0
        if removed:
            logger.info(f"Removed {removed} notifications older than {days} days")
        return removed


def serialize_notification(notification: IntelNotification) -> Dict[str, Any]:
    return {
        "id": notification.id,
        "type": notification.type.value,
        "priority": notification.priority.value,
        "title": notification.title,
        "message": notification.message,
        "entity_type": notification.entity_type,
        "entity_id": notification.entity_id,
        "action_id": notification.action_id,
        "is_read": notification.is_read,
        "metadata": notification.notification_metadata,
        "created_at": notification.created_at.isoformat() if notification.created_at else None,
    }


def list_serialized(notifications: List[IntelNotification]) -> List[Dict[str, Any]]:
    return [serialize_notification(n) for n in notifications]
