from sqlalchemy import Column, Integer, String, Enum, DateTime, Boolean, Text, Index
from datetime import datetime
from models.base import Base, NotificationType, NotificationPriority, JSONType


class IntelNotification(Base):
    """In-app notifications (pending approvals, rule triggers, queue results)"""
    __tablename__ = "intel_notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False)

    type = Column(Enum(NotificationType), nullable=False)
    priority = Column(Enum(NotificationPriority), default=NotificationPriority.MEDIUM, nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)

    entity_type = Column(String(32), nullable=True)
    entity_id = Column(String(64), nullable=True)
    action_id = Column(Integer, nullable=True)

    is_read = Column(Boolean, default=False, nullable=False)
    read_at = Column(DateTime, nullable=True)
    is_dismissed = Column(Boolean, default=False, nullable=False)

    action_buttons = Column(JSONType, nullable=True)
    notification_metadata = Column("metadata", JSONType, nullable=True)
    expires_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_notification_user_read", "user_id", "is_read", "created_at"),
    )

    def mark_as_read(self):
        self.is_read = True
        self.read_at = datetime.utcnow()
