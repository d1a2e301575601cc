from sqlalchemy import Column, Integer, String, Enum, DateTime, Text, Index
from datetime import datetime
from typing import Optional
from models.base import Base, JSONType, QueueStatus, ActionType
from core.security import encrypt_token, decrypt_token


class QueuedRequest(Base):
    """
    A campaign operation deferred because the user was rate limited.

    Lifecycle:
        queued -> processing -> completed
                             -> queued (retry with backoff)
                             -> failed (attempts exhausted)
        queued -> cancelled
    """
    __tablename__ = "request_queue"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    ad_account_id = Column(String(64), nullable=False)

    action_type = Column(Enum(ActionType), nullable=False)
    request_data = Column(JSONType, nullable=False)  # method, path, body, params
    access_token_encrypted = Column(Text, nullable=True)

    priority = Column(Integer, default=5, nullable=False)  # lower runs first
    status = Column(Enum(QueueStatus), default=QueueStatus.QUEUED, nullable=False)
    process_after = Column(DateTime, nullable=False, default=datetime.utcnow)

    attempts = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=3, nullable=False)

    result = Column(JSONType, nullable=True)
    error = Column(Text, nullable=True)
    processed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_request_queue_ready", "status", "process_after", "priority"),
    )

    @property
    def access_token(self) -> Optional[str]:
        if not self.access_token_encrypted:
            return None
        return decrypt_token(self.access_token_encrypted)

    @access_token.setter
    def access_token(self, value: Optional[str]):
        self.access_token_encrypted = encrypt_token(value) if value else None
