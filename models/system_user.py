from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text
from datetime import datetime
from typing import Optional
from models.base import Base
from core.security import encrypt_token, decrypt_token


class SystemUser(Base):
    """
    Business Manager system user with a long-lived token.

    Used in place of a user's OAuth token for internal ad accounts.
    ``rate_limit_used`` counts calls in the current hour;
    ``rate_limit_reset_at`` is set once the hourly limit is reached.
    """
    __tablename__ = "system_users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    system_user_id = Column(String(64), nullable=False, unique=True)
    access_token_encrypted = Column(Text, nullable=False)
    business_manager_id = Column(String(64), nullable=False, index=True)

    rate_limit_used = Column(Integer, default=0, nullable=False)
    rate_limit_reset_at = Column(DateTime, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def access_token(self) -> Optional[str]:
        if not self.access_token_encrypted:
            return None
        return decrypt_token(self.access_token_encrypted)

    @access_token.setter
    def access_token(self, value: str):
        self.access_token_encrypted = encrypt_token(value)
