from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text, Index
from datetime import datetime
from typing import Optional
from models.base import Base
from core.security import encrypt_token, decrypt_token


class FacebookAuth(Base):
    """
    A user's connected Facebook login.

    Purpose:
    - Source of the user access token for Graph API calls
    - Selected ad account used when a request does not name one

    The token is stored encrypted; use ``access_token`` to read or write it.
    """
    __tablename__ = "facebook_auth"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    facebook_user_id = Column(String(64), nullable=True)

    access_token_encrypted = Column(Text, nullable=False)
    token_expires_at = Column(DateTime, nullable=True)

    selected_ad_account_id = Column(String(64), nullable=True)
    selected_page_id = Column(String(64), nullable=True)
    selected_pixel_id = Column(String(64), nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_facebook_auth_user_active", "user_id", "is_active"),
    )

    @property
    def access_token(self) -> Optional[str]:
        if not self.access_token_encrypted:
            return None
        return decrypt_token(self.access_token_encrypted)

    @access_token.setter
    def access_token(self, value: str):
        self.access_token_encrypted = encrypt_token(value)
