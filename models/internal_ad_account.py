from sqlalchemy import Column, Integer, String, DateTime, Boolean
from datetime import datetime
from models.base import Base


class InternalAdAccount(Base):
    """Ad accounts owned by our own Business Managers (eligible for system users)"""
    __tablename__ = "internal_ad_accounts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ad_account_id = Column(String(64), nullable=False, unique=True)
    business_manager_id = Column(String(64), nullable=False)
    business_manager_name = Column(String(255), nullable=True)
    use_system_users = Column(Boolean, default=True, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
