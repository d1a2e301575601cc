from sqlalchemy import Column, Integer, String, DateTime, Float, Index
from datetime import datetime
from models.base import Base, JSONType


class RateLimitTracker(Base):
    """
    Per user / ad account call usage for the current hourly window.

    Updated from the ``x-business-use-case-usage`` / ``x-app-usage``
    response headers after every Graph API call.
    """
    __tablename__ = "rate_limit_trackers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False)
    ad_account_id = Column(String(64), nullable=False)

    calls_used = Column(Integer, default=0, nullable=False)
    calls_limit = Column(Integer, default=200, nullable=False)
    usage_percentage = Column(Float, default=0.0, nullable=False)
    window_reset_at = Column(DateTime, nullable=True)
    last_response_headers = Column(JSONType, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_rate_limit_user_account", "user_id", "ad_account_id", unique=True),
    )
