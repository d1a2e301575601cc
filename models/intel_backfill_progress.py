from sqlalchemy import Column, Integer, String, Enum, DateTime, Date, Text, Index
from datetime import datetime
from models.base import Base, BackfillStatus, BackfillType, JSONType


class IntelBackfillProgress(Base):
    """
    Day-by-day progress of a historical data backfill.

    One row per (user, ad account). ``current_date`` is the last day
    fetched; ``days_completed`` / ``total_days`` drives the percentage shown
    to the user.
    """
    __tablename__ = "intel_backfill_progress"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False)
    ad_account_id = Column(String(64), nullable=False)

    backfill_type = Column(Enum(BackfillType), default=BackfillType.ALL, nullable=False)
    status = Column(Enum(BackfillStatus), default=BackfillStatus.PENDING, nullable=False, index=True)

    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)
    current_date = Column("current_day", Date, nullable=True)
    total_days = Column(Integer, default=90, nullable=False)
    days_completed = Column(Integer, default=0, nullable=False)

    # Statistics
    campaigns_fetched = Column(Integer, default=0, nullable=False)
    adsets_fetched = Column(Integer, default=0, nullable=False)
    ads_fetched = Column(Integer, default=0, nullable=False)
    snapshots_created = Column(Integer, default=0, nullable=False)

    # Error tracking
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, default=0, nullable=False)

    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    last_fetch_at = Column(DateTime, nullable=True)
    estimated_remaining_seconds = Column(Integer, nullable=True)
    pixel_summary = Column(JSONType, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_backfill_user_account", "user_id", "ad_account_id", unique=True),
    )

    def completion_percentage(self) -> int:
        if not self.total_days:
            return 100
        return min(100, round(self.days_completed / self.total_days * 100))
