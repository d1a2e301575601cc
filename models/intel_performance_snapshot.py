from sqlalchemy import Column, Integer, String, Enum, DateTime, Date, Float, Boolean, Index
from datetime import datetime
from models.base import Base, EntityType, JSONType


class IntelPerformanceSnapshot(Base):
    """
    Point-in-time performance of a campaign, ad set or ad.

    Written hourly by the insights collector and once per day (hour 23)
    by backfills. Derived metrics (cpm, ctr, ...) are stored as computed by
    ``intelligence.metrics`` so the rules engine and pattern learning read
    them directly.
    """
    __tablename__ = "intel_performance_snapshots"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False)
    ad_account_id = Column(String(64), nullable=False)

    entity_type = Column(Enum(EntityType), nullable=False)
    entity_id = Column(String(64), nullable=False)
    entity_name = Column(String(512), nullable=True)

    snapshot_date = Column(Date, nullable=False)
    snapshot_hour = Column(Integer, nullable=True)

    # Raw metrics
    spend = Column(Float, default=0.0, nullable=False)
    impressions = Column(Integer, default=0, nullable=False)
    clicks = Column(Integer, default=0, nullable=False)
    reach = Column(Integer, default=0, nullable=False)
    conversions = Column(Integer, default=0, nullable=False)
    revenue = Column(Float, default=0.0, nullable=False)

    # Derived metrics
    cpm = Column(Float, default=0.0, nullable=False)
    ctr = Column(Float, default=0.0, nullable=False)
    cpc = Column(Float, default=0.0, nullable=False)
    cpa = Column(Float, default=0.0, nullable=False)
    roas = Column(Float, default=0.0, nullable=False)
    frequency = Column(Float, default=0.0, nullable=False)

    # Delivery state
    effective_status = Column(String(64), nullable=True)
    learning_phase = Column(String(64), nullable=True)
    is_backfill = Column(Boolean, default=False, nullable=False)

    # Time features used by pattern learning
    hour_of_day = Column(Integer, nullable=True)
    day_of_week = Column(Integer, nullable=True)
    days_since_creation = Column(Integer, nullable=True)

    raw_insights = Column(JSONType, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)

    __table_args__ = (
        Index("idx_snapshot_entity_date", "entity_type", "entity_id", "snapshot_date"),
        Index("idx_snapshot_account_date", "ad_account_id", "snapshot_date"),
        Index("idx_snapshot_user_date", "user_id", "snapshot_date"),
    )

    def metrics(self) -> dict:
        """Metric values keyed by the names automation rule conditions use."""
        return {
            "spend": self.spend,
            "impressions": self.impressions,
            "clicks": self.clicks,
            "reach": self.reach,
            "conversions": self.conversions,
            "revenue": self.revenue,
            "cpm": self.cpm,
            "ctr": self.ctr,
            "cpc": self.cpc,
            "cpa": self.cpa,
            "roas": self.roas,
            "frequency": self.frequency,
            "learning_phase": self.learning_phase,
            "effective_status": self.effective_status,
            "days_since_creation": self.days_since_creation,
        }
