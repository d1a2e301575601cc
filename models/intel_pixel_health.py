from sqlalchemy import Column, Integer, String, DateTime, Date, Float, Boolean, Index
from datetime import datetime
from typing import Dict
from models.base import Base, JSONType

EVENT_COLUMNS = {
    "page_view": "page_view_count",
    "view_content": "view_content_count",
    "add_to_cart": "add_to_cart_count",
    "initiate_checkout": "initiate_checkout_count",
    "purchase": "purchase_count",
    "lead": "lead_count",
    "complete_registration": "complete_registration_count",
}


def _rate(numerator: int, denominator: int, digits: int = 2) -> float:
    if not denominator:
        return 0.0
    return round(numerator / denominator * 100, digits)


class IntelPixelHealth(Base):
    """
    Daily health snapshot of a Meta pixel.

    Event counts cover the day of ``snapshot_date``. Rows written by the
    daily collection also carry event match quality (0-10), server event
    share and domain verification; backfilled rows only carry counts.
    """
    __tablename__ = "intel_pixel_health"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False)
    ad_account_id = Column(String(64), nullable=False)
    pixel_id = Column(String(64), nullable=False)
    pixel_name = Column(String(255), nullable=True)
    snapshot_date = Column(Date, nullable=False)

    event_match_quality = Column(Float, nullable=True)
    last_fired_time = Column(DateTime, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    page_view_count = Column(Integer, default=0, nullable=False)
    view_content_count = Column(Integer, default=0, nullable=False)
    add_to_cart_count = Column(Integer, default=0, nullable=False)
    initiate_checkout_count = Column(Integer, default=0, nullable=False)
    purchase_count = Column(Integer, default=0, nullable=False)
    lead_count = Column(Integer, default=0, nullable=False)
    complete_registration_count = Column(Integer, default=0, nullable=False)

    has_server_events = Column(Boolean, default=False, nullable=False)
    server_event_percentage = Column(Float, default=0.0, nullable=False)
    domain_verified = Column(Boolean, default=False, nullable=False)
    domain_name = Column(String(255), nullable=True)

    raw_pixel_data = Column(JSONType, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_pixel_health_day", "pixel_id", "snapshot_date", unique=True),
        Index("idx_pixel_health_owner", "user_id", "ad_account_id"),
    )

    def event_counts(self) -> Dict[str, int]:
        return {event: getattr(self, column) or 0 for event, column in EVENT_COLUMNS.items()}

    def health_score(self) -> int:
        """
        0-100: EMQ up to 40, active 20, server events up to 20,
        verified domain 10, event diversity up to 10.
        """
        score = 0.0
        if self.event_match_quality:
            score += self.event_match_quality / 10 * 40
        if self.is_active:
            score += 20
        if self.has_server_events:
            score += min(20.0, (self.server_event_percentage or 0) / 100 * 20)
        if self.domain_verified:
            score += 10

        active_events = sum(1 for count in self.event_counts().values() if count > 0)
        score += min(10.0, active_events * 1.5)
        return round(score)

    def funnel_rates(self) -> Dict[str, float]:
        counts = self.event_counts()
        return {
            "view_to_atc": _rate(counts["add_to_cart"], counts["view_content"]),
            "atc_to_checkout": _rate(counts["initiate_checkout"], counts["add_to_cart"]),
            "checkout_to_purchase": _rate(counts["purchase"], counts["initiate_checkout"]),
            "overall_conversion": _rate(counts["purchase"], counts["page_view"] or 1, digits=4),
        }
