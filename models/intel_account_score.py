from sqlalchemy import Column, Integer, String, Enum, DateTime, Date, Float, Index
from datetime import datetime
from typing import Any, Dict
from models.base import Base, ScoreTrend, JSONType

COMPONENT_WEIGHTS = {
    "performance": 0.35,
    "efficiency": 0.25,
    "pixel_health": 0.15,
    "learning": 0.15,
    "consistency": 0.10,
}

IMPROVEMENT_PRIORITIES = {
    "performance": "Focus on improving ROAS and reducing CPA",
    "efficiency": "Reduce wasted spend and improve targeting",
    "pixel_health": "Improve pixel event tracking and EMQ",
    "learning": "Optimize ad sets for learning phase success",
    "consistency": "Maintain consistent performance over time",
}

GRADES = ((90, "A", "Excellent"), (80, "B", "Good"), (70, "C", "Fair"), (60, "D", "Needs Improvement"))


class IntelAccountScore(Base):
    """
    Daily 0-100 health score of an ad account.

    One row per (user, ad account, day). The overall score is the weighted
    sum of five component scores, see ``COMPONENT_WEIGHTS``.
    """
    __tablename__ = "intel_account_scores"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False)
    ad_account_id = Column(String(64), nullable=False)
    score_date = Column(Date, nullable=False)

    overall_score = Column(Integer, nullable=False)
    performance_score = Column(Integer, default=0, nullable=False)
    efficiency_score = Column(Integer, default=0, nullable=False)
    pixel_health_score = Column(Integer, default=0, nullable=False)
    learning_score = Column(Integer, default=0, nullable=False)
    consistency_score = Column(Integer, default=0, nullable=False)

    score_trend = Column(Enum(ScoreTrend), default=ScoreTrend.STABLE, nullable=False)
    trend_percentage = Column(Float, default=0.0, nullable=False)

    score_breakdown = Column(JSONType, nullable=True)
    recommendations = Column(JSONType, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_account_score_day", "user_id", "ad_account_id", "score_date", unique=True),
    )

    def components(self) -> Dict[str, int]:
        return {
            "performance": self.performance_score,
            "efficiency": self.efficiency_score,
            "pixel_health": self.pixel_health_score,
            "learning": self.learning_score,
            "consistency": self.consistency_score,
        }

    def grade(self) -> str:
        for floor, grade, _ in GRADES:
            if self.overall_score >= floor:
                return grade
        return "F"

    def status_label(self) -> str:
        for floor, _, label in GRADES:
            if self.overall_score >= floor:
                return label
        return "Critical"

    def weakest_component(self) -> Dict[str, Any]:
        # First one wins on ties
        name, score = min(self.components().items(), key=lambda item: item[1])
        return {"name": name, "score": score}

    def improvement_priority(self) -> Dict[str, Any]:
        weakest = self.weakest_component()
        return {
            "component": weakest["name"],
            "score": weakest["score"],
            "recommendation": IMPROVEMENT_PRIORITIES[weakest["name"]],
        }
