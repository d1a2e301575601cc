from sqlalchemy import Column, Integer, String, Enum, DateTime, Float, Boolean, Text, Index
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
import math
from models.base import Base, PatternType, JSONType


class IntelLearnedPattern(Base):
    """
    A statistical pattern learned from performance snapshots.

    ``pattern_data`` layout depends on ``pattern_type``:
        time_performance: {hourlyPerformance: {hour: high|average|low}, ...}
        audience_fatigue: {fatigueThreshold, frequencyDecay, ...}
        winner_profile / loser_profile: {profile: {metric: {min, max}}}
        cluster: {centroids, feature_names, ...}
    """
    __tablename__ = "intel_learned_patterns"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=True)  # null = global pattern
    ad_account_id = Column(String(64), nullable=True)

    pattern_type = Column(Enum(PatternType), nullable=False)
    pattern_name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    pattern_data = Column(JSONType, nullable=False)

    confidence_score = Column(Float, default=0.0, nullable=False)
    sample_size = Column(Integer, default=0, nullable=False)

    is_active = Column(Boolean, default=True, nullable=False)
    valid_from = Column(DateTime, nullable=True)
    valid_until = Column(DateTime, nullable=True)
    last_validated = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_pattern_owner_type", "user_id", "ad_account_id", "pattern_type"),
    )

    def is_still_valid(self, now: Optional[datetime] = None) -> bool:
        if not self.is_active:
            return False
        now = now or datetime.utcnow()
        return not (self.valid_until and now > self.valid_until)

    def needs_revalidation(self, max_age_days: int = 7, now: Optional[datetime] = None) -> bool:
        if not self.last_validated:
            return True
        now = now or datetime.utcnow()
        return now - self.last_validated > timedelta(days=max_age_days)

    # ------------------------------------------------------------------
    # Prediction
    # ------------------------------------------------------------------

    def predict(self, input_data: Dict[str, Any]) -> Dict[str, Any]:
        handlers = {
            PatternType.TIME_PERFORMANCE: self._predict_time_performance,
            PatternType.BUDGET_CORRELATION: self._predict_budget_impact,
            PatternType.AUDIENCE_FATIGUE: self._predict_fatigue,
            PatternType.WINNER_PROFILE: self._match_profile,
            PatternType.LOSER_PROFILE: self._match_profile,
            PatternType.CLUSTER: self._assign_cluster,
        }
        handler = handlers.get(self.pattern_type)
        if handler is None:
            return {"applicable": False, "reason": "Unknown pattern type"}
        return handler(input_data)

    def _predict_time_performance(self, input_data):
        hourly = (self.pattern_data or {}).get("hourlyPerformance")
        if not hourly:
            return {"applicable": False}

        hour = input_data.get("hour")
        if hour is None:
            hour = datetime.utcnow().hour

        return {
            "applicable": True,
            "prediction": hourly.get(str(hour), "average"),
            "best_hours": sorted(int(h) for h, perf in hourly.items() if perf == "high"),
            "confidence": self.confidence_score,
        }

    def _predict_budget_impact(self, input_data):
        ranges = (self.pattern_data or {}).get("budgetRanges")
        budget = input_data.get("budget")
        if not ranges or not budget:
            return {"applicable": False}

        outcome = "average"
        for budget_range in ranges:
            if budget_range["min"] <= budget <= budget_range["max"]:
                outcome = budget_range["performance"]
                break

        return {
            "applicable": True,
            "current_budget": budget,
            "expected_outcome": outcome,
            "optimal_range": self.pattern_data.get("optimalRange"),
            "confidence": self.confidence_score,
        }

    def _predict_fatigue(self, input_data):
        data = self.pattern_data or {}
        threshold = data.get("fatigueThreshold") or 0
        decay = data.get("frequencyDecay") or 0
        frequency = input_data.get("frequency") or 1

        if frequency > threshold:
            level = "high"
        elif frequency > threshold * 0.7:
            level = "medium"
        else:
            level = "low"

        days_until = 0
        if level == "low" and decay > 0:
            days_until = math.ceil((threshold - frequency) / decay)

        return {
            "applicable": True,
            "frequency": frequency,
            "fatigue_level": level,
            "threshold": threshold,
            "days_until_fatigue": days_until,
            "confidence": self.confidence_score,
        }

    def _match_profile(self, input_data):
        profile = (self.pattern_data or {}).get("profile")
        if not profile:
            return {"applicable": False}

        matched = []
        for attr, expected in profile.items():
            actual = input_data.get(attr)
            if actual is None:
                continue
            if isinstance(expected, dict) and "min" in expected:
                if expected["min"] <= actual <= expected["max"]:
                    matched.append(attr)
            elif actual == expected:
                matched.append(attr)

        match_percentage = len(matched) / len(profile) * 100

        return {
            "applicable": True,
            "pattern_type": self.pattern_type.value,
            "match_percentage": match_percentage,
            "matched_attributes": matched,
            "is_match": match_percentage >= 70,
            "confidence": self.confidence_score * (match_percentage / 100),
        }

    def _assign_cluster(self, input_data):
        data = self.pattern_data or {}
        centroids = data.get("centroids")
        feature_names = data.get("feature_names")
        if not centroids or not feature_names:
            return {"applicable": False}

        distances = []
        for idx, centroid in enumerate(centroids):
            total = sum(
                ((input_data.get(name) or 0) - (centroid[i] if i < len(centroid) else 0)) ** 2
                for i, name in enumerate(feature_names)
            )
            distances.append({"cluster": idx, "distance": math.sqrt(total)})

        distances.sort(key=lambda d: d["distance"])

        return {
            "applicable": True,
            "assigned_cluster": distances[0]["cluster"],
            "distance_to_centroid": distances[0]["distance"],
            "cluster_distances": distances,
            "confidence": self.confidence_score,
        }
