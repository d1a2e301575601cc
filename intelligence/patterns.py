"""
Pattern learning over stored performance snapshots.

Lightweight statistics, not a trained model:
- time patterns: hours whose average ROAS is well above / below the mean
- winner / loser profiles: interquartile ranges of winning and losing ad sets
- clusters: k-means (k=4) over min-max normalised cost and return metrics
- fatigue: frequency at which CTR starts to decline

Patterns are stored per (user, ad account) in ``intel_learned_patterns`` and
stay valid for 7 days.
"""

import logging
import numpy as np
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple
from sqlalchemy import select, func, cast, Date
from sqlalchemy.ext.asyncio import AsyncSession
from models.base import EntityType, PatternType
from models.intel_automation_rule import IntelAutomationRule
from models.intel_learned_pattern import IntelLearnedPattern
from models.intel_performance_snapshot import IntelPerformanceSnapshot

logger = logging.getLogger(__name__)

CLUSTER_FEATURES = ["cpm", "ctr", "cpc", "cpa", "roas", "frequency"]
PROFILE_METRICS = ["cpm", "ctr", "frequency", "days_since_creation"]
PATTERN_VALID_DAYS = 7

MIN_TIME_SAMPLES = 100
MIN_PROFILE_SAMPLES = 50
MIN_PROFILE_ENTITIES = 10
MIN_CLUSTER_SAMPLES = 50
MIN_FATIGUE_SAMPLES = 100
MIN_FATIGUE_POINTS = 20

WINNER_ROAS = 150
LOSER_ROAS = 50
PROFILE_MIN_SPEND = 50

MIN_DATA_POINTS = 100
MIN_PATTERNS = 3


# ----------------------------------------------------------------------
# Pure helpers
# ----------------------------------------------------------------------

def classify_hours(avg_roas_by_hour: Dict[int, float]) -> Tuple[Dict[int, str], float]:
    """Label each hour high (> 1.2x mean), low (< 0.8x mean) or average."""
    if not avg_roas_by_hour:
        return {}, 0.0
    overall = sum(avg_roas_by_hour.values()) / len(avg_roas_by_hour)
    labels = {}
    for hour, value in avg_roas_by_hour.items():
        if value > overall * 1.2:
            labels[hour] = "high"
        elif value < overall * 0.8:
            labels[hour] = "low"
        else:
            labels[hour] = "average"
    return labels, overall


def calculate_profile(entities: List[Dict[str, Any]], attributes: Sequence[str] = PROFILE_METRICS) -> Dict[str, Dict[str, float]]:
    """25th to 75th percentile range of each attribute."""
    profile = {}
    for attr in attributes:
        values = sorted(e[attr] for e in entities if e.get(attr) is not None)
        if values:
            profile[attr] = {
                "min": values[int(len(values) * 0.25)],
                "max": values[int(len(values) * 0.75)],
            }
    return profile


def normalize(vectors: List[List[float]]) -> List[List[float]]:
    """Min-max scale every feature to 0..1 (constant features become 0)."""
    if not vectors:
        return []
    matrix = np.asarray(vectors, dtype=float)
    mins = matrix.min(axis=0)
    spans = matrix.max(axis=0) - mins
    scaled = np.divide(matrix - mins, spans, out=np.zeros_like(matrix), where=spans > 0)
    return scaled.tolist()


def kmeans(
    data: List[List[float]],
    k: int,
    max_iterations: int = 100,
    rng: Optional[np.random.Generator] = None,
) -> Tuple[List[List[float]], List[int]]:
    """
    Lloyd's k-means with random initial centroids.

    Returns:
        (centroids, assignments)
    """
    if rng is None:
        rng = np.random.default_rng()
    points = np.asarray(data, dtype=float)
    k = min(k, len(points))
    centroids = points[rng.choice(len(points), size=k, replace=False)].copy()
    assignments = np.full(len(points), -1)

    for _ in range(max_iterations):
        distances = np.linalg.norm(points[:, np.newaxis, :] - centroids[np.newaxis, :, :], axis=2)
        nearest = distances.argmin(axis=1)
        if np.array_equal(nearest, assignments):
            break
        assignments = nearest

        for cluster in range(k):
            members = points[assignments == cluster]
            # empty clusters keep their previous centroid
            if len(members):
                centroids[cluster] = members.mean(axis=0)

    return centroids.tolist(), assignments.tolist()


def describe_clusters(centroids: List[List[float]]) -> List[str]:
    descriptions = []
    for idx, centroid in enumerate(centroids):
        avg = sum(centroid) / len(centroid) if centroid else 0
        if avg > 0.7:
            label = "High performers"
        elif avg > 0.5:
            label = "Above average"
        elif avg > 0.3:
            label = "Below average"
        else:
            label = "Low performers"
        descriptions.append(f"Cluster {idx + 1}: {label}")
    return descriptions


def find_fatigue_points(snapshots: List[IntelPerformanceSnapshot]) -> List[Dict[str, float]]:
    """
    CTR drops between consecutive snapshots of the same entity while
    frequency is above 2. Expects snapshots ordered by entity, then date.
    """
    points = []
    prev_entity, prev_ctr = None, None
    for snapshot in snapshots:
        if snapshot.entity_id == prev_entity and prev_ctr is not None:
            change = snapshot.ctr - prev_ctr
            if change < 0 and snapshot.frequency > 2:
                points.append({"frequency": snapshot.frequency, "ctr_decline": abs(change)})
        prev_entity, prev_ctr = snapshot.entity_id, snapshot.ctr
    return points


def training_readiness(data_points: int, patterns: int, active_rules: int) -> Dict[str, Any]:
    data = min(100.0, data_points / MIN_DATA_POINTS * 100)
    pattern = min(100.0, patterns / MIN_PATTERNS * 100)
    rules = 100.0 if active_rules > 0 else 0.0
    overall = data * 0.4 + pattern * 0.3 + rules * 0.3

    if overall >= 80:
        status = "ready"
    elif overall >= 50:
        status = "learning"
    else:
        status = "collecting"

    return {
        "readiness": {
            "data": round(data),
            "patterns": round(pattern),
            "rules": round(rules),
            "overall": round(overall),
        },
        "status": status,
    }


# ----------------------------------------------------------------------
# Service
# ----------------------------------------------------------------------

class PatternLearningService:
    """
    Learns and serves patterns for each (user, ad account).

    ``learning_in_progress`` is shared by every instance in the process so
    the scheduler and manual triggers never overlap.
    """

    learning_in_progress = False
    last_learning_run: Optional[datetime] = None

    def __init__(self, db_session: AsyncSession, rng: Optional[np.random.Generator] = None):
        self.db = db_session
        self.rng = rng if rng is not None else np.random.default_rng()

    async def _snapshots(
        self,
        user_id: int,
        ad_account_id: str,
        days: int,
        min_spend: Optional[float] = None,
        min_frequency: Optional[float] = None,
        order_by_entity: bool = False,
    ) -> List[IntelPerformanceSnapshot]:
        since = datetime.utcnow().date() - timedelta(days=days)
        query = select(IntelPerformanceSnapshot).where(
            IntelPerformanceSnapshot.user_id == user_id,
            IntelPerformanceSnapshot.ad_account_id == ad_account_id,
            IntelPerformanceSnapshot.entity_type == EntityType.ADSET,
            IntelPerformanceSnapshot.snapshot_date >= since,
        )
        if min_spend is not None:
            query = query.where(IntelPerformanceSnapshot.spend > min_spend)
        if min_frequency is not None:
            query = query.where(IntelPerformanceSnapshot.frequency > min_frequency)
        if order_by_entity:
            query = query.order_by(
                IntelPerformanceSnapshot.entity_id.asc(),
                IntelPerformanceSnapshot.snapshot_date.asc(),
                IntelPerformanceSnapshot.snapshot_hour.asc(),
            )
        result = await self.db.execute(query)
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Learning
    # ------------------------------------------------------------------

    async def learn_all_patterns(self) -> Optional[Dict[str, Any]]:
        """Learn patterns for every (user, ad account) with snapshots."""
        cls = type(self)
        if cls.learning_in_progress:
            logger.info("Pattern learning already in progress, skipping")
            return None

        cls.learning_in_progress = True
        try:
            result = await self.db.execute(
                select(IntelPerformanceSnapshot.user_id, IntelPerformanceSnapshot.ad_account_id).distinct()
            )
            owners = list(result.all())

            totals: Dict[str, Any] = {"accounts": len(owners)}
            for user_id, ad_account_id in owners:
                counts = await self._learn(user_id, ad_account_id)
                for key, value in counts.items():
                    totals[key] = totals.get(key, 0) + value

            cls.last_learning_run = datetime.utcnow()
            logger.info(f"Pattern learning complete: {totals}")
            return totals
        finally:
            cls.learning_in_progress = False

    async def learn_for_account(self, user_id: int, ad_account_id: str) -> Optional[Dict[str, int]]:
        cls = type(self)
        if cls.learning_in_progress:
            logger.info("Pattern learning already in progress, skipping")
            return None

        cls.learning_in_progress = True
        try:
            counts = await self._learn(user_id, ad_account_id)
            cls.last_learning_run = datetime.utcnow()
            return counts
        finally:
            cls.learning_in_progress = False

    async def _learn(self, user_id: int, ad_account_id: str) -> Dict[str, int]:
        profiles = await self.learn_performance_profiles(user_id, ad_account_id)
        counts = {
            "time_patterns": await self.learn_time_patterns(user_id, ad_account_id),
            "winner_profiles": profiles["winners"],
            "loser_profiles": profiles["losers"],
            "clusters": await self.run_clustering(user_id, ad_account_id),
            "fatigue_patterns": await self.learn_fatigue_patterns(user_id, ad_account_id),
        }
        await self.db.commit()
        logger.info(f"Patterns for user {user_id} / {ad_account_id}: {counts}")
        return counts

    async def learn_time_patterns(self, user_id: int, ad_account_id: str) -> int:
        snapshots = await self._snapshots(user_id, ad_account_id, days=30, min_spend=0)
        if len(snapshots) < MIN_TIME_SAMPLES:
            logger.debug(f"Insufficient data for time patterns ({len(snapshots)} snapshots)")
            return 0

        totals: Dict[int, List[float]] = defaultdict(list)
        for s in snapshots:
            if s.hour_of_day is not None and s.spend > 0:
                totals[s.hour_of_day].append(s.revenue / s.spend * 100 if s.revenue > 0 else 0.0)

        avg_by_hour = {hour: sum(values) / len(values) for hour, values in sorted(totals.items())}
        labels, overall = classify_hours(avg_by_hour)

        await self.store_pattern(
            user_id,
            ad_account_id,
            PatternType.TIME_PERFORMANCE,
            "Hourly Performance Pattern",
            "Best and worst performing hours based on ROAS",
            {
                "hourlyPerformance": {str(h): label for h, label in labels.items()},
                "avgRoasByHour": {str(h): v for h, v in avg_by_hour.items()},
                "overallAvg": overall,
                "bestHours": [h for h, label in labels.items() if label == "high"],
                "worstHours": [h for h, label in labels.items() if label == "low"],
            },
            confidence=min(0.9, len(snapshots) / 1000),
            sample_size=len(snapshots),
        )
        return 1

    async def learn_performance_profiles(self, user_id: int, ad_account_id: str) -> Dict[str, int]:
        snapshots = await self._snapshots(user_id, ad_account_id, days=7, min_spend=10)
        if len(snapshots) < MIN_PROFILE_SAMPLES:
            logger.debug(f"Insufficient data for profiles ({len(snapshots)} snapshots)")
            return {"winners": 0, "losers": 0}

        grouped: Dict[str, List[IntelPerformanceSnapshot]] = defaultdict(list)
        for s in snapshots:
            grouped[s.entity_id].append(s)

        entities = []
        for entity_id, rows in grouped.items():
            spend = sum(r.spend for r in rows)
            revenue = sum(r.revenue for r in rows)
            conversions = sum(r.conversions for r in rows)
            entities.append({
                "id": entity_id,
                "spend": spend,
                "roas": revenue / spend * 100 if spend > 0 else 0.0,
                "cpa": spend / conversions if conversions > 0 else None,
                "cpm": sum(r.cpm for r in rows) / len(rows),
                "ctr": sum(r.ctr for r in rows) / len(rows),
                "frequency": sum(r.frequency for r in rows) / len(rows),
                "days_since_creation": rows[0].days_since_creation,
            })

        winners = [e for e in entities if e["roas"] > WINNER_ROAS and e["spend"] >= PROFILE_MIN_SPEND]
        losers = [e for e in entities if e["roas"] < LOSER_ROAS and e["spend"] >= PROFILE_MIN_SPEND]
        created = {"winners": 0, "losers": 0}

        if len(winners) >= MIN_PROFILE_ENTITIES:
            await self.store_pattern(
                user_id,
                ad_account_id,
                PatternType.WINNER_PROFILE,
                "High ROAS Ad Set Profile",
                f"Common characteristics of ad sets with ROAS > {WINNER_ROAS}%",
                {"profile": calculate_profile(winners)},
                confidence=min(0.85, len(winners) / 100),
                sample_size=len(winners),
            )
            created["winners"] = 1

        if len(losers) >= MIN_PROFILE_ENTITIES:
            await self.store_pattern(
                user_id,
                ad_account_id,
                PatternType.LOSER_PROFILE,
                "Low ROAS Ad Set Profile",
                f"Common characteristics of ad sets with ROAS < {LOSER_ROAS}%",
                {"profile": calculate_profile(losers)},
                confidence=min(0.85, len(losers) / 100),
                sample_size=len(losers),
            )
            created["losers"] = 1

        return created

    async def run_clustering(self, user_id: int, ad_account_id: str, k: int = 4) -> int:
        snapshots = await self._snapshots(user_id, ad_account_id, days=7, min_spend=10)
        if len(snapshots) < MIN_CLUSTER_SAMPLES:
            logger.debug(f"Insufficient data for clustering ({len(snapshots)} snapshots)")
            return 0

        vectors = normalize([[getattr(s, f) or 0.0 for f in CLUSTER_FEATURES] for s in snapshots])
        centroids, assignments = kmeans(vectors, k, rng=self.rng)

        sizes = [0] * len(centroids)
        for cluster in assignments:
            sizes[cluster] += 1

        await self.store_pattern(
            user_id,
            ad_account_id,
            PatternType.CLUSTER,
            f"Performance Clusters (K={k})",
            "K-means clustering of ad sets by performance metrics",
            {
                "centroids": centroids,
                "feature_names": CLUSTER_FEATURES,
                "k": k,
                "cluster_sizes": sizes,
                "cluster_descriptions": describe_clusters(centroids),
            },
            confidence=0.75,
            sample_size=len(vectors),
        )
        return 1

    async def learn_fatigue_patterns(self, user_id: int, ad_account_id: str) -> int:
        snapshots = await self._snapshots(user_id, ad_account_id, days=30, min_frequency=1, order_by_entity=True)
        if len(snapshots) < MIN_FATIGUE_SAMPLES:
            logger.debug(f"Insufficient data for fatigue patterns ({len(snapshots)} snapshots)")
            return 0

        points = find_fatigue_points(snapshots)
        if len(points) < MIN_FATIGUE_POINTS:
            return 0

        await self.store_pattern(
            user_id,
            ad_account_id,
            PatternType.AUDIENCE_FATIGUE,
            "Audience Fatigue Pattern",
            "Frequency threshold at which CTR typically declines",
            {
                "fatigueThreshold": sum(p["frequency"] for p in points) / len(points),
                "frequencyDecay": sum(p["ctr_decline"] for p in points) / len(points),
                "dataPoints": len(points),
            },
            confidence=min(0.8, len(points) / 100),
            sample_size=len(points),
        )
        return 1

    async def store_pattern(
        self,
        user_id: Optional[int],
        ad_account_id: Optional[str],
        pattern_type: PatternType,
        name: str,
        description: str,
        data: Dict[str, Any],
        confidence: float,
        sample_size: int,
    ) -> IntelLearnedPattern:
        """Insert or refresh the pattern with the same type, name and owner."""
        now = datetime.utcnow()
        valid_until = now + timedelta(days=PATTERN_VALID_DAYS)

        result = await self.db.execute(
            select(IntelLearnedPattern).where(
                IntelLearnedPattern.pattern_type == pattern_type,
                IntelLearnedPattern.pattern_name == name,
                IntelLearnedPattern.user_id == user_id,
                IntelLearnedPattern.ad_account_id == ad_account_id,
            )
        )
        pattern = result.scalar_one_or_none()
        if pattern is None:
            pattern = IntelLearnedPattern(
                user_id=user_id,
                ad_account_id=ad_account_id,
                pattern_type=pattern_type,
                pattern_name=name,
                valid_from=now,
            )
            self.db.add(pattern)

        pattern.description = description
        pattern.pattern_data = data
        pattern.confidence_score = confidence
        pattern.sample_size = sample_size
        pattern.is_active = True
        pattern.valid_until = valid_until
        pattern.last_validated = now
        await self.db.flush()
        return pattern

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_active_patterns(
        self,
        user_id: Optional[int] = None,
        ad_account_id: Optional[str] = None,
        pattern_type: Optional[PatternType] = None,
    ) -> List[IntelLearnedPattern]:
        now = datetime.utcnow()
        query = select(IntelLearnedPattern).where(
            IntelLearnedPattern.is_active.is_(True),
            (IntelLearnedPattern.valid_until.is_(None)) | (IntelLearnedPattern.valid_until > now),
        )
        if user_id is not None:
            query = query.where(IntelLearnedPattern.user_id == user_id)
        if ad_account_id is not None:
            query = query.where(IntelLearnedPattern.ad_account_id == ad_account_id)
        if pattern_type is not None:
            query = query.where(IntelLearnedPattern.pattern_type == pattern_type)
        result = await self.db.execute(query.order_by(IntelLearnedPattern.confidence_score.desc()))
        return list(result.scalars().all())

    async def predict_performance(
        self,
        user_id: int,
        current_metrics: Dict[str, Any],
        ad_account_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        predictions: Dict[str, Any] = {
            "winner_match": None,
            "loser_match": None,
            "fatigue_risk": None,
            "cluster": None,
            "best_times": [],
        }
        slots = {
            PatternType.WINNER_PROFILE: "winner_match",
            PatternType.LOSER_PROFILE: "loser_match",
            PatternType.AUDIENCE_FATIGUE: "fatigue_risk",
            PatternType.CLUSTER: "cluster",
        }

        for pattern in await self.get_active_patterns(user_id, ad_account_id):
            result = pattern.predict(current_metrics)
            if not result.get("applicable"):
                continue
            if pattern.pattern_type == PatternType.TIME_PERFORMANCE:
                predictions["best_times"] = result.get("best_hours", [])
            elif pattern.pattern_type in slots and predictions[slots[pattern.pattern_type]] is None:
                predictions[slots[pattern.pattern_type]] = result

        return predictions

    async def get_pattern_insights(self, user_id: int, ad_account_id: Optional[str] = None) -> Dict[str, Any]:
        patterns = await self.get_active_patterns(user_id, ad_account_id)
        by_type: Dict[str, int] = defaultdict(int)
        for p in patterns:
            by_type[p.pattern_type.value] += 1

        return {
            "total_patterns": len(patterns),
            "by_type": dict(by_type),
            "insights": [
                {
                    "type": p.pattern_type.value,
                    "name": p.pattern_name,
                    "description": p.description,
                    "confidence": f"{p.confidence_score * 100:.0f}%",
                    "sample_size": p.sample_size,
                    "valid_until": p.valid_until.isoformat() if p.valid_until else None,
                }
                for p in patterns
            ],
        }

    async def get_training_status(self, user_id: int) -> Dict[str, Any]:
        snapshot_count = (await self.db.execute(
            select(func.count()).select_from(IntelPerformanceSnapshot).where(IntelPerformanceSnapshot.user_id == user_id)
        )).scalar() or 0
        pattern_count = (await self.db.execute(
            select(func.count()).select_from(IntelLearnedPattern).where(
                IntelLearnedPattern.user_id == user_id,
                IntelLearnedPattern.is_active.is_(True),
            )
        )).scalar() or 0
        rule_count = (await self.db.execute(
            select(func.count()).select_from(IntelAutomationRule).where(
                IntelAutomationRule.user_id == user_id,
                IntelAutomationRule.is_active.is_(True),
            )
        )).scalar() or 0

        last_run = type(self).last_learning_run
        return {
            "data_points": snapshot_count,
            "patterns_learned": pattern_count,
            "active_rules": rule_count,
            **training_readiness(snapshot_count, pattern_count, rule_count),
            "learning_in_progress": type(self).learning_in_progress,
            "last_learning_run": last_run.isoformat() if last_run else None,
        }

    async def get_training_history(self, user_id: int, days: int = 30) -> Dict[str, Any]:
        since = datetime.utcnow() - timedelta(days=days)

        snapshots = await self.db.execute(
            select(IntelPerformanceSnapshot.snapshot_date, func.count(IntelPerformanceSnapshot.id))
            .where(
                IntelPerformanceSnapshot.user_id == user_id,
                IntelPerformanceSnapshot.snapshot_date >= since.date(),
            )
            .group_by(IntelPerformanceSnapshot.snapshot_date)
            .order_by(IntelPerformanceSnapshot.snapshot_date.asc())
        )
        created_day = cast(IntelLearnedPattern.created_at, Date)
        patterns = await self.db.execute(
            select(created_day, IntelLearnedPattern.pattern_type, func.count(IntelLearnedPattern.id))
            .where(
                IntelLearnedPattern.user_id == user_id,
                IntelLearnedPattern.created_at >= since,
            )
            .group_by(created_day, IntelLearnedPattern.pattern_type)
            .order_by(created_day.asc())
        )

        return {
            "data_collection": [
                {"date": str(day), "count": count} for day, count in snapshots.all()
            ],
            "pattern_creation": [
                {"date": str(day), "type": ptype.value, "count": count} for day, ptype, count in patterns.all()
            ],
        }

    async def get_cluster_visualization(self, user_id: int, ad_account_id: Optional[str] = None) -> Dict[str, Any]:
        clusters = await self.get_active_patterns(user_id, ad_account_id, PatternType.CLUSTER)
        if not clusters:
            return {"centroids": [], "feature_names": CLUSTER_FEATURES, "cluster_sizes": [], "cluster_descriptions": []}

        latest = max(clusters, key=lambda p: p.updated_at or p.created_at)
        data = latest.pattern_data or {}
        return {
            "centroids": data.get("centroids", []),
            "feature_names": data.get("feature_names", CLUSTER_FEATURES),
            "cluster_sizes": data.get("cluster_sizes", []),
            "cluster_descriptions": data.get("cluster_descriptions", []),
            "k": data.get("k", 4),
            "sample_size": latest.sample_size,
            "confidence": latest.confidence_score,
        }


def serialize_pattern(pattern: IntelLearnedPattern) -> Dict[str, Any]:
    return {
        "id": pattern.id,
        "ad_account_id": pattern.ad_account_id,
        "pattern_type": pattern.pattern_type.value,
        "pattern_name": pattern.pattern_name,
        "description": pattern.description,
        "pattern_data": pattern.pattern_data,
        "confidence_score": pattern.confidence_score,
        "sample_size": pattern.sample_size,
        "valid_until": pattern.valid_until.isoformat() if pattern.valid_until else None,
        "last_validated": pattern.last_validated.isoformat() if pattern.last_validated else None,
    }
