"""
Unit tests for metric formulas and pattern learning
"""

import numpy as np
import pytest
from datetime import datetime, date, timedelta
from types import SimpleNamespace
from models.base import EntityType, PatternType
from models.intel_learned_pattern import IntelLearnedPattern
from models.intel_performance_snapshot import IntelPerformanceSnapshot
from intelligence.metrics import (
    cpm, ctr, cpc, cpa, roas, frequency,
    parse_insights,
    days_since,
    performance_trend,
)
from intelligence.patterns import (
    PatternLearningService,
    calculate_profile,
    classify_hours,
    describe_clusters,
    find_fatigue_points,
    kmeans,
    normalize,
    training_readiness,
)


class TestMetricFormulas:
    """Test ratio formulas"""

    def test_formulas(self):
        assert cpm(50.0, 10000) == pytest.approx(5.0)
        assert ctr(150, 10000) == pytest.approx(1.5)
        assert cpc(30.0, 60) == 0.5
        assert cpa(100.0, 4) == 25.0
        assert roas(300.0, 200.0) == 150.0
        assert frequency(3000, 1000) == pytest.approx(3.0)

    def test_zero_denominators(self):
        assert cpm(50.0, 0) == 0.0
        assert ctr(5, 0) == 0.0
        assert cpa(10.0, 0) == 0.0
        assert roas(10.0, 0) == 0.0

    def test_parse_insights_purchase(self):
        row = {
            "spend": "100.50",
            "impressions": "20000",
            "clicks": "400",
            "reach": "10000",
            "actions": [{"action_type": "link_click", "value": "400"}, {"action_type": "purchase", "value": "5"}],
            "action_values": [{"action_type": "purchase", "value": "301.50"}],
        }

        metrics = parse_insights(row)

        assert metrics["spend"] == 100.5
        assert metrics["conversions"] == 5
        assert metrics["revenue"] == 301.5
        assert metrics["roas"] == pytest.approx(300.0)
        assert metrics["frequency"] == 2.0

    def test_parse_insights_falls_back_to_leads(self):
        metrics = parse_insights({"spend": "10", "actions": [{"action_type": "lead", "value": "3"}]})

        assert metrics["conversions"] == 3
        assert metrics["revenue"] == 0.0
        assert metrics["impressions"] == 0

    def test_days_since(self):
        now = datetime(2024, 3, 10, 12, 0, 0)

        assert days_since("2024-03-01T08:00:00+0000", now=now) == 9
        assert days_since(None) is None
        assert days_since("not a date") is None

    def test_performance_trend(self):
        snapshots = [
            SimpleNamespace(snapshot_date=date(2024, 1, 1), spend=100.0, conversions=2, revenue=100.0, impressions=1000),
            SimpleNamespace(snapshot_date=date(2024, 1, 2), spend=100.0, conversions=4, revenue=200.0, impressions=1000),
        ]

        trend = performance_trend(snapshots)

        assert trend["trend"] == "improving"
        assert trend["roas_change"] == 100.0
        assert trend["spend_change"] == 0.0
        assert len(trend["data"]) == 2

    def test_trend_needs_two_snapshots(self):
        assert performance_trend([])["trend"] == "insufficient_data"


class TestPatternHelpers:
    """Test the statistics used by pattern learning"""

    def test_classify_hours(self):
        labels, overall = classify_hours({8: 100.0, 12: 200.0, 20: 30.0})

        assert overall == pytest.approx(110.0)
        assert labels == {8: "average", 12: "high", 20: "low"}

    def test_calculate_profile(self):
        entities = [{"cpm": float(v)} for v in range(1, 9)]

        profile = calculate_profile(entities, ["cpm", "ctr"])

        assert profile == {"cpm": {"min": 3.0, "max": 7.0}}

    def test_normalize(self):
        assert normalize([[0.0, 5.0], [10.0, 5.0]]) == [[0.0, 0.0], [1.0, 0.0]]

    def test_kmeans_separates_groups(self):
        data = [[0.0, 0.0], [0.1, 0.0], [0.0, 0.1], [1.0, 1.0], [0.9, 1.0], [1.0, 0.9]]

        centroids, assignments = kmeans(data, 2, rng=np.random.default_rng(7))

        assert len(centroids) == 2
        assert assignments[0] == assignments[1] == assignments[2]
        assert assignments[3] == assignments[4] == assignments[5]
        assert assignments[0] != assignments[3]

    def test_describe_clusters(self):
        assert describe_clusters([[0.9, 0.8], [0.1, 0.0]]) == [
            "Cluster 1: High performers",
            "Cluster 2: Low performers",
        ]

    def test_find_fatigue_points(self):
        rows = [
            SimpleNamespace(entity_id="a", ctr=2.0, frequency=1.5),
            SimpleNamespace(entity_id="a", ctr=1.5, frequency=2.5),
            SimpleNamespace(entity_id="b", ctr=1.0, frequency=3.0),
            SimpleNamespace(entity_id="b", ctr=1.2, frequency=3.5),
        ]

        assert find_fatigue_points(rows) == [{"frequency": 2.5, "ctr_decline": 0.5}]

    def test_training_readiness(self):
        assert training_readiness(100, 3, 1)["status"] == "ready"
        assert training_readiness(100, 0, 1)["status"] == "learning"
        result = training_readiness(10, 0, 0)
        assert result["status"] == "collecting"
        assert result["readiness"]["data"] == 10


class TestPatternPredictions:
    """Test prediction from stored pattern data"""

    def test_time_pattern(self):
        pattern = IntelLearnedPattern(
            pattern_type=PatternType.TIME_PERFORMANCE,
            pattern_data={"hourlyPerformance": {"9": "high", "14": "low", "18": "high"}},
            confidence_score=0.5,
        )

        result = pattern.predict({"hour": 14})

        assert result["prediction"] == "low"
        assert result["best_hours"] == [9, 18]

    def test_fatigue_pattern(self):
        pattern = IntelLearnedPattern(
            pattern_type=PatternType.AUDIENCE_FATIGUE,
            pattern_data={"fatigueThreshold": 4.0, "frequencyDecay": 0.5},
            confidence_score=0.6,
        )

        assert pattern.predict({"frequency": 5.0})["fatigue_level"] == "high"
        low = pattern.predict({"frequency": 2.0})
        assert low["fatigue_level"] == "low"
        assert low["days_until_fatigue"] == 4

    def test_profile_match(self):
        pattern = IntelLearnedPattern(
            pattern_type=PatternType.WINNER_PROFILE,
            pattern_data={"profile": {"cpm": {"min": 5, "max": 10}, "ctr": {"min": 1, "max": 2}}},
            confidence_score=0.8,
        )

        result = pattern.predict({"cpm": 7, "ctr": 3})

        assert result["match_percentage"] == 50.0
        assert result["is_match"] is False

    def test_expired_pattern_is_invalid(self):
        pattern = IntelLearnedPattern(is_active=True, valid_until=datetime.utcnow() - timedelta(days=1))

        assert pattern.is_still_valid() is False


def hourly_snapshot(hour, revenue, entity_id="adset_1"):
    return IntelPerformanceSnapshot(
        user_id=1,
        ad_account_id="act_1",
        entity_type=EntityType.ADSET,
        entity_id=entity_id,
        snapshot_date=datetime.utcnow().date(),
        snapshot_hour=hour,
        hour_of_day=hour,
        spend=20.0,
        revenue=revenue,
        roas=revenue / 20.0 * 100,
    )


class TestPatternLearningService:
    """Test learning against stored snapshots"""

    @pytest.mark.asyncio
    async def test_learns_time_pattern(self, db_session):
        for _ in range(5):
            for hour in range(24):
                db_session.add(hourly_snapshot(hour, 100.0 if hour == 10 else 20.0))
        await db_session.commit()

        service = PatternLearningService(db_session, rng=np.random.default_rng(1))
        counts = await service.learn_for_account(1, "act_1")
        patterns = await service.get_active_patterns(1, "act_1", PatternType.TIME_PERFORMANCE)

        assert counts["time_patterns"] == 1
        assert counts["clusters"] == 1
        assert len(patterns) == 1
        assert patterns[0].pattern_data["bestHours"] == [10]
        assert patterns[0].sample_size == 120

    @pytest.mark.asyncio
    async def test_too_few_snapshots_learns_nothing(self, db_session):
        db_session.add(hourly_snapshot(10, 50.0))
        await db_session.commit()

        counts = await PatternLearningService(db_session).learn_for_account(1, "act_1")

        assert sum(counts.values()) == 0

    @pytest.mark.asyncio
    async def test_store_pattern_refreshes_existing(self, db_session):
        service = PatternLearningService(db_session)

        first = await service.store_pattern(1, "act_1", PatternType.CLUSTER, "Clusters", "v1", {"k": 4}, 0.5, 10)
        second = await service.store_pattern(1, "act_1", PatternType.CLUSTER, "Clusters", "v2", {"k": 4}, 0.7, 20)

        assert first.id == second.id
        assert second.description == "v2"
        assert second.sample_size == 20

    @pytest.mark.asyncio
    async def test_training_status(self, db_session):
        db_session.add(hourly_snapshot(10, 50.0))
        await db_session.commit()

        status = await PatternLearningService(db_session).get_training_status(1)

        assert status["data_points"] == 1
        assert status["patterns_learned"] == 0
        assert status["status"] == "collecting"
