"""
Unit tests for questionnaire parsing and expert rule scoring
"""

import pytest
from intelligence.expert_rules import (
    KILL_QUESTION,
    SCALING_QUESTIONS,
    STATES_QUESTION,
    STRUCTURE_QUESTION,
    VERTICAL_QUESTION,
    aggregate_submissions,
    evaluate_conditions,
    expert_confidence,
    group_similar,
    normalize_vertical,
    parse_benchmarks,
    parse_kill_point,
    parse_max_loss,
    parse_scale_rules,
    parse_states,
    parse_structures,
)


def test_normalize_vertical():
    assert normalize_vertical("Home Insurance and Medicare") == "home_insurance"
    assert normalize_vertical("  CBD  ") == "cbd"
    assert normalize_vertical("Solar") == "general"
    assert normalize_vertical(None) == "general"


class TestKillPoint:
    """Test kill point answers"""

    def test_dollar_loss_with_structure(self):
        rules = parse_kill_point("Kill at -$50 after 3 days on 1-50-1 campaigns", "medicare")

        assert rules == [{
            "vertical": "medicare",
            "structure": "1-50-1",
            "type": "absolute_loss",
            "value": -50,
            "condition": "spend",
            "lookback_days": 3,
        }]

    def test_payout_multiplier(self):
        rules = parse_kill_point("No conversion after 2x payout, kill it", "guns")

        assert [(r["type"], r["value"]) for r in rules] == [("payout_multiplier", 2.0)]

    def test_budget_percentage(self):
        rules = parse_kill_point("Spent 30-40% of budget without benchmark", "vsl")

        assert [(r["type"], r["value"]) for r in rules] == [("budget_percentage", 30)]

    def test_no_numbers(self):
        assert parse_kill_point("When it feels wrong", "general") == []


class TestMaxLoss:
    def test_percentage_range_uses_midpoint(self):
        rules = parse_max_loss("30-50% of spend on broad", "vsl")

        assert rules == [{
            "vertical": "vsl",
            "type": "max_loss_percentage",
            "value": 40.0,
            "range": [30, 50],
            "targeting": "broad",
        }]

    def test_plain_amount(self):
        assert parse_max_loss("$100", "cbd") == [{"vertical": "cbd", "type": "absolute_loss", "value": -100}]


class TestScaleRules:
    def test_roi_threshold_with_budget_increase(self):
        rules = parse_scale_rules("If ROI is above 30% for 3 days increase budget 20%", "medicare")

        assert rules == [{
            "vertical": "medicare",
            "type": "roi_threshold",
            "roi_min": 30,
            "roi_max": None,
            "budget_increase": 20,
            "lookback_days": 3,
        }]

    def test_default_budget_increase(self):
        rules = parse_scale_rules("ROI 40-60% same day", "guns")

        assert rules[0]["roi_max"] == 60
        assert rules[0]["budget_increase"] == 30
        assert rules[0]["lookback_days"] == 1

    def test_conversions_and_stability(self):
        rules = parse_scale_rules("After 5 conversions with stable CPC", "guns")

        assert [r["type"] for r in rules] == ["conversion_threshold", "stability_check"]
        assert rules[0]["min_conversions"] == 5


def test_parse_benchmarks():
    assert parse_benchmarks("CPC upto $1.5, CPM 20-30, ROI 40%") == {
        "cpc_max": 1.5,
        "cpm_min": 20,
        "cpm_max": 30,
        "roi_target": 40,
    }
    assert parse_benchmarks("CPM 20") == {"cpm_min": 20, "cpm_max": 30.0}


def test_parse_states():
    assert parse_states("Texas, Florida and CA") == {"winning": ["TX", "FL", "CA"], "excluded": []}
    assert parse_states("All except New York") == {"winning": [], "excluded": ["NY"]}


def test_parse_structures():
    assert parse_structures("1-3-3 with CBO, sometimes 1-50-1") == ["1-3-3", "1-50-1", "CBO"]
    assert parse_structures("ABO only") == ["ABO"]


def test_aggregate_and_group_submissions():
    submissions = [
        {VERTICAL_QUESTION: "Medicare", KILL_QUESTION: "-$50", STATES_QUESTION: "Texas",
         STRUCTURE_QUESTION: "1-3-3", "Timestamp": "t1"},
        {VERTICAL_QUESTION: "Medicare", KILL_QUESTION: "-$70", STATES_QUESTION: "Texas and Florida",
         STRUCTURE_QUESTION: "1-3-3", SCALING_QUESTIONS[0]: "CPC upto $2", "Timestamp": "t2"},
    ]

    aggregated = aggregate_submissions(submissions)

    assert [(r["value"], r["source_index"], r["timestamp"]) for r in aggregated["kill_rules"]] == [
        (-50, 0, "t1"), (-70, 1, "t2"),
    ]
    assert aggregated["targeting"] == {"TX": {"count": 2, "type": "winning"}, "FL": {"count": 1, "type": "winning"}}
    assert aggregated["structures"] == {"1-3-3": {"count": 2, "verticals": ["medicare"]}}
    assert aggregated["benchmarks"] == {"cpc_max": {"values": [2.0], "vertical": "medicare"}}

    groups = group_similar(aggregated["kill_rules"])
    assert list(groups) == ["medicare_absolute_loss_any"]
    assert len(groups["medicare_absolute_loss_any"]) == 2


def test_expert_confidence():
    assert expert_confidence(1) == 0.45
    assert expert_confidence(2) == 0.6
    assert expert_confidence(5) == 0.9


class TestEvaluateConditions:
    """Test matching a rule's conditions against metrics"""

    CONDITIONS = [
        {"metric": "roi", "operator": "<", "value": -20},
        {"metric": "spend", "operator": ">=", "value": 50},
    ]

    def test_all_conditions_must_hold(self):
        assert evaluate_conditions(self.CONDITIONS, {"roi": -30, "spend": 50}) is True
        assert evaluate_conditions(self.CONDITIONS, {"roi": -30, "spend": 10}) is False

    def test_missing_metric_fails(self):
        assert evaluate_conditions(self.CONDITIONS, {"roi": -30}) is False

    @pytest.mark.parametrize("conditions", [
        None,
        [],
        [{"metric": "roi", "operator": "~", "value": 1}],
    ])
    def test_empty_or_unknown_operator(self, conditions):
        assert evaluate_conditions(conditions, {"roi": 5}) is False

    def test_incomparable_values_fail(self):
        assert evaluate_conditions(self.CONDITIONS, {"roi": "n/a", "spend": 50}) is False
