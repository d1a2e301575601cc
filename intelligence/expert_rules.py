"""
Expert rules seeded from media buyer questionnaire answers.

Free-text answers are parsed into kill thresholds, scale triggers,
benchmarks, winning states and campaign structures. Answers that agree
are grouped; the more buyers back a rule the higher its confidence.
"""

import logging
import re
from collections import OrderedDict
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence
from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession
from core.exceptions import ResourceNotFoundError, ValidationError
from models.base import ExpertRuleSource, ExpertRuleType
from models.intel_expert_rule import IntelExpertRule

logger = logging.getLogger(__name__)

VERTICAL_QUESTION = "What is your primary vertical or vertical with expertise and secondary expertise vertical?"
KILL_QUESTION = "What is your campaign/adset killing point ?"
MAX_LOSS_QUESTION = "Max loss point in % of spending we can bear before killing the campaign or adset."
SCALING_QUESTIONS = (
    "Campaign budget increasing parameters you follow, based on all the parameter be it ROI, CPM or "
    "anything else mention the parameter and then the criteria.",
    "What is the parameter which makes you think campaign scaling should be done now, list all the scenarios?",
    "Can you tell what parameter apart from ROI u see for scaling?",
)
STATES_QUESTION = "Most winning target states, mention which are the common in all scenarios"
STRUCTURE_QUESTION = "Number of Adset and ads strategy you use "

VERTICALS = OrderedDict([
    ("home insurance", "home_insurance"),
    ("auto insurance", "auto_insurance"),
    ("medicare", "medicare"),
    ("guns", "guns"),
    ("home improvement", "home_improvement"),
    ("vsl", "vsl"),
    ("bizopp", "bizopp"),
    ("cbd", "cbd"),
    ("meta", "general"),
])

STATES = OrderedDict([
    ("texas", "TX"),
    ("colorado", "CO"),
    ("washington", "WA"),
    ("florida", "FL"),
    ("illinois", "IL"),
    ("california", "CA"),
    ("new york", "NY"),
    ("newyork", "NY"),
    ("new jersey", "NJ"),
    ("newjersey", "NJ"),
])

DEFAULT_BUDGET_INCREASE = 30
UPDATABLE_FIELDS = (
    "name", "description", "vertical", "campaign_structure", "conditions", "thresholds",
    "actions", "confidence_score", "is_active", "winning_states", "creative_insights",
)
OPERATORS = {
    "<": lambda a, b: a < b,
    "<=": lambda a, b: a <= b,
    ">": lambda a, b: a > b,
    ">=": lambda a, b: a >= b,
    "==": lambda a, b: a == b,
}


# ============================================================================
# Answer parsing
# ============================================================================

def normalize_vertical(text: Optional[str]) -> str:
    if not text:
        return "general"
    lower = text.lower().strip()
    for key, vertical in VERTICALS.items():
        if key in lower:
            return vertical
    return "general"


def _lookback(lower: str, default: int) -> int:
    if "3 day" in lower:
        return 3
    if "same day" in lower:
        return 1
    return default


def parse_kill_point(text: str, vertical: str) -> List[Dict[str, Any]]:
    rules = []
    lower = text.lower()

    structure = None
    for candidate in ("1-50-1", "1-3-3", "normal"):
        if candidate in lower:
            structure = candidate

    for amount in re.findall(r"-?\$(\d+)", text):
        rules.append({
            "vertical": vertical,
            "structure": structure,
            "type": "absolute_loss",
            "value": -abs(int(amount)),
            "condition": "spend",
            "lookback_days": _lookback(lower, 3),
        })

    payout = re.search(r"(\d+)\s*(?:to\s*\d+\s*)?(?:x|times?)\s*(?:of\s*)?(?:the\s*)?payout", lower)
    if payout:
        rules.append({
            "vertical": vertical,
            "type": "payout_multiplier",
            "value": float(payout.group(1)),
            "condition": "no_conversion",
        })

    percent = re.search(r"(\d+)(?:-\d+)?%", lower)
    if percent and "budget" in lower:
        rules.append({
            "vertical": vertical,
            "type": "budget_percentage",
            "value": int(percent.group(1)),
            "condition": "no_benchmark",
        })

    return rules


def parse_max_loss(text: str, vertical: str) -> List[Dict[str, Any]]:
    rules = []
    lower = text.lower()

    percent = re.search(r"(\d+)(?:\s*-\s*(\d+))?%", lower)
    if percent:
        low = int(percent.group(1))
        high = int(percent.group(2)) if percent.group(2) else low
        rules.append({"vertical": vertical, "type": "max_loss_percentage", "value": (low + high) / 2, "range": [low, high]})

    payout = re.search(r"(\d+(?:\.\d+)?)\s*(?:x|times?)\s*(?:of\s*)?(?:the\s*)?payout", lower)
    if payout:
        rules.append({"vertical": vertical, "type": "payout_multiplier", "value": float(payout.group(1))})

    if not percent and not payout:
        amount = re.search(r"-?\$?(\d+)", text)
        if amount:
            rules.append({"vertical": vertical, "type": "absolute_loss", "value": -abs(int(amount.group(1)))})

    targeting = None
    if "broad" in lower or "board" in lower:
        targeting = "broad"
    if "state" in lower:
        targeting = "state"
    if targeting:
        for rule in rules:
            rule["targeting"] = targeting

    return rules


def parse_scale_rules(text: str, vertical: str) -> List[Dict[str, Any]]:
    rules = []
    lower = text.lower()

    for match in re.finditer(r"roi\s*(?:is\s*)?(?:greater\s*than\s*|above\s*|>\s*)?(\d+)(?:\s*-\s*(\d+))?%", lower):
        context = lower[max(0, match.start() - 100):match.start() + 100]
        increase = re.search(r"increase\s*(?:the\s*)?(?:budget\s*)?(\d+)%", context)
        rules.append({
            "vertical": vertical,
            "type": "roi_threshold",
            "roi_min": int(match.group(1)),
            "roi_max": int(match.group(2)) if match.group(2) else None,
            "budget_increase": int(increase.group(1)) if increase else DEFAULT_BUDGET_INCREASE,
            "lookback_days": _lookback(lower, 1),
        })

    conversions = re.search(r"(\d+)\s*conversions?", lower)
    if conversions:
        rules.append({
            "vertical": vertical,
            "type": "conversion_threshold",
            "min_conversions": int(conversions.group(1)),
            "lookback_days": 3,
        })

    if "stable" in lower and ("cpc" in lower or "cpm" in lower):
        rules.append({"vertical": vertical, "type": "stability_check", "metrics": ["cpc", "cpm"], "lookback_days": 3})

    return rules


def parse_benchmarks(text: str) -> Dict[str, float]:
    benchmarks: Dict[str, float] = {}
    lower = text.lower()

    cpc = re.search(r"cpc\s*(?:upto\s*|less\s*than\s*|<\s*)?\$?(\d+(?:\.\d+)?)", lower)
    if cpc:
        benchmarks["cpc_max"] = float(cpc.group(1))

    cpm = re.search(r"cpm\s*\(?(\d+)(?:\s*-\s*(\d+))?", lower)
    if cpm:
        benchmarks["cpm_min"] = int(cpm.group(1))
        benchmarks["cpm_max"] = int(cpm.group(2)) if cpm.group(2) else benchmarks["cpm_min"] * 1.5

    roi = re.search(r"roi\s*\(?(?:upto\s*)?(\d+)%?", lower)
    if roi:
        benchmarks["roi_target"] = int(roi.group(1))

    return benchmarks


def parse_states(text: str) -> Dict[str, List[str]]:
    lower = text.lower()
    excluding = "exclud" in lower or "except" in lower
    found: List[str] = []

    for name, abbrev in STATES.items():
        if name in lower and abbrev not in found:
            found.append(abbrev)
    for abbrev in re.findall(r"\b([A-Z]{2})\b", text):
        if abbrev not in found:
            found.append(abbrev)

    return {"winning": [] if excluding else found, "excluded": found if excluding else []}


def parse_structures(text: str) -> List[str]:
    structures = re.findall(r"\d+-\d+-\d+", text)
    lower = text.lower()
    if "abo" in lower:
        structures.append("ABO")
    if "cbo" in lower:
        structures.append("CBO")
    return structures


def aggregate_submissions(submissions: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
    """First pass: collect parsed rules from every answer, tagged with who gave them."""
    kill_rules: List[Dict[str, Any]] = []
    scale_rules: List[Dict[str, Any]] = []
    benchmarks: Dict[str, Dict[str, Any]] = {}
    targeting: Dict[str, Dict[str, Any]] = {}
    structures: Dict[str, Dict[str, Any]] = {}

    def tag(rules, index, timestamp):
        for rule in rules:
            rule["source_index"] = index
            rule["timestamp"] = timestamp
        return rules

    for index, submission in enumerate(submissions):
        vertical = normalize_vertical(submission.get(VERTICAL_QUESTION))
        timestamp = submission.get("Timestamp")

        if submission.get(KILL_QUESTION):
            kill_rules += tag(parse_kill_point(submission[KILL_QUESTION], vertical), index, timestamp)
        if submission.get(MAX_LOSS_QUESTION):
            kill_rules += tag(parse_max_loss(submission[MAX_LOSS_QUESTION], vertical), index, timestamp)

        for question in SCALING_QUESTIONS:
            if submission.get(question):
                scale_rules += tag(parse_scale_rules(submission[question], vertical), index, timestamp)

        if submission.get(SCALING_QUESTIONS[0]):
            for metric, value in parse_benchmarks(submission[SCALING_QUESTIONS[0]]).items():
                benchmarks.setdefault(metric, {"values": [], "vertical": vertical})["values"].append(value)

        if submission.get(STATES_QUESTION):
            states = parse_states(submission[STATES_QUESTION])
            for state in states["winning"]:
                targeting.setdefault(state, {"count": 0, "type": "winning"})["count"] += 1
            for state in states["excluded"]:
                entry = targeting.setdefault(state, {"count": 0, "type": "excluded"})
                entry["type"] = "excluded"
                entry["count"] += 1

        if submission.get(STRUCTURE_QUESTION):
            for structure in parse_structures(submission[STRUCTURE_QUESTION]):
                entry = structures.setdefault(structure, {"count": 0, "verticals": []})
                entry["count"] += 1
                if vertical not in entry["verticals"]:
                    entry["verticals"].append(vertical)

    return {
        "kill_rules": kill_rules,
        "scale_rules": scale_rules,
        "benchmarks": benchmarks,
        "targeting": targeting,
        "structures": structures,
    }


def group_similar(rules: List[Dict[str, Any]]) -> "OrderedDict[str, List[Dict[str, Any]]]":
    grouped: "OrderedDict[str, List[Dict[str, Any]]]" = OrderedDict()
    for rule in rules:
        key = f"{rule['vertical']}_{rule['type']}_{rule.get('structure') or 'any'}"
        grouped.setdefault(key, []).append(rule)
    return grouped


def expert_confidence(expert_count: int) -> float:
    return round(min(0.9, 0.3 + expert_count * 0.15), 2)


def evaluate_conditions(conditions: Optional[List[Dict[str, Any]]], metrics: Dict[str, Any]) -> bool:
    """True when every condition holds. A missing metric fails the rule."""
    if not conditions:
        return False
    for condition in conditions:
        value = metrics.get(condition.get("metric"))
        compare = OPERATORS.get(condition.get("operator"))
        if value is None or compare is None:
            return False
        try:
            if not compare(value, condition.get("value")):
                return False
        except TypeError:
            return False
    return True


class ExpertRulesService:
    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def _upsert(self, name: str, rule_type: ExpertRuleType, vertical: str, **fields) -> IntelExpertRule:
        result = await self.db.execute(
            select(IntelExpertRule).where(
                IntelExpertRule.name == name,
                IntelExpertRule.rule_type == rule_type,
                IntelExpertRule.vertical == vertical,
            )
        )
        rule = result.scalar_one_or_none()
        if rule is None:
            rule = IntelExpertRule(name=name, rule_type=rule_type, vertical=vertical)
            self.db.add(rule)
        for key, value in fields.items():
            setattr(rule, key, value)
        rule.source = ExpertRuleSource.FORM_SUBMISSION
        await self.db.flush()
        return rule

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------

    async def parse_and_seed_rules(self, submissions: Sequence[Dict[str, Any]]) -> Dict[str, int]:
        """Parse questionnaire answers and upsert the resulting rules in one transaction."""
        aggregated = aggregate_submissions(submissions)
        results = {
            "kill_rules": await self._create_kill_rules(aggregated["kill_rules"]),
            "scale_rules": await self._create_scale_rules(aggregated["scale_rules"]),
            "benchmark_rules": await self._create_benchmark_rule(aggregated["benchmarks"]),
            "targeting_rules": await self._create_targeting_rule(aggregated["targeting"]),
            "structure_rules": await self._create_structure_rules(aggregated["structures"]),
        }
        await self.db.commit()
        logger.info(f"Expert rules seeded from {len(submissions)} submission(s): {results}")
        return results

    async def _create_kill_rules(self, rules: List[Dict[str, Any]]) -> int:
        groups = group_similar(rules)
        for group in groups.values():
            first = group[0]
            experts = len({r["source_index"] for r in group})
            structure = first.get("structure")
            await self._upsert(
                f"Kill Rule: {first['vertical']} {first['type'].replace('_', ' ')} {structure or 'standard'}",
                ExpertRuleType.KILL,
                first["vertical"],
                description=f"Kill when loss exceeds threshold for {first['vertical']} campaigns",
                campaign_structure=structure,
                conditions=[{
                    "metric": "profit" if first["type"] == "absolute_loss" else "roi",
                    "operator": "<",
                    "value": sum(r["value"] for r in group) / len(group),
                    "lookback_days": first.get("lookback_days") or 3,
                }],
                actions=[{"action": "pause", "target": "entity"}],
                confidence_score=expert_confidence(experts),
                expert_count=experts,
                source_references=[r["timestamp"] for r in group],
            )
        return len(groups)

    async def _create_scale_rules(self, rules: List[Dict[str, Any]]) -> int:
        created = 0
        for group in group_similar(rules).values():
            first = group[0]
            if first["type"] == "roi_threshold":
                increase = sum(r.get("budget_increase") or DEFAULT_BUDGET_INCREASE for r in group) / len(group)
                conditions = [{
                    "metric": "roi",
                    "operator": ">",
                    "value": sum(r["roi_min"] for r in group) / len(group),
                    "lookback_days": first.get("lookback_days") or 1,
                }]
                actions = [{"action": "increase_budget", "parameters": {"percentage": round(increase)}}]
            elif first["type"] == "conversion_threshold":
                conditions = [{
                    "metric": "conversions",
                    "operator": ">=",
                    "value": round(sum(r["min_conversions"] for r in group) / len(group)),
                    "lookback_days": 3,
                }]
                actions = [{"action": "flag_for_scaling"}]
            else:
                continue

            experts = len({r["source_index"] for r in group})
            await self._upsert(
                f"Scale Rule: {first['type'].replace('_', ' ')}",
                ExpertRuleType.SCALE,
                first["vertical"],
                description=f"Scale based on {first['type']} criteria",
                conditions=conditions,
                actions=actions,
                confidence_score=expert_confidence(experts),
                expert_count=experts,
                source_references=[r["timestamp"] for r in group],
            )
            created += 1
        return created

    async def _create_benchmark_rule(self, benchmarks: Dict[str, Dict[str, Any]]) -> int:
        # Upper median, as the buyers' answers are few
        thresholds = {
            metric: sorted(data["values"])[len(data["values"]) // 2]
            for metric, data in benchmarks.items()
            if data["values"]
        }
        if not thresholds:
            return 0

        await self._upsert(
            "Performance Benchmarks",
            ExpertRuleType.BENCHMARK,
            "all",
            description="Aggregated performance benchmarks from media buyers",
            conditions=[],
            thresholds=thresholds,
            actions=[],
            confidence_score=0.7,
            expert_count=len(benchmarks),
        )
        return 1

    async def _create_targeting_rule(self, targeting: Dict[str, Dict[str, Any]]) -> int:
        winning = [
            {"state": state, "count": data["count"]}
            for state, data in targeting.items()
            if data["type"] == "winning" and data["count"] >= 2
        ]
        excluded = [
            {"state": state, "count": data["count"]}
            for state, data in targeting.items()
            if data["type"] == "excluded"
        ]
        if not winning:
            return 0

        winning.sort(key=lambda s: s["count"], reverse=True)
        await self._upsert(
            "Winning States Pattern",
            ExpertRuleType.TARGETING,
            "all",
            description="States with highest success rate according to media buyers",
            conditions=[],
            winning_states={"winning": winning, "excluded": excluded},
            actions=[],
            confidence_score=round(min(0.85, 0.4 + len(winning) * 0.1), 2),
            expert_count=sum(s["count"] for s in winning),
        )
        return 1

    async def _create_structure_rules(self, structures: Dict[str, Dict[str, Any]]) -> int:
        created = 0
        for structure, data in structures.items():
            if data["count"] < 2:
                continue
            await self._upsert(
                f"Campaign Structure: {structure}",
                ExpertRuleType.STRUCTURE,
                data["verticals"][0] if len(data["verticals"]) == 1 else "all",
                description=f"{structure} structure used by {data['count']} media buyers",
                campaign_structure=structure,
                conditions=[],
                actions=[],
                confidence_score=round(min(0.8, 0.3 + data["count"] * 0.15), 2),
                expert_count=data["count"],
            )
            created += 1
        return created

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_rules(
        self,
        vertical: Optional[str] = None,
        rule_type: Optional[ExpertRuleType] = None,
    ) -> List[IntelExpertRule]:
        """Active rules, most confident first. A vertical filter includes 'all' rules."""
        query = select(IntelExpertRule).where(IntelExpertRule.is_active.is_(True))
        if vertical:
            query = query.where(or_(IntelExpertRule.vertical == vertical, IntelExpertRule.vertical == "all"))
        if rule_type is not None:
            query = query.where(IntelExpertRule.rule_type == rule_type)
        result = await self.db.execute(query.order_by(IntelExpertRule.confidence_score.desc(), IntelExpertRule.id.asc()))
        return list(result.scalars().all())

    async def get_rule(self, rule_id: int) -> IntelExpertRule:
        rule = await self.db.get(IntelExpertRule, rule_id)
        if rule is None:
            raise ResourceNotFoundError("Rule not found", context={"rule_id": rule_id})
        return rule

    async def update_rule(self, rule_id: int, changes: Dict[str, Any]) -> IntelExpertRule:
        rule = await self.get_rule(rule_id)
        unknown = set(changes) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
        for key, value in changes.items():
            setattr(rule, key, value)
        await self.db.commit()
        return rule

    async def get_rules_summary(self) -> Dict[str, Any]:
        rules = await self.get_rules()
        by_type: Dict[str, int] = {}
        by_vertical: Dict[str, int] = {}
        for rule in rules:
            by_type[rule.rule_type.value] = by_type.get(rule.rule_type.value, 0) + 1
            by_vertical[rule.vertical] = by_vertical.get(rule.vertical, 0) + 1

        return {
            "total": len(rules),
            "by_type": by_type,
            "by_vertical": by_vertical,
            "top_rules": [
                {
                    "id": r.id,
                    "name": r.name,
                    "type": r.rule_type.value,
                    "vertical": r.vertical,
                    "confidence": f"{r.confidence_score * 100:.0f}%",
                    "expert_count": r.expert_count,
                }
                for r in rules[:5]
            ],
        }

    async def get_benchmarks(self, vertical: str = "all") -> Dict[str, Any]:
        """Thresholds of every matching benchmark rule merged into one mapping."""
        benchmarks: Dict[str, Any] = {}
        rules = await self.get_rules(vertical, ExpertRuleType.BENCHMARK)
        # 'all' first so vertical specific values win
        for rule in sorted(rules, key=lambda r: r.vertical != "all"):
            benchmarks.update(rule.thresholds or {})
        return benchmarks

    async def get_thresholds(self, rule_type: ExpertRuleType, vertical: Optional[str] = None) -> List[Dict[str, Any]]:
        """Kill or scale conditions, for seeding expert baselines."""
        rules = await self.get_rules(vertical if vertical != "all" else None, rule_type)
        return [
            {"name": r.name, "conditions": r.conditions, "confidence_score": r.confidence_score}
            for r in rules
        ]

    async def validate_rule(self, rule_id: int, performance_data: List[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Score a rule against known outcomes.

        A kill rule is confirmed when it fires on a ``loss``, a scale rule
        when it fires on a ``win``.
        """
        rule = await self.get_rule(rule_id)
        expected = {ExpertRuleType.KILL: "loss", ExpertRuleType.SCALE: "win"}.get(rule.rule_type)

        matches = 0
        for entry in performance_data:
            triggered = evaluate_conditions(rule.conditions, entry.get("metrics") or {})
            if triggered and expected and entry.get("outcome") == expected:
                matches += 1

        total = len(performance_data)
        accuracy = matches / total if total else 0.0
        rule.times_validated += total
        rule.times_confirmed += matches
        rule.validation_accuracy = accuracy
        rule.last_validated_at = datetime.utcnow()
        await self.db.commit()
        return {"accuracy": accuracy, "matches": matches, "total": total}


def serialize_expert_rule(rule: IntelExpertRule) -> Dict[str, Any]:
    return {
        "id": rule.id,
        "name": rule.name,
        "description": rule.description,
        "vertical": rule.vertical,
        "rule_type": rule.rule_type.value,
        "campaign_structure": rule.campaign_structure,
        "conditions": rule.conditions or [],
        "thresholds": rule.thresholds,
        "actions": rule.actions or [],
        "confidence_score": rule.confidence_score,
        "expert_count": rule.expert_count,
        "source": rule.source.value,
        "winning_states": rule.winning_states,
        "is_active": rule.is_active,
        "times_validated": rule.times_validated,
        "validation_accuracy": rule.validation_accuracy,
    }
