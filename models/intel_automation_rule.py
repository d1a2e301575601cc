from sqlalchemy import Column, Integer, String, Enum, DateTime, Boolean, Text
from datetime import datetime
from typing import Any, Dict, List
import operator
from models.base import Base, RuleType, JSONType

_COMPARATORS = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "==": operator.eq,
    "=": operator.eq,
    "!=": operator.ne,
}

SUPPORTED_OPERATORS = tuple(_COMPARATORS) + ("between",)


def _compare(actual: Any, op: str, expected: Any) -> bool:
    try:
        if op == "between":
            low, high = expected
            return low <= actual <= high
        comparator = _COMPARATORS.get(op)
        if comparator is None:
            return False
        return comparator(actual, expected)
    except (TypeError, ValueError):
        # "LEARNING_LIMITED" > 3 and similar mismatches never match
        return False


class IntelAutomationRule(Base):
    """
    User defined rule evaluated against the latest snapshot of each entity.

    ``conditions``: [{metric, operator, value}], combined with
    ``condition_logic`` (AND / OR).
    ``actions``: [{action, params}] where action is an AutomationActionType.
    """
    __tablename__ = "intel_automation_rules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    ad_account_id = Column(String(64), nullable=True)  # null = all accounts

    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    rule_type = Column(Enum(RuleType), default=RuleType.CUSTOM, nullable=False)
    entity_type = Column(String(16), default="adset", nullable=False)  # campaign|adset|ad|all

    conditions = Column(JSONType, nullable=False, default=list)
    condition_logic = Column(String(3), default="AND", nullable=False)
    actions = Column(JSONType, nullable=False, default=list)

    is_active = Column(Boolean, default=True, nullable=False)
    requires_approval = Column(Boolean, default=True, nullable=False)
    cooldown_hours = Column(Integer, default=24, nullable=False)
    evaluation_window_hours = Column(Integer, default=24, nullable=False)

    times_triggered = Column(Integer, default=0, nullable=False)
    last_triggered_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def evaluate_conditions(self, metrics: Dict[str, Any]) -> Dict[str, Any]:
        """
        Check every condition against ``metrics``.

        Conditions on metrics that are missing (None) are skipped; with AND
        logic a skipped condition makes the rule fail.
        """
        conditions: List[Dict[str, Any]] = self.conditions or []
        triggered = []

        for condition in conditions:
            actual = metrics.get(condition["metric"])
            if actual is None:
                continue
            if _compare(actual, condition["operator"], condition["value"]):
                triggered.append({**condition, "actual_value": actual})

        if (self.condition_logic or "AND").upper() == "AND":
            passes = bool(conditions) and len(triggered) == len(conditions)
        else:
            passes = len(triggered) > 0

        return {"passes": passes, "triggered_conditions": triggered}

    def record_trigger(self, now: datetime = None):
        self.times_triggered = (self.times_triggered or 0) + 1
        self.last_triggered_at = now or datetime.utcnow()
