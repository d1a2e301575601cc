"""
Automation rules: evaluation, CRUD and action approval.

Rules never touch campaigns directly. A passing rule creates
``intel_automation_actions`` rows (or a notification for ``notify``);
only approved actions are executed, by ``intelligence.action_executor``.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from core.exceptions import ResourceNotFoundError, ValidationError
from models.base import (
    AutomationActionStatus,
    AutomationActionType,
    EntityType,
    NotificationPriority,
    NotificationType,
    RuleType,
)
from models.intel_automation_action import IntelAutomationAction
from models.intel_automation_rule import IntelAutomationRule, SUPPORTED_OPERATORS
from models.intel_notification import IntelNotification
from models.intel_performance_snapshot import IntelPerformanceSnapshot
from services.notifications import NotificationService

logger = logging.getLogger(__name__)

ACTION_EXPIRY = timedelta(hours=24)
RULE_ENTITY_TYPES = ("campaign", "adset", "ad", "all")
EDITABLE_FIELDS = (
    "name",
    "description",
    "ad_account_id",
    "rule_type",
    "entity_type",
    "conditions",
    "condition_logic",
    "actions",
    "is_active",
    "requires_approval",
    "cooldown_hours",
    "evaluation_window_hours",
)

DEFAULT_RULE_TEMPLATES: List[Dict[str, Any]] = [
    {
        "name": "Stop Loss - High CPA",
        "description": "Pause ad sets spending over $50 with CPA above target",
        "rule_type": "loss_prevention",
        "entity_type": "adset",
        "conditions": [
            {"metric": "spend", "operator": ">=", "value": 50},
            {"metric": "cpa", "operator": ">", "value": 100},
        ],
        "condition_logic": "AND",
        "actions": [{"action": "pause"}, {"action": "notify"}],
        "requires_approval": True,
        "cooldown_hours": 24,
        "evaluation_window_hours": 24,
    },
    {
        "name": "Scale Winners - High ROAS",
        "description": "Increase budget on ad sets with ROAS > 200%",
        "rule_type": "scaling",
        "entity_type": "adset",
        "conditions": [
            {"metric": "roas", "operator": ">", "value": 200},
            {"metric": "spend", "operator": ">=", "value": 100},
        ],
        "condition_logic": "AND",
        "actions": [{"action": "increase_budget", "params": {"percentage": 20}}],
        "requires_approval": True,
        "cooldown_hours": 48,
        "evaluation_window_hours": 72,
    },
    {
        "name": "Learning Phase Alert",
        "description": "Alert when ad set enters learning limited",
        "rule_type": "learning_protection",
        "entity_type": "adset",
        "conditions": [
            {"metric": "learning_phase", "operator": "==", "value": "LEARNING_LIMITED"},
        ],
        "condition_logic": "AND",
        "actions": [{"action": "notify"}],
        "requires_approval": False,
        "cooldown_hours": 24,
        "evaluation_window_hours": 1,
    },
    {
        "name": "Creative Fatigue Detection",
        "description": "Alert when frequency is high and CTR dropping",
        "rule_type": "fatigue_detection",
        "entity_type": "ad",
        "conditions": [
            {"metric": "frequency", "operator": ">", "value": 3},
            {"metric": "ctr", "operator": "<", "value": 1},
        ],
        "condition_logic": "AND",
        "actions": [{"action": "notify"}],
        "requires_approval": False,
        "cooldown_hours": 48,
        "evaluation_window_hours": 168,
    },
    {
        "name": "Zero Conversion Alert",
        "description": "Alert on high spend with zero conversions",
        "rule_type": "loss_prevention",
        "entity_type": "adset",
        "conditions": [
            {"metric": "spend", "operator": ">=", "value": 100},
            {"metric": "conversions", "operator": "==", "value": 0},
        ],
        "condition_logic": "AND",
        "actions": [{"action": "pause"}, {"action": "notify"}],
        "requires_approval": True,
        "cooldown_hours": 24,
        "evaluation_window_hours": 24,
    },
]


def validate_rule_data(data: Dict[str, Any], partial: bool = False) -> None:
    """
    Raises:
        ValidationError: Missing or malformed conditions / actions
    """
    if not partial or "conditions" in data:
        conditions = data.get("conditions")
        if not conditions:
            raise ValidationError("At least one condition is required", context={"field_name": "conditions"})
        for condition in conditions:
            if not isinstance(condition, dict) or not condition.get("metric") or not condition.get("operator") \
                    or "value" not in condition or condition["value"] is None:
                raise ValidationError(
                    "Invalid condition format. Required: metric, operator, value",
                    context={"field_name": "conditions"}
                )
            if condition["operator"] not in SUPPORTED_OPERATORS:
                raise ValidationError(
                    f"Unsupported operator: {condition['operator']}",
                    context={"field_name": "conditions"}
                )
            if condition["operator"] == "between" and (
                not isinstance(condition["value"], (list, tuple)) or len(condition["value"]) != 2
            ):
                raise ValidationError("'between' requires a [low, high] value", context={"field_name": "conditions"})

    if not partial or "actions" in data:
        actions = data.get("actions")
        if not actions:
            raise ValidationError("At least one action is required", context={"field_name": "actions"})
        valid_actions = {a.value for a in AutomationActionType}
        for action in actions:
            if not isinstance(action, dict) or action.get("action") not in valid_actions:
                raise ValidationError(
                    f"Invalid action: {action.get('action') if isinstance(action, dict) else action}",
                    context={"field_name": "actions"}
                )

    if "condition_logic" in data and str(data["condition_logic"]).upper() not in ("AND", "OR"):
        raise ValidationError("condition_logic must be AND or OR", context={"field_name": "condition_logic"})
    if "entity_type" in data and data["entity_type"] not in RULE_ENTITY_TYPES:
        raise ValidationError(
            f"entity_type must be one of {', '.join(RULE_ENTITY_TYPES)}",
            context={"field_name": "entity_type"}
        )
    if "rule_type" in data:
        try:
            RuleType(data["rule_type"])
        except ValueError:
            raise ValidationError(f"Invalid rule_type: {data['rule_type']}", context={"field_name": "rule_type"})


def trigger_reason(rule: IntelAutomationRule, triggered: List[Dict[str, Any]]) -> str:
    parts = []
    for condition in triggered:
        actual = condition["actual_value"]
        shown = f"{actual:.2f}" if isinstance(actual, (int, float)) and not isinstance(actual, bool) else actual
        parts.append(f"{condition['metric']} {condition['operator']} {condition['value']} (actual: {shown})")
    return f'Rule "{rule.name}" triggered: {", ".join(parts)}'


class AutomationRulesEngine:
    """Evaluates rules against the latest snapshots and manages rules / actions."""

    evaluation_in_progress = False

    def __init__(self, db_session: AsyncSession):
        self.db = db_session
        self.notifications = NotificationService(db_session)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    async def evaluate_all_rules(self) -> Optional[Dict[str, Any]]:
        cls = type(self)
        if cls.evaluation_in_progress:
            logger.info("Rule evaluation already in progress, skipping")
            return None

        cls.evaluation_in_progress = True
        try:
            result = await self.db.execute(
                select(IntelAutomationRule.user_id).where(IntelAutomationRule.is_active.is_(True)).distinct()
            )
            user_ids = [row[0] for row in result.all()]

            totals = {"rules_evaluated": 0, "actions_created": 0, "errors": []}
            for user_id in user_ids:
                user_result = await self.evaluate_user_rules(user_id)
                totals["rules_evaluated"] += user_result["rules_evaluated"]
                totals["actions_created"] += user_result["actions_created"]
                totals["errors"].extend(user_result["errors"])

            logger.info(
                f"Rule evaluation complete: {totals['rules_evaluated']} rules, "
                f"{totals['actions_created']} actions"
            )
            return totals
        finally:
            cls.evaluation_in_progress = False

    async def evaluate_user_rules(self, user_id: int) -> Dict[str, Any]:
        result = await self.db.execute(
            select(IntelAutomationRule).where(
                IntelAutomationRule.user_id == user_id,
                IntelAutomationRule.is_active.is_(True),
            )
        )
        rule_ids = [rule.id for rule in result.scalars().all()]
        totals = {"rules_evaluated": len(rule_ids), "actions_created": 0, "errors": []}

        for rule_id in rule_ids:
            try:
                # re-fetch: a rollback below expires everything loaded so far
                rule = await self.db.get(IntelAutomationRule, rule_id)
                totals["actions_created"] += await self.evaluate_rule(rule)
            except Exception as e:
                await self.db.rollback()
                logger.error(f"Error evaluating rule {rule_id}: {e}")
                totals["errors"].append({"rule_id": rule_id, "error": str(e)})

        return totals

    async def _latest_snapshots(self, rule: IntelAutomationRule) -> List[IntelPerformanceSnapshot]:
        since = datetime.utcnow() - timedelta(hours=rule.evaluation_window_hours or 24)
        query = select(IntelPerformanceSnapshot).where(
            IntelPerformanceSnapshot.user_id == rule.user_id,
            IntelPerformanceSnapshot.created_at >= since,
        )
        if rule.ad_account_id:
            query = query.where(IntelPerformanceSnapshot.ad_account_id == rule.ad_account_id)
        if rule.entity_type and rule.entity_type != "all":
            query = query.where(IntelPerformanceSnapshot.entity_type == EntityType(rule.entity_type))
        else:
            query = query.where(
                IntelPerformanceSnapshot.entity_type.in_([EntityType.CAMPAIGN, EntityType.ADSET, EntityType.AD])
            )

        result = await self.db.execute(
            query.order_by(
                IntelPerformanceSnapshot.snapshot_date.desc(),
                IntelPerformanceSnapshot.snapshot_hour.desc(),
                IntelPerformanceSnapshot.id.desc(),
            )
        )

        latest: Dict[tuple, IntelPerformanceSnapshot] = {}
        for snapshot in result.scalars().all():
            latest.setdefault((snapshot.entity_type, snapshot.entity_id), snapshot)
        return list(latest.values())

    async def is_on_cooldown(self, rule: IntelAutomationRule, entity_id: str) -> bool:
        """An action or rule notification for this entity within ``cooldown_hours``."""
        if not rule.cooldown_hours:
            return False
        since = datetime.utcnow() - timedelta(hours=rule.cooldown_hours)

        action = await self.db.execute(
            select(IntelAutomationAction.id).where(
                IntelAutomationAction.rule_id == rule.id,
                IntelAutomationAction.entity_id == entity_id,
                IntelAutomationAction.created_at >= since,
            ).limit(1)
        )
        if action.first() is not None:
            return True

        notification = await self.db.execute(
            select(IntelNotification.id).where(
                IntelNotification.user_id == rule.user_id,
                IntelNotification.type == NotificationType.RULE_TRIGGERED,
                IntelNotification.entity_id == entity_id,
                IntelNotification.title == f"Rule Triggered: {rule.name}",
                IntelNotification.created_at >= since,
            ).limit(1)
        )
        return notification.first() is not None

    async def evaluate_rule(self, rule: IntelAutomationRule) -> int:
        """Returns the number of entities the rule fired for."""
        fired = 0
        for snapshot in await self._latest_snapshots(rule):
            evaluation = rule.evaluate_conditions(snapshot.metrics())
            if not evaluation["passes"]:
                continue
            if await self.is_on_cooldown(rule, snapshot.entity_id):
                continue
            await self.create_actions_from_rule(rule, snapshot, evaluation["triggered_conditions"])
            fired += 1

        if fired:
            rule.record_trigger()
        await self.db.commit()
        return fired

    async def create_actions_from_rule(
        self,
        rule: IntelAutomationRule,
        snapshot: IntelPerformanceSnapshot,
        triggered: List[Dict[str, Any]],
    ) -> List[IntelAutomationAction]:
        reason = trigger_reason(rule, triggered)
        expires_at = datetime.utcnow() + ACTION_EXPIRY if rule.requires_approval else None
        created = []

        for config in rule.actions or []:
            action_type = AutomationActionType(config["action"])

            if action_type == AutomationActionType.NOTIFY:
                await self.notifications.create(
                    user_id=rule.user_id,
                    type=NotificationType.RULE_TRIGGERED,
                    title=f"Rule Triggered: {rule.name}",
                    message=reason,
                    entity_type=snapshot.entity_type.value,
                    entity_id=snapshot.entity_id,
                    metadata={"rule_id": rule.id, "rule_name": rule.name, "metrics": triggered},
                    commit=False,
                )
                continue

            action = IntelAutomationAction(
                user_id=rule.user_id,
                rule_id=rule.id,
                ad_account_id=snapshot.ad_account_id,
                entity_type=snapshot.entity_type.value,
                entity_id=snapshot.entity_id,
                entity_name=snapshot.entity_name,
                action_type=action_type,
                action_params=config.get("params"),
                status=AutomationActionStatus.PENDING_APPROVAL if rule.requires_approval else AutomationActionStatus.APPROVED,
                trigger_reason=reason,
                trigger_metrics=triggered,
                expires_at=expires_at,
            )
            if not rule.requires_approval:
                action.approved_at = datetime.utcnow()
            self.db.add(action)
            await self.db.flush()
            created.append(action)

            if rule.requires_approval:
                await self.notifications.create(
                    user_id=rule.user_id,
                    type=NotificationType.ACTION_PENDING,
                    priority=NotificationPriority.HIGH,
                    title="Action Requires Approval",
                    message=action.description(),
                    entity_type=action.entity_type,
                    entity_id=action.entity_id,
                    action_id=action.id,
                    action_buttons=[
                        {"label": "Approve", "action": "approve", "style": "primary"},
                        {"label": "Reject", "action": "reject", "style": "secondary"},
                    ],
                    metadata={"trigger_reason": reason},
                    expires_at=expires_at,
                    commit=False,
                )

            logger.info(f"Created action {action_type.value} on {snapshot.entity_type.value} {snapshot.entity_id}")

        return created

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    async def create_rule(self, user_id: int, data: Dict[str, Any]) -> IntelAutomationRule:
        validate_rule_data(data)
        values = {key: data[key] for key in EDITABLE_FIELDS if key in data}
        if "rule_type" in values:
            values["rule_type"] = RuleType(values["rule_type"])
        if "condition_logic" in values:
            values["condition_logic"] = str(values["condition_logic"]).upper()

        rule = IntelAutomationRule(user_id=user_id, **values)
        self.db.add(rule)
        await self.db.commit()
        await self.db.refresh(rule)
        logger.info(f"Rule {rule.id} ({rule.name}) created for user {user_id}")
        return rule

    async def get_rule(self, user_id: int, rule_id: int) -> IntelAutomationRule:
        rule = await self.db.get(IntelAutomationRule, rule_id)
        if rule is None or rule.user_id != user_id:
            raise ResourceNotFoundError("Rule not found", context={"rule_id": rule_id})
        return rule

    async def update_rule(self, user_id: int, rule_id: int, data: Dict[str, Any]) -> IntelAutomationRule:
        rule = await self.get_rule(user_id, rule_id)
        validate_rule_data(data, partial=True)

        for key in EDITABLE_FIELDS:
            if key not in data:
                continue
            value = data[key]
            if key == "rule_type":
                value = RuleType(value)
            elif key == "condition_logic":
                value = str(value).upper()
            setattr(rule, key, value)

        await self.db.commit()
        await self.db.refresh(rule)
        return rule

    async def delete_rule(self, user_id: int, rule_id: int) -> None:
        rule = await self.get_rule(user_id, rule_id)
        await self.db.execute(
            update(IntelAutomationAction).where(IntelAutomationAction.rule_id == rule.id).values(rule_id=None)
        )
        await self.db.delete(rule)
        await self.db.commit()

    async def get_rules_for_user(
        self,
        user_id: int,
        active_only: bool = False,
        rule_type: Optional[RuleType] = None,
    ) -> List[IntelAutomationRule]:
        query = select(IntelAutomationRule).where(IntelAutomationRule.user_id == user_id)
        if active_only:
            query = query.where(IntelAutomationRule.is_active.is_(True))
        if rule_type is not None:
            query = query.where(IntelAutomationRule.rule_type == rule_type)
        result = await self.db.execute(query.order_by(IntelAutomationRule.created_at.desc(), IntelAutomationRule.id.desc()))
        return list(result.scalars().all())

    @staticmethod
    def get_default_rule_templates() -> List[Dict[str, Any]]:
        return [dict(template) for template in DEFAULT_RULE_TEMPLATES]

    async def get_rule_stats(self, user_id: int) -> Dict[str, Any]:
        rules = await self.get_rules_for_user(user_id)
        by_type: Dict[str, int] = {}
        for rule in rules:
            by_type[rule.rule_type.value] = by_type.get(rule.rule_type.value, 0) + 1

        return {
            "total_rules": len(rules),
            "active_rules": sum(1 for r in rules if r.is_active),
            "by_type": by_type,
            "total_triggers": sum(r.times_triggered or 0 for r in rules),
        }

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def get_pending_actions(self, user_id: int, limit: int = 50) -> List[IntelAutomationAction]:
        now = datetime.utcnow()
        result = await self.db.execute(
            select(IntelAutomationAction)
            .where(
                IntelAutomationAction.user_id == user_id,
                IntelAutomationAction.status == AutomationActionStatus.PENDING_APPROVAL,
                (IntelAutomationAction.expires_at.is_(None)) | (IntelAutomationAction.expires_at > now),
            )
            .order_by(IntelAutomationAction.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def _get_action(self, user_id: int, action_id: int) -> IntelAutomationAction:
        action = await self.db.get(IntelAutomationAction, action_id)
        if action is None or action.user_id != user_id:
            raise ResourceNotFoundError("Action not found", context={"action_id": action_id})
        return action

    async def approve_action(self, user_id: int, action_id: int) -> IntelAutomationAction:
        action = await self._get_action(user_id, action_id)
        if not action.is_valid():
            raise ValidationError(
                f"Action cannot be approved (status: {action.status.value})",
                context={"action_id": action_id}
            )
        action.approve(user_id)
        await self.db.commit()
        logger.info(f"Action {action_id} approved by user {user_id}")
        return action

    async def reject_action(self, user_id: int, action_id: int, reason: Optional[str] = None) -> IntelAutomationAction:
        action = await self._get_action(user_id, action_id)
        if action.status != AutomationActionStatus.PENDING_APPROVAL:
            raise ValidationError(
                f"Action cannot be rejected (status: {action.status.value})",
                context={"action_id": action_id}
            )
        action.reject(user_id, reason)
        await self.db.commit()
        logger.info(f"Action {action_id} rejected by user {user_id}")
        return action

    async def expire_old_actions(self) -> int:
        result = await self.db.execute(
            update(IntelAutomationAction)
            .where(
                IntelAutomationAction.status == AutomationActionStatus.PENDING_APPROVAL,
                IntelAutomationAction.expires_at < datetime.utcnow(),
            )
            .values(status=AutomationActionStatus.EXPIRED)
        )
        await self.db.commit()
        expired = result.rowcount or 0
        if expired:
            logger.info(f"Expired {expired} pending actions")
        return expired


def serialize_rule(rule: IntelAutomationRule) -> Dict[str, Any]:
    return {
        "id": rule.id,
        "name": rule.name,
        "description": rule.description,
        "ad_account_id": rule.ad_account_id,
        "rule_type": rule.rule_type.value,
        "entity_type": rule.entity_type,
        "conditions": rule.conditions,
        "condition_logic": rule.condition_logic,
        "actions": rule.actions,
        "is_active": rule.is_active,
        "requires_approval": rule.requires_approval,
        "cooldown_hours": rule.cooldown_hours,
        "evaluation_window_hours": rule.evaluation_window_hours,
        "times_triggered": rule.times_triggered,
        "last_triggered_at": rule.last_triggered_at.isoformat() if rule.last_triggered_at else None,
    }


def serialize_action(action: IntelAutomationAction) -> Dict[str, Any]:
    def _iso(value):
        return value.isoformat() if value else None

    return {
        "id": action.id,
        "rule_id": action.rule_id,
        "ad_account_id": action.ad_account_id,
        "entity_type": action.entity_type,
        "entity_id": action.entity_id,
        "entity_name": action.entity_name,
        "action_type": action.action_type.value,
        "action_params": action.action_params,
        "status": action.status.value,
        "description": action.description(),
        "trigger_reason": action.trigger_reason,
        "trigger_metrics": action.trigger_metrics,
        "approved_at": _iso(action.approved_at),
        "executed_at": _iso(action.executed_at),
        "execution_result": action.execution_result,
        "error_message": action.error_message,
        "expires_at": _iso(action.expires_at),
        "created_at": _iso(action.created_at),
    }
