"""
Unit tests for automation rules
"""

import pytest
from datetime import datetime, timedelta
from sqlalchemy import select
from core.exceptions import ResourceNotFoundError, ValidationError
from models.base import AutomationActionStatus, AutomationActionType, EntityType, NotificationType
from models.intel_automation_action import IntelAutomationAction
from models.intel_automation_rule import IntelAutomationRule
from models.intel_notification import IntelNotification
from models.intel_performance_snapshot import IntelPerformanceSnapshot
from intelligence.rules_engine import (
    AutomationRulesEngine,
    DEFAULT_RULE_TEMPLATES,
    trigger_reason,
    validate_rule_data,
)

STOP_LOSS = DEFAULT_RULE_TEMPLATES[0]


def loss_snapshot(entity_id="adset_1", spend=80.0, cpa=120.0):
    return IntelPerformanceSnapshot(
        user_id=1,
        ad_account_id="act_1",
        entity_type=EntityType.ADSET,
        entity_id=entity_id,
        entity_name="Prospecting",
        snapshot_date=datetime.utcnow().date(),
        snapshot_hour=datetime.utcnow().hour,
        spend=spend,
        conversions=1,
        cpa=cpa,
    )


async def all_rows(session, model):
    result = await session.execute(select(model))
    return list(result.scalars().all())


class TestConditions:
    """Test condition evaluation on the rule model"""

    def make_rule(self, conditions, logic="AND"):
        return IntelAutomationRule(name="Test", conditions=conditions, condition_logic=logic)

    def test_and_requires_every_condition(self):
        rule = self.make_rule([
            {"metric": "spend", "operator": ">=", "value": 50},
            {"metric": "cpa", "operator": ">", "value": 100},
        ])

        assert rule.evaluate_conditions({"spend": 60, "cpa": 150})["passes"] is True
        assert rule.evaluate_conditions({"spend": 60, "cpa": 90})["passes"] is False

    def test_missing_metric_fails_and(self):
        rule = self.make_rule([
            {"metric": "spend", "operator": ">=", "value": 50},
            {"metric": "cpa", "operator": ">", "value": 100},
        ])

        result = rule.evaluate_conditions({"spend": 60, "cpa": None})

        assert result["passes"] is False
        assert len(result["triggered_conditions"]) == 1

    def test_or_logic(self):
        rule = self.make_rule([
            {"metric": "roas", "operator": "<", "value": 50},
            {"metric": "frequency", "operator": ">", "value": 3},
        ], logic="OR")

        assert rule.evaluate_conditions({"roas": 200, "frequency": 4})["passes"] is True

    def test_between_and_string_comparison(self):
        rule = self.make_rule([
            {"metric": "ctr", "operator": "between", "value": [0.5, 1.0]},
            {"metric": "learning_phase", "operator": "==", "value": "LEARNING_LIMITED"},
        ])

        assert rule.evaluate_conditions({"ctr": 0.8, "learning_phase": "LEARNING_LIMITED"})["passes"] is True

    def test_empty_conditions_never_pass(self):
        assert self.make_rule([]).evaluate_conditions({"spend": 100})["passes"] is False

    def test_type_mismatch_does_not_match(self):
        rule = self.make_rule([{"metric": "learning_phase", "operator": ">", "value": 3}])

        assert rule.evaluate_conditions({"learning_phase": "LEARNING"})["passes"] is False

    def test_between_with_non_numeric_metric(self):
        rule = self.make_rule([{"metric": "learning_phase", "operator": "between", "value": [1, 5]}])

        assert rule.evaluate_conditions({"learning_phase": "LEARNING"})["passes"] is False

    def test_between_with_malformed_range(self):
        rule = self.make_rule([{"metric": "ctr", "operator": "between", "value": 3}])

        assert rule.evaluate_conditions({"ctr": 0.8})["passes"] is False

    def test_trigger_reason(self):
        rule = self.make_rule([])
        triggered = [{"metric": "cpa", "operator": ">", "value": 100, "actual_value": 120.456}]

        assert trigger_reason(rule, triggered) == 'Rule "Test" triggered: cpa > 100 (actual: 120.46)'


class TestValidation:
    """Test rule payload validation"""

    def test_templates_are_valid(self):
        for template in DEFAULT_RULE_TEMPLATES:
            validate_rule_data(template)

    @pytest.mark.parametrize("data", [
        {"conditions": [], "actions": [{"action": "pause"}]},
        {"conditions": [{"metric": "cpa", "operator": ">"}], "actions": [{"action": "pause"}]},
        {"conditions": [{"metric": "cpa", "operator": "~", "value": 1}], "actions": [{"action": "pause"}]},
        {"conditions": [{"metric": "cpa", "operator": "between", "value": 3}], "actions": [{"action": "pause"}]},
        {"conditions": [{"metric": "cpa", "operator": ">", "value": 1}], "actions": []},
        {"conditions": [{"metric": "cpa", "operator": ">", "value": 1}], "actions": [{"action": "explode"}]},
        {"conditions": [{"metric": "cpa", "operator": ">", "value": 1}], "actions": [{"action": "pause"}], "entity_type": "page"},
    ])
    def test_invalid_payloads(self, data):
        with pytest.raises(ValidationError):
            validate_rule_data(data)

    def test_partial_update_skips_missing_sections(self):
        validate_rule_data({"name": "Renamed"}, partial=True)


class TestRuleEvaluation:
    """Test rules creating actions and notifications"""

    @pytest.mark.asyncio
    async def test_rule_creates_pending_action(self, db_session):
        engine = AutomationRulesEngine(db_session)
        rule = await engine.create_rule(1, dict(STOP_LOSS))
        db_session.add(loss_snapshot())
        await db_session.commit()

        totals = await engine.evaluate_all_rules()

        assert totals["actions_created"] == 1
        actions = await all_rows(db_session, IntelAutomationAction)
        assert len(actions) == 1
        assert actions[0].action_type == AutomationActionType.PAUSE
        assert actions[0].status == AutomationActionStatus.PENDING_APPROVAL
        assert actions[0].expires_at is not None

        notifications = await all_rows(db_session, IntelNotification)
        assert {n.type for n in notifications} == {NotificationType.ACTION_PENDING, NotificationType.RULE_TRIGGERED}

        refreshed = await engine.get_rule(1, rule.id)
        assert refreshed.times_triggered == 1

    @pytest.mark.asyncio
    async def test_cooldown_prevents_duplicate_actions(self, db_session):
        engine = AutomationRulesEngine(db_session)
        await engine.create_rule(1, dict(STOP_LOSS))
        db_session.add(loss_snapshot())
        await db_session.commit()

        await engine.evaluate_all_rules()
        second = await engine.evaluate_all_rules()

        assert second["actions_created"] == 0
        assert len(await all_rows(db_session, IntelAutomationAction)) == 1

    @pytest.mark.asyncio
    async def test_notify_only_rule(self, db_session):
        engine = AutomationRulesEngine(db_session)
        await engine.create_rule(1, {
            "name": "High spend",
            "conditions": [{"metric": "spend", "operator": ">", "value": 10}],
            "actions": [{"action": "notify"}],
            "requires_approval": False,
        })
        db_session.add(loss_snapshot())
        await db_session.commit()

        await engine.evaluate_all_rules()

        assert await all_rows(db_session, IntelAutomationAction) == []
        notifications = await all_rows(db_session, IntelNotification)
        assert len(notifications) == 1
        assert notifications[0].title == "Rule Triggered: High spend"
        assert notifications[0].entity_id == "adset_1"

        second = await engine.evaluate_all_rules()
        assert second["actions_created"] == 0

    @pytest.mark.asyncio
    async def test_rule_without_approval_creates_approved_action(self, db_session):
        engine = AutomationRulesEngine(db_session)
        await engine.create_rule(1, {**STOP_LOSS, "requires_approval": False, "actions": [{"action": "pause"}]})
        db_session.add(loss_snapshot())
        await db_session.commit()

        await engine.evaluate_all_rules()

        action = (await all_rows(db_session, IntelAutomationAction))[0]
        assert action.status == AutomationActionStatus.APPROVED
        assert action.approved_at is not None

    @pytest.mark.asyncio
    async def test_non_matching_snapshot(self, db_session):
        engine = AutomationRulesEngine(db_session)
        await engine.create_rule(1, dict(STOP_LOSS))
        db_session.add(loss_snapshot(cpa=20.0))
        await db_session.commit()

        totals = await engine.evaluate_all_rules()

        assert totals["rules_evaluated"] == 1
        assert totals["actions_created"] == 0


class TestRuleManagement:
    """Test CRUD and approval flow"""

    @pytest.mark.asyncio
    async def test_update_and_delete_rule(self, db_session):
        engine = AutomationRulesEngine(db_session)
        rule = await engine.create_rule(1, dict(STOP_LOSS))

        updated = await engine.update_rule(1, rule.id, {"name": "Renamed", "condition_logic": "or"})
        assert updated.name == "Renamed"
        assert updated.condition_logic == "OR"

        with pytest.raises(ResourceNotFoundError):
            await engine.update_rule(2, rule.id, {"name": "Stolen"})

        await engine.delete_rule(1, rule.id)
        assert await engine.get_rules_for_user(1) == []

    @pytest.mark.asyncio
    async def test_rule_stats(self, db_session):
        engine = AutomationRulesEngine(db_session)
        await engine.create_rule(1, dict(DEFAULT_RULE_TEMPLATES[0]))
        await engine.create_rule(1, {**DEFAULT_RULE_TEMPLATES[1], "is_active": False})

        stats = await engine.get_rule_stats(1)

        assert stats["total_rules"] == 2
        assert stats["active_rules"] == 1
        assert stats["by_type"] == {"loss_prevention": 1, "scaling": 1}

    async def _pending_action(self, session, expires_at=None):
        action = IntelAutomationAction(
            user_id=1,
            ad_account_id="act_1",
            entity_type="adset",
            entity_id="adset_1",
            action_type=AutomationActionType.PAUSE,
            status=AutomationActionStatus.PENDING_APPROVAL,
            expires_at=expires_at or datetime.utcnow() + timedelta(hours=24),
        )
        session.add(action)
        await session.commit()
        return action

    @pytest.mark.asyncio
    async def test_approve_action(self, db_session):
        action = await self._pending_action(db_session)
        engine = AutomationRulesEngine(db_session)

        approved = await engine.approve_action(1, action.id)

        assert approved.status == AutomationActionStatus.APPROVED
        assert approved.approved_by_user_id == 1
        with pytest.raises(ValidationError):
            await engine.approve_action(1, action.id)

    @pytest.mark.asyncio
    async def test_other_users_action_is_not_found(self, db_session):
        action = await self._pending_action(db_session)

        with pytest.raises(ResourceNotFoundError):
            await AutomationRulesEngine(db_session).approve_action(2, action.id)

    @pytest.mark.asyncio
    async def test_reject_action(self, db_session):
        action = await self._pending_action(db_session)

        rejected = await AutomationRulesEngine(db_session).reject_action(1, action.id, "Not now")

        assert rejected.status == AutomationActionStatus.REJECTED
        assert rejected.error_message == "Not now"

    @pytest.mark.asyncio
    async def test_expired_action_cannot_be_approved(self, db_session):
        action = await self._pending_action(db_session, expires_at=datetime.utcnow() - timedelta(minutes=1))
        engine = AutomationRulesEngine(db_session)

        assert await engine.get_pending_actions(1) == []
        with pytest.raises(ValidationError):
            await engine.approve_action(1, action.id)

        assert await engine.expire_old_actions() == 1
