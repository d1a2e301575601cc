"""
Unit tests for approved action execution and notifications
"""

import pytest
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock
from sqlalchemy import select
from core.exceptions import FacebookApiError, ResourceNotFoundError, ValidationError
from core.security import decrypt_token, encrypt_token, mask_token
from models.base import AutomationActionStatus, AutomationActionType, NotificationType
from models.intel_automation_action import IntelAutomationAction
from models.intel_notification import IntelNotification
from intelligence.action_executor import ActionExecutor, calculate_new_budget
from services.notifications import NotificationService


@pytest.fixture
def graph():
    graph = MagicMock()
    graph.update_entity = AsyncMock(return_value={"success": True})
    graph.get_entity = AsyncMock(return_value={"id": "adset_1", "daily_budget": "5000"})
    return graph


async def approved_action(session, action_type=AutomationActionType.PAUSE, params=None):
    action = IntelAutomationAction(
        user_id=1,
        ad_account_id="act_123",
        entity_type="adset",
        entity_id="adset_1",
        entity_name="Prospecting",
        action_type=action_type,
        action_params=params,
        status=AutomationActionStatus.APPROVED,
        approved_at=datetime.utcnow(),
    )
    session.add(action)
    await session.commit()
    return action


class TestBudgetCalculation:
    """Test budget arithmetic (cents)"""

    def test_percentage_increase(self):
        assert calculate_new_budget(5000, {"percentage": 20}, "increase") == 6000

    def test_amount_decrease(self):
        assert calculate_new_budget(5000, {"amount": 10}, "decrease") == 4000

    def test_bounds(self):
        assert calculate_new_budget(5000, {"percentage": 50, "max_budget": 60}, "increase") == 6000
        assert calculate_new_budget(5000, {"percentage": 90, "min_budget": 20}, "decrease") == 2000

    def test_never_below_one_dollar(self):
        assert calculate_new_budget(150, {"amount": 5}, "decrease") == 100

    def test_requires_percentage_or_amount(self):
        with pytest.raises(ValidationError):
            calculate_new_budget(5000, {}, "increase")


class TestActionExecutor:
    """Test execution of approved actions"""

    @pytest.mark.asyncio
    async def test_pause_executes_and_notifies(self, db_session, graph, add_auth):
        await add_auth(db_session)
        await approved_action(db_session)

        results = await ActionExecutor(db_session, graph, dry_run=False).process_approved_actions()

        assert results == {"processed": 1, "success": 1, "failed": 0}
        graph.update_entity.assert_awaited_once_with("adset_1", {"status": "PAUSED"}, "user-token-abcdef123456")

        action = (await db_session.execute(select(IntelAutomationAction))).scalar_one()
        assert action.status == AutomationActionStatus.EXECUTED
        assert action.execution_result["action"] == "paused"

        notification = (await db_session.execute(select(IntelNotification))).scalar_one()
        assert notification.type == NotificationType.ACTION_EXECUTED

    @pytest.mark.asyncio
    async def test_budget_increase(self, db_session, graph, add_auth):
        await add_auth(db_session)
        action = await approved_action(db_session, AutomationActionType.INCREASE_BUDGET, {"percentage": 20})

        assert await ActionExecutor(db_session, graph, dry_run=False).execute_action(action) is True

        graph.update_entity.assert_awaited_once_with("adset_1", {"daily_budget": "6000"}, "user-token-abcdef123456")
        assert action.execution_result["previous_budget"] == 50.0
        assert action.execution_result["new_budget"] == 60.0

    @pytest.mark.asyncio
    async def test_dry_run_does_not_call_graph(self, db_session, graph, add_auth):
        await add_auth(db_session)
        action = await approved_action(db_session)

        await ActionExecutor(db_session, graph, dry_run=True).execute_action(action)

        graph.update_entity.assert_not_awaited()
        assert action.status == AutomationActionStatus.EXECUTED
        assert action.execution_result["dry_run"] is True

    @pytest.mark.asyncio
    async def test_graph_failure_marks_failed(self, db_session, graph, add_auth):
        await add_auth(db_session)
        action = await approved_action(db_session)
        graph.update_entity.side_effect = FacebookApiError("Ad set is archived")

        assert await ActionExecutor(db_session, graph, dry_run=False).execute_action(action) is False

        assert action.status == AutomationActionStatus.FAILED
        assert action.error_message == "Ad set is archived"
        notification = (await db_session.execute(select(IntelNotification))).scalar_one()
        assert notification.type == NotificationType.ACTION_FAILED

    @pytest.mark.asyncio
    async def test_missing_login_marks_failed(self, db_session, graph):
        action = await approved_action(db_session)

        assert await ActionExecutor(db_session, graph, dry_run=False).execute_action(action) is False
        assert action.error_message == "No valid access token found"

    @pytest.mark.asyncio
    async def test_pending_actions_are_never_executed(self, db_session, graph, add_auth):
        await add_auth(db_session)
        action = await approved_action(db_session)
        action.status = AutomationActionStatus.PENDING_APPROVAL
        await db_session.commit()

        results = await ActionExecutor(db_session, graph, dry_run=False).process_approved_actions()

        assert results["processed"] == 0
        graph.update_entity.assert_not_awaited()


class TestNotifications:
    """Test the notification service"""

    @pytest.mark.asyncio
    async def test_list_and_mark_read(self, db_session):
        service = NotificationService(db_session)
        first = await service.create(1, NotificationType.ALERT, "One", "first")
        await service.create(1, NotificationType.ALERT, "Two", "second")
        await service.create(2, NotificationType.ALERT, "Other", "other user")

        listing = await service.list_for_user(1)
        assert len(listing["notifications"]) == 2
        assert listing["unread_count"] == 2

        await service.mark_read(1, first.id)
        unread = await service.list_for_user(1, unread_only=True)
        assert [n.title for n in unread["notifications"]] == ["Two"]
        assert unread["unread_count"] == 1

    @pytest.mark.asyncio
    async def test_mark_read_other_user(self, db_session):
        service = NotificationService(db_session)
        notification = await service.create(1, NotificationType.ALERT, "One", "first")

        with pytest.raises(ResourceNotFoundError):
            await service.mark_read(2, notification.id)

    @pytest.mark.asyncio
    async def test_cleanup_old(self, db_session):
        service = NotificationService(db_session)
        old = await service.create(1, NotificationType.ALERT, "Old", "old")
        old.created_at = datetime.utcnow() - timedelta(days=40)
        await db_session.commit()
        await service.create(1, NotificationType.ALERT, "New", "new")

        assert await service.cleanup_old() == 1


class TestTokenSecurity:
    """Test token encryption helpers"""

    def test_encrypt_decrypt(self):
        encrypted = encrypt_token("user-token-abcdef123456")

        assert encrypted != "user-token-abcdef123456"
        assert decrypt_token(encrypted) == "user-token-abcdef123456"

    def test_wrong_key_fails(self):
        encrypted = encrypt_token("user-token-abcdef123456", secret="one")

        with pytest.raises(ValidationError):
            decrypt_token(encrypted, secret="two")

    def test_mask_token(self):
        assert mask_token("EAAGabcdefghijklmn1234") == "EAAGab...1234"
        assert mask_token("short") == "***"
        assert mask_token(None) is None
