"""
Executes approved automation actions against the Graph API.

This is the only intelligence component that changes campaigns, and it
only ever picks up actions whose status is ``approved``.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from core.config import settings
from core.exceptions import AppException, InvalidTokenError, ValidationError
from facebook.graph_client import GraphAPIClient
from models.base import (
    AutomationActionStatus,
    AutomationActionType,
    NotificationPriority,
    NotificationType,
)
from models.intel_automation_action import IntelAutomationAction
from services.accounts import get_active_auth
from services.notifications import NotificationService

logger = logging.getLogger(__name__)

BATCH_LIMIT = 10
MIN_BUDGET_CENTS = 100


def calculate_new_budget(current: int, params: Dict[str, Any], direction: str) -> int:
    """
    New budget in cents.

    ``percentage`` wins over ``amount`` (dollars). ``min_budget`` /
    ``max_budget`` are dollars; the result is never below $1.
    """
    if params.get("percentage"):
        factor = params["percentage"] / 100
        multiplier = 1 + factor if direction == "increase" else 1 - factor
        new_budget = round(current * multiplier)
    elif params.get("amount"):
        delta = round(params["amount"] * 100)
        new_budget = current + delta if direction == "increase" else current - delta
    else:
        raise ValidationError("Budget adjustment requires percentage or amount")

    if params.get("min_budget"):
        new_budget = max(new_budget, round(params["min_budget"] * 100))
    if params.get("max_budget"):
        new_budget = min(new_budget, round(params["max_budget"] * 100))

    return max(MIN_BUDGET_CENTS, new_budget)


class ActionExecutor:
    executing = False

    def __init__(self, db_session: AsyncSession, graph_client: Optional[GraphAPIClient] = None, dry_run: Optional[bool] = None):
        self.db = db_session
        self.graph = graph_client or GraphAPIClient()
        self.dry_run = settings.INTEL_DRY_RUN if dry_run is None else dry_run
        self.notifications = NotificationService(db_session)

    async def process_approved_actions(self) -> Optional[Dict[str, int]]:
        cls = type(self)
        if cls.executing:
            logger.info("Action execution already in progress, skipping")
            return None

        cls.executing = True
        try:
            result = await self.db.execute(
                select(IntelAutomationAction)
                .where(IntelAutomationAction.status == AutomationActionStatus.APPROVED)
                .order_by(IntelAutomationAction.approved_at.asc())
                .limit(BATCH_LIMIT)
            )
            actions = list(result.scalars().all())
            results = {"processed": 0, "success": 0, "failed": 0}

            for action in actions:
                if await self.execute_action(action):
                    results["success"] += 1
                else:
                    results["failed"] += 1
                results["processed"] += 1

            if actions:
                logger.info(f"Action executor: {results['success']} success, {results['failed']} failed")
            return results
        finally:
            cls.executing = False

    async def execute_action(self, action: IntelAutomationAction) -> bool:
        """Run one approved action. Returns False when it was marked failed."""
        logger.info(f"Executing {action.action_type.value} on {action.entity_type} {action.entity_id}")

        try:
            result = await self._perform(action)
        except AppException as e:
            logger.error(f"Action {action.id} failed: {e.message}")
            action.mark_failed(e.message)
            await self.notifications.create(
                user_id=action.user_id,
                type=NotificationType.ACTION_FAILED,
                priority=NotificationPriority.HIGH,
                title="Action Failed",
                message=f"{action.description()} failed: {e.message}",
                entity_type=action.entity_type,
                entity_id=action.entity_id,
                action_id=action.id,
                commit=False,
            )
            await self.db.commit()
            return False

        action.mark_executed(result)
        await self.notifications.create(
            user_id=action.user_id,
            type=NotificationType.ACTION_EXECUTED,
            priority=NotificationPriority.LOW,
            title="Action Executed Successfully",
            message=f'{action.action_type.value} on {action.entity_type} "{action.entity_name or action.entity_id}" completed',
            entity_type=action.entity_type,
            entity_id=action.entity_id,
            action_id=action.id,
            metadata={"action_id": action.id, "result": result},
            commit=False,
        )
        await self.db.commit()
        return True

    async def _perform(self, action: IntelAutomationAction) -> Dict[str, Any]:
        auth = await get_active_auth(self.db, action.user_id)
        if auth is None or not auth.access_token:
            raise InvalidTokenError("No valid access token found", context={"user_id": action.user_id})
        token = auth.access_token

        if self.dry_run:
            logger.info(f"[DRY RUN] Would execute {action.action_type.value} on {action.entity_id}")
            return {"dry_run": True, "would_execute": action.action_type.value, "at": datetime.utcnow().isoformat()}

        action_type = action.action_type
        if action_type == AutomationActionType.PAUSE:
            response = await self.graph.update_entity(action.entity_id, {"status": "PAUSED"}, token)
            return {"success": bool(response.get("success", True)), "action": "paused"}
        if action_type == AutomationActionType.ACTIVATE:
            response = await self.graph.update_entity(action.entity_id, {"status": "ACTIVE"}, token)
            return {"success": bool(response.get("success", True)), "action": "activated"}
        if action_type in (AutomationActionType.INCREASE_BUDGET, AutomationActionType.DECREASE_BUDGET):
            direction = "increase" if action_type == AutomationActionType.INCREASE_BUDGET else "decrease"
            return await self.adjust_budget(action.entity_id, action.action_params or {}, direction, token)
        if action_type == AutomationActionType.NOTIFY:
            return {"success": True, "action": "notification_sent"}

        raise ValidationError(f"Unsupported action type: {action_type.value}", context={"action_id": action.id})

    async def adjust_budget(self, entity_id: str, params: Dict[str, Any], direction: str, token: str) -> Dict[str, Any]:
        entity = await self.graph.get_entity(entity_id, ["daily_budget", "lifetime_budget"], token)
        budget_field = "daily_budget" if entity.get("daily_budget") else "lifetime_budget"
        current = int(entity.get(budget_field) or 0)
        if current == 0:
            raise ValidationError("Cannot adjust budget: no current budget set", context={"entity_id": entity_id})

        new_budget = calculate_new_budget(current, params, direction)
        response = await self.graph.update_entity(entity_id, {budget_field: str(new_budget)}, token)

        return {
            "success": bool(response.get("success", True)),
            "action": "budget_adjusted",
            "budget_field": budget_field,
            "previous_budget": current / 100,
            "new_budget": new_budget / 100,
            "change": (new_budget - current) / 100,
        }
