"""
Campaign operations executed against the Graph API.

Shared by the campaign routes (immediate execution) and the queue
processor (replay of deferred requests), so a queued request runs exactly
the code path it would have run live.

``request_data`` layout: {"method", "path", "body": {...}}
"""

from typing import Any, Dict, List
from core.exceptions import AppException, ValidationError
from facebook.graph_client import GraphAPIClient
from models.base import ActionType
import logging

logger = logging.getLogger(__name__)

MAX_COPIES = 10
BATCH_ACTIONS = ("pause", "activate", "duplicate")
MONEY_FIELDS = ("daily_budget", "lifetime_budget", "spend_cap")
ACCOUNT_KEYS = ("adAccountId", "ad_account_id")


def clamp_copies(value: Any) -> int:
    try:
        copies = int(value)
    except (TypeError, ValueError):
        copies = 1
    return min(max(copies, 1), MAX_COPIES)


def to_cents(amount: Any) -> int:
    return int(round(float(amount) * 100))


def graph_payload(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Client fields as Graph API form values: account keys dropped, money in cents."""
    payload = {}
    for key, value in fields.items():
        if key in ACCOUNT_KEYS or value is None:
            continue
        payload[key] = to_cents(value) if key in MONEY_FIELDS else value
    return payload


def build_request_body(action_type: ActionType, path_params: Dict[str, Any], body: Dict[str, Any]) -> Dict[str, Any]:
    """
    The ``body`` that ``execute_action`` expects for a client request.

    Used both for live calls and for requests stored in the queue.
    """
    if action_type in (ActionType.UPDATE_CAMPAIGN, ActionType.UPDATE_ADSET, ActionType.UPDATE_AD):
        entity_id = path_params.get("campaign_id") or path_params.get("adset_id") or path_params.get("ad_id")
        return {"entity_id": entity_id, "updates": graph_payload(body)}

    if action_type == ActionType.DUPLICATE_CAMPAIGN:
        return {
            "campaign_id": path_params.get("campaign_id") or body.get("campaign_id"),
            "new_name": body.get("new_name"),
            "number_of_copies": clamp_copies(body.get("number_of_copies", 1)),
        }

    if action_type == ActionType.BATCH_OPERATION:
        return {"campaign_ids": body.get("campaign_ids") or [], "action": body.get("action")}

    return graph_payload(body)


async def execute_action(
    graph: GraphAPIClient,
    action_type: ActionType,
    ad_account_id: str,
    request_data: Dict[str, Any],
    access_token: str,
    rotate: bool = True,
) -> Dict[str, Any]:
    """
    Run one campaign operation.

    Raises:
        ValidationError: Unknown action type or malformed body
        FacebookApiError (and subclasses): Graph API failures
    """
    body = request_data.get("body") or {}

    if action_type == ActionType.CREATE_CAMPAIGN:
        created = await graph.create_campaign(ad_account_id, body, access_token, rotate=rotate)
        return {"campaign": created}

    if action_type == ActionType.CREATE_ADSET:
        created = await graph.create_adset(ad_account_id, body, access_token, rotate=rotate)
        return {"adset": created}

    if action_type == ActionType.CREATE_AD:
        created = await graph.create_ad(ad_account_id, body, access_token, rotate=rotate)
        return {"ad": created}

    if action_type in (ActionType.UPDATE_CAMPAIGN, ActionType.UPDATE_ADSET, ActionType.UPDATE_AD):
        entity_id = body.get("entity_id")
        updates = body.get("updates") or {}
        if not entity_id or not updates:
            raise ValidationError("entity_id and updates are required", context={"action_type": action_type.value})
        result = await graph.update_entity(entity_id, updates, access_token, rotate=rotate)
        return {"entity_id": entity_id, "updates": updates, "result": result}

    if action_type == ActionType.DUPLICATE_CAMPAIGN:
        return await _duplicate(graph, body, access_token, rotate)

    if action_type == ActionType.BATCH_OPERATION:
        return await _batch(graph, body, access_token, rotate)

    raise ValidationError(f"Unknown action type: {action_type}")


async def _duplicate(graph: GraphAPIClient, body: Dict[str, Any], access_token: str, rotate: bool) -> Dict[str, Any]:
    campaign_id = body.get("campaign_id")
    if not campaign_id:
        raise ValidationError("campaign_id is required", context={"field_name": "campaign_id"})

    copies = clamp_copies(body.get("number_of_copies"))
    base_name = body.get("new_name")
    created: List[Dict[str, Any]] = []

    for index in range(copies):
        name = base_name if copies == 1 or not base_name else f"{base_name} - Copy {index + 1}"
        copy = await graph.duplicate_campaign(campaign_id, access_token, new_name=name, rotate=rotate)
        created.append({"name": name, **(copy if isinstance(copy, dict) else {"result": copy})})

    logger.info(f"Duplicated campaign {campaign_id} {copies} time(s)")
    return {"original_campaign_id": campaign_id, "copies": created}


async def _batch(graph: GraphAPIClient, body: Dict[str, Any], access_token: str, rotate: bool) -> Dict[str, Any]:
    campaign_ids = body.get("campaign_ids") or []
    action = body.get("action")
    if not campaign_ids:
        raise ValidationError("Campaign IDs array is required", context={"field_name": "campaign_ids"})
    if action not in BATCH_ACTIONS:
        raise ValidationError("Invalid action. Must be pause, activate, or duplicate", context={"field_name": "action"})

    results = []
    errors = []
    for campaign_id in campaign_ids:
        try:
            if action == "duplicate":
                result = await graph.duplicate_campaign(campaign_id, access_token, rotate=rotate)
            else:
                status = "PAUSED" if action == "pause" else "ACTIVE"
                result = await graph.update_entity(campaign_id, {"status": status}, access_token, rotate=rotate)
            results.append({"campaign_id": campaign_id, "success": True, "result": result})
        except ValidationError:
            raise
        except AppException as e:
            # One failing campaign does not abort the rest of the batch
            logger.warning(f"Batch {action} failed for campaign {campaign_id}: {e}")
            errors.append({"campaign_id": campaign_id, "success": False, "error": e.message})

    return {
        "action": action,
        "processed": len(campaign_ids),
        "succeeded": len(results),
        "failed": len(errors),
        "results": results + errors,
    }
