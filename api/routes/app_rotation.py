"""
App rotation admin endpoints
"""

from fastapi import APIRouter, Depends
from api.dependencies import get_current_user_id, get_graph_client
from core.exceptions import ResourceNotFoundError
from facebook.app_rotation import get_rotation_service
from facebook.backup_apps import validate_config, get_total_capacity, get_app_by_id
from facebook.graph_client import GraphAPIClient
from schemas.api import success_response
import logging

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/api/admin/app-rotation",
    tags=["App Rotation"],
    dependencies=[Depends(get_current_user_id)],
)


def rotation_health(available_apps: int) -> str:
    if available_apps == 0:
        return "critical"
    if available_apps == 1:
        return "warning"
    return "healthy"


@router.get("/status")
async def rotation_status():
    rotation = get_rotation_service()
    return success_response(summary=rotation.get_summary(), apps=rotation.get_status())


@router.get("/summary")
async def rotation_summary():
    return success_response(get_rotation_service().get_summary())


@router.get("/apps")
async def rotation_apps():
    return success_response(get_rotation_service().get_status())


@router.get("/stats")
async def rotation_stats(graph: GraphAPIClient = Depends(get_graph_client)):
    return success_response(graph.get_stats())


@router.post("/reset")
async def reset_rotation():
    rotation = get_rotation_service()
    rotation.force_reset()
    logger.warning("App rotation counters reset by admin request")
    return success_response(message="App usage counters reset", summary=rotation.get_summary())


@router.get("/app/{app_id}")
async def rotation_app(app_id: str):
    rotation = get_rotation_service()
    app = get_app_by_id(rotation.apps, app_id)
    if app is None:
        raise ResourceNotFoundError(f"App {app_id} not found", context={"app_id": app_id})
    return success_response(rotation.get_app_status(app))


@router.get("/health")
async def rotation_health_check():
    summary = get_rotation_service().get_summary()
    health = rotation_health(summary["availableApps"])
    if health != "healthy":
        logger.warning(f"App rotation health {health}: {summary['availableApps']} app(s) available")
    return success_response(
        health=health,
        availableApps=summary["availableApps"],
        totalApps=summary["totalApps"],
        minutesUntilReset=summary["minutesUntilReset"],
        adAccountLimited=summary["adAccountLimited"],
    )


@router.get("/config")
async def rotation_config():
    apps = get_rotation_service().apps
    valid, errors = validate_config(apps)
    return success_response(
        apps=[app.public_dict() for app in apps],
        valid=valid,
        errors=errors,
        totalCapacity=get_total_capacity(apps),
    )
