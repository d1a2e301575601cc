"""
Health check endpoint with database, app rotation and queue status
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from api.dependencies import get_db
from core.config import settings
from facebook.app_rotation import get_rotation_service
from schemas.api import HealthCheckResponse, AppRotationHealth
from services.rate_limit import RateLimitService
from datetime import datetime
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(db: AsyncSession = Depends(get_db)):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - App rotation summary (available / exhausted apps)
    - Number of queued requests
    """

    # Check database connectivity
    db_connected = False

    try:
        await db.execute(text("SELECT 1"))
        db_connected = True
    except Exception as e:
        logger.error(f"Database connection failed: {str(e)}")

    summary = get_rotation_service().get_summary()
    rotation = AppRotationHealth(
        total_apps=summary["totalApps"],
        available_apps=summary["availableApps"],
        exhausted_apps=summary["exhaustedApps"],
        total_capacity=summary["totalCapacity"],
        minutes_until_reset=summary["minutesUntilReset"],
    )

    queued = 0
    if db_connected:
        try:
            queued = await RateLimitService(db).count_queued()
        except Exception as e:
            logger.error(f"Failed to count queued requests: {str(e)}")

    # Status calculation is handled by the validator in HealthCheckResponse
    return HealthCheckResponse(
        timestamp=datetime.utcnow(),
        database_connected=db_connected,
        app_rotation=rotation,
        queued_requests=queued,
        intelligence_enabled=settings.ENABLE_INTELLIGENCE,
    )
