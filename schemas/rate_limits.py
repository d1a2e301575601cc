"""
Request / response schemas for rate limit administration and the request queue
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, Any, Dict
from datetime import datetime
from models.request_queue import QueuedRequest


class SystemUserCreate(BaseModel):
    """Body of POST /api/rate-limits/system-users"""
    name: str = Field(..., min_length=1, max_length=255)
    system_user_id: str = Field(..., alias="systemUserId", min_length=1)
    access_token: str = Field(..., alias="accessToken", min_length=1)
    business_manager_id: str = Field(..., alias="businessManagerId", min_length=1)

    @validator("name", "system_user_id", "business_manager_id")
    def strip_value(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    class Config:
        populate_by_name = True


class InternalAccountCreate(BaseModel):
    """Body of POST /api/rate-limits/internal-accounts"""
    ad_account_id: str = Field(..., alias="adAccountId", min_length=1)
    business_manager_id: str = Field(..., alias="businessManagerId", min_length=1)
    business_manager_name: Optional[str] = Field(None, alias="businessManagerName", max_length=255)

    @validator("ad_account_id")
    def normalize_account(cls, v):
        v = v.strip()
        return v if v.startswith("act_") else f"act_{v}"

    class Config:
        populate_by_name = True


def serialize_queued_request(queued: QueuedRequest) -> Dict[str, Any]:
    """Queue row as returned to clients (never includes the token)."""

    def _iso(value: Optional[datetime]):
        return value.isoformat() if value else None

    return {
        "id": queued.id,
        "userId": queued.user_id,
        "adAccountId": queued.ad_account_id,
        "actionType": queued.action_type.value,
        "status": queued.status.value,
        "priority": queued.priority,
        "attempts": queued.attempts,
        "maxAttempts": queued.max_attempts,
        "processAfter": _iso(queued.process_after),
        "processedAt": _iso(queued.processed_at),
        "error": queued.error,
        "result": queued.result,
        "createdAt": _iso(queued.created_at),
    }
