"""
Pydantic schemas shared by all API endpoints
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any, Generic, TypeVar
from datetime import datetime

T = TypeVar("T")


class APIResponse(BaseModel, Generic[T]):
    success: bool = True
    data: T


def success_response(data: Any = None, **extra: Any) -> Dict[str, Any]:
    """``{success: true, data, ...extra}`` envelope used by every route."""
    body: Dict[str, Any] = {"success": True}
    if data is not None:
        body["data"] = data
    body.update(extra)
    return body


# ============================================================================
# Health Check Schemas
# ============================================================================

class AppRotationHealth(BaseModel):
    """App rotation summary for health check"""
    total_apps: int = 0
    available_apps: int = 0
    exhausted_apps: int = 0
    total_capacity: int = 0
    minutes_until_reset: int = 0


class HealthCheckResponse(BaseModel):
    """Health check response model"""
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    database_connected: bool
    app_rotation: AppRotationHealth = Field(default_factory=AppRotationHealth)
    queued_requests: int = 0
    intelligence_enabled: bool = False
    # Declared last so the validator sees the fields above
    status: str = Field("healthy", description="Overall system status: healthy, degraded, unhealthy")

    @validator("status", pre=True, always=True)
    def determine_status(cls, v, values):
        """Determine overall health status"""
        if not values.get("database_connected", False):
            return "unhealthy"

        rotation = values.get("app_rotation")
        if rotation is not None and rotation.total_apps and rotation.available_apps == 0:
            return "degraded"

        return "healthy"

    class Config:
        json_schema_extra = {
            "example": {
                "timestamp": "2024-01-15T10:30:00Z",
                "database_connected": True,
                "app_rotation": {
                    "total_apps": 3,
                    "available_apps": 2,
                    "exhausted_apps": 1,
                    "total_capacity": 600,
                    "minutes_until_reset": 42
                },
                "queued_requests": 4,
                "intelligence_enabled": True,
                "status": "healthy"
            }
        }


# ============================================================================
# Error Response Schema
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response"""
    success: bool = False
    error: str
    details: Optional[List[Dict[str, Any]]] = None

    class Config:
        json_schema_extra = {
            "example": {
                "success": False,
                "error": "Rule not found"
            }
        }
