"""
Campaign management request schemas
"""

from pydantic import BaseModel, Field, root_validator, validator
from typing import Optional, List
from services.campaign_actions import BATCH_ACTIONS, MAX_COPIES


class CampaignCreate(BaseModel):
    ad_account_id: Optional[str] = Field(None, alias="adAccountId")
    name: str = Field(..., min_length=1, max_length=400)
    objective: str = "OUTCOME_SALES"
    status: str = "PAUSED"
    special_ad_categories: List[str] = Field(default_factory=list)
    daily_budget: Optional[float] = Field(None, gt=0, description="Dollars")
    lifetime_budget: Optional[float] = Field(None, gt=0, description="Dollars")
    bid_strategy: Optional[str] = None

    @validator("status")
    def validate_status(cls, v):
        v = v.upper()
        if v not in ("ACTIVE", "PAUSED"):
            raise ValueError("status must be ACTIVE or PAUSED")
        return v

    class Config:
        populate_by_name = True


class CampaignEdit(BaseModel):
    ad_account_id: Optional[str] = Field(None, alias="adAccountId")
    name: Optional[str] = Field(None, min_length=1, max_length=400)
    status: Optional[str] = None
    bid_strategy: Optional[str] = None
    spend_cap: Optional[float] = Field(None, gt=0)

    @validator("status")
    def validate_status(cls, v):
        if v is None:
            return v
        v = v.upper()
        if v not in ("ACTIVE", "PAUSED", "ARCHIVED"):
            raise ValueError("status must be ACTIVE, PAUSED or ARCHIVED")
        return v

    @root_validator(skip_on_failure=True)
    def require_update(cls, values):
        if all(v is None for k, v in values.items() if k != "ad_account_id"):
            raise ValueError("No fields to update")
        return values

    class Config:
        populate_by_name = True


class BudgetUpdate(BaseModel):
    """Budgets in dollars; converted to cents before calling the Graph API."""
    ad_account_id: Optional[str] = Field(None, alias="adAccountId")
    daily_budget: Optional[float] = Field(None, gt=0)
    lifetime_budget: Optional[float] = Field(None, gt=0)

    @root_validator(skip_on_failure=True)
    def require_budget(cls, values):
        if values.get("daily_budget") is None and values.get("lifetime_budget") is None:
            raise ValueError("daily_budget or lifetime_budget is required")
        return values

    class Config:
        populate_by_name = True


class CampaignDuplicate(BaseModel):
    ad_account_id: Optional[str] = Field(None, alias="adAccountId")
    new_name: str = Field(..., min_length=1, max_length=400)
    number_of_copies: int = 1

    @validator("number_of_copies", pre=True, always=True)
    def clamp_copies(cls, v):
        try:
            v = int(v)
        except (TypeError, ValueError):
            return 1
        return min(max(v, 1), MAX_COPIES)

    class Config:
        populate_by_name = True


class BatchOperation(BaseModel):
    ad_account_id: Optional[str] = Field(None, alias="adAccountId")
    campaign_ids: List[str] = Field(..., min_length=1)
    action: str

    @validator("action")
    def validate_action(cls, v):
        if v not in BATCH_ACTIONS:
            raise ValueError("Invalid action. Must be pause, activate, or duplicate")
        return v

    class Config:
        populate_by_name = True

