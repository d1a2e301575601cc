"""
Request schemas for the intelligence endpoints.

Account ids are accepted as ``adAccountId`` or ``ad_account_id``.
Rule payloads are only shape-checked here; AutomationRulesEngine does the
semantic validation so API and service callers get the same messages.
"""

from pydantic import AliasChoices, BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from models.base import BackfillType


class BackfillStart(BaseModel):
    ad_account_id: str = Field(..., alias="adAccountId", min_length=1)
    days: int = Field(90, ge=1, le=1095)
    type: BackfillType = Field(BackfillType.ALL, validation_alias=AliasChoices("backfillType", "backfill_type", "type"))

    class Config:
        populate_by_name = True


class BackfillBatch(BaseModel):
    ad_account_ids: List[str] = Field(..., alias="adAccountIds", min_length=1)
    days: int = Field(90, ge=1, le=1095)
    type: BackfillType = Field(BackfillType.ALL, validation_alias=AliasChoices("backfillType", "backfill_type", "type"))

    class Config:
        populate_by_name = True


class BackfillPause(BaseModel):
    ad_account_id: str = Field(..., alias="adAccountId", min_length=1)

    class Config:
        populate_by_name = True


class RulePayload(BaseModel):
    """Body of POST /rules and PUT /rules/{id}"""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    ad_account_id: Optional[str] = Field(None, alias="adAccountId")
    rule_type: Optional[str] = None
    entity_type: Optional[str] = None
    conditions: Optional[List[Dict[str, Any]]] = None
    condition_logic: Optional[str] = None
    actions: Optional[List[Dict[str, Any]]] = None
    is_active: Optional[bool] = None
    requires_approval: Optional[bool] = None
    cooldown_hours: Optional[int] = Field(None, ge=0)
    evaluation_window_hours: Optional[int] = Field(None, ge=1)

    class Config:
        populate_by_name = True

    def changes(self) -> Dict[str, Any]:
        """Only the fields the client sent."""
        return self.dict(exclude_unset=True)


class ActionReject(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class PredictRequest(BaseModel):
    ad_account_id: Optional[str] = Field(None, alias="adAccountId")
    metrics: Dict[str, Any]

    @validator("metrics")
    def require_metrics(cls, v):
        if not v:
            raise ValueError("metrics must not be empty")
        return v

    class Config:
        populate_by_name = True


class PatternLearnRequest(BaseModel):
    ad_account_id: Optional[str] = Field(None, alias="adAccountId")

    class Config:
        populate_by_name = True


class ScoreCalculateRequest(BaseModel):
    ad_account_id: Optional[str] = Field(None, alias="adAccountId")

    class Config:
        populate_by_name = True


class PixelCollectRequest(BaseModel):
    ad_account_id: Optional[str] = Field(None, alias="adAccountId")

    class Config:
        populate_by_name = True


class ExpertRuleSeed(BaseModel):
    """Questionnaire answers, one mapping of question to answer per media buyer"""
    form_submissions: List[Dict[str, Any]] = Field(
        ..., validation_alias=AliasChoices("formSubmissions", "form_submissions")
    )


class ExpertRuleUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    vertical: Optional[str] = Field(None, min_length=1, max_length=64)
    campaign_structure: Optional[str] = None
    conditions: Optional[List[Dict[str, Any]]] = None
    thresholds: Optional[Dict[str, Any]] = None
    actions: Optional[List[Dict[str, Any]]] = None
    confidence_score: Optional[float] = Field(None, ge=0, le=1)
    is_active: Optional[bool] = None
    winning_states: Optional[Dict[str, Any]] = None
    creative_insights: Optional[Dict[str, Any]] = None

    def changes(self) -> Dict[str, Any]:
        return self.dict(exclude_unset=True)


class ExpertRuleValidate(BaseModel):
    """Known outcomes: ``[{metrics: {...}, outcome: "win" | "loss"}]``"""
    performance_data: List[Dict[str, Any]] = Field(
        ..., validation_alias=AliasChoices("performanceData", "performance_data"), min_length=1
    )
