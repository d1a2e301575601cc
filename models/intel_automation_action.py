from sqlalchemy import Column, Integer, String, Enum, DateTime, Float, Text, ForeignKey, Index
from datetime import datetime
from typing import Optional
from models.base import Base, AutomationActionType, AutomationActionStatus, JSONType


class IntelAutomationAction(Base):
    """
    An action proposed by a rule, waiting for approval or execution.

    Only ``approved`` actions are ever executed against the Graph API.
    """
    __tablename__ = "intel_automation_actions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    rule_id = Column(Integer, ForeignKey("intel_automation_rules.id", ondelete="SET NULL"), nullable=True)
    ad_account_id = Column(String(64), nullable=False)

    entity_type = Column(String(16), nullable=False)
    entity_id = Column(String(64), nullable=False)
    entity_name = Column(String(512), nullable=True)

    action_type = Column(Enum(AutomationActionType), nullable=False)
    action_params = Column(JSONType, nullable=True)
    status = Column(
        Enum(AutomationActionStatus),
        default=AutomationActionStatus.PENDING_APPROVAL,
        nullable=False
    )

    trigger_reason = Column(Text, nullable=True)
    trigger_metrics = Column(JSONType, nullable=True)
    model_confidence = Column(Float, nullable=True)

    approved_by_user_id = Column(Integer, nullable=True)
    approved_at = Column(DateTime, nullable=True)
    executed_at = Column(DateTime, nullable=True)
    execution_result = Column(JSONType, nullable=True)
    error_message = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_action_status_approved", "status", "approved_at"),
        Index("idx_action_rule_entity", "rule_id", "entity_id", "created_at"),
    )

    def approve(self, approver_user_id: int):
        self.status = AutomationActionStatus.APPROVED
        self.approved_by_user_id = approver_user_id
        self.approved_at = datetime.utcnow()

    def reject(self, approver_user_id: int, reason: Optional[str] = None):
        self.status = AutomationActionStatus.REJECTED
        self.approved_by_user_id = approver_user_id
        self.approved_at = datetime.utcnow()
        self.error_message = reason

    def mark_executed(self, result: dict):
        self.status = AutomationActionStatus.EXECUTED
        self.executed_at = datetime.utcnow()
        self.execution_result = result

    def mark_failed(self, error_message: str):
        self.status = AutomationActionStatus.FAILED
        self.executed_at = datetime.utcnow()
        self.error_message = error_message

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        """Pending and not yet expired."""
        if self.status != AutomationActionStatus.PENDING_APPROVAL:
            return False
        if not self.expires_at:
            return True
        return (now or datetime.utcnow()) < self.expires_at

    def description(self) -> str:
        label = f'{self.entity_type} "{self.entity_name or self.entity_id}"'
        params = self.action_params or {}
        amount = params.get("percentage") or params.get("amount")
        suffix = "%" if params.get("percentage") else ""

        if self.action_type == AutomationActionType.PAUSE:
            return f"Pause {label}"
        if self.action_type == AutomationActionType.ACTIVATE:
            return f"Activate {label}"
        if self.action_type == AutomationActionType.INCREASE_BUDGET:
            return f"Increase budget for {label} by {amount}{suffix}"
        if self.action_type == AutomationActionType.DECREASE_BUDGET:
            return f"Decrease budget for {label} by {amount}{suffix}"
        if self.action_type == AutomationActionType.ADJUST_BID:
            return f"Adjust bid for {label}"
        if self.action_type == AutomationActionType.NOTIFY:
            return f"Send notification about {label}"
        if self.action_type == AutomationActionType.CREATE_REPORT:
            return f"Create report for {label}"
        if self.action_type == AutomationActionType.DUPLICATE:
            return f"Duplicate {label}"
        if self.action_type == AutomationActionType.ARCHIVE:
            return f"Archive {label}"
        return f"{self.action_type} on {label}"
