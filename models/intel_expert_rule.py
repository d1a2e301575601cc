from sqlalchemy import Column, Integer, String, Enum, DateTime, Float, Boolean, Text, Index
from datetime import datetime
from models.base import Base, ExpertRuleSource, ExpertRuleType, JSONType


class IntelExpertRule(Base):
    """
    Media buyer knowledge distilled from questionnaire answers.

    Kill / scale rules carry rule-style ``conditions`` and ``actions``;
    benchmark rules carry ``thresholds``; targeting rules carry
    ``winning_states``. Rules are global (not owned by a user).
    """
    __tablename__ = "intel_expert_rules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    vertical = Column(String(64), default="all", nullable=False)
    rule_type = Column(Enum(ExpertRuleType), nullable=False)
    campaign_structure = Column(String(64), nullable=True)

    conditions = Column(JSONType, nullable=True)
    thresholds = Column(JSONType, nullable=True)
    actions = Column(JSONType, nullable=True)

    confidence_score = Column(Float, default=0.5, nullable=False)
    expert_count = Column(Integer, default=1, nullable=False)
    source = Column(Enum(ExpertRuleSource), default=ExpertRuleSource.FORM_SUBMISSION, nullable=False)
    source_references = Column(JSONType, nullable=True)

    winning_states = Column(JSONType, nullable=True)
    creative_insights = Column(JSONType, nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)
    times_validated = Column(Integer, default=0, nullable=False)
    times_confirmed = Column(Integer, default=0, nullable=False)
    last_validated_at = Column(DateTime, nullable=True)
    validation_accuracy = Column(Float, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_expert_rule_identity", "name", "rule_type", "vertical", unique=True),
        Index("idx_expert_rule_type_active", "rule_type", "is_active"),
    )
