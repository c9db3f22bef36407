"""Policy and approval-rule models."""

import enum

from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, Float, Enum

from governance_core.core.clock import utcnow
from governance_core.db.base import Base


class PolicyCategory(str, enum.Enum):
    approval = "approval"
    audit = "audit"
    rate_limit = "rate_limit"
    restriction = "restriction"
    warning = "warning"


class Policy(Base):
    """Data-defined rule: applicability sets, ordered conditions and an effect.

    ``actions_json``, ``resources_json`` and ``roles_json`` hold JSON lists
    (empty = any). ``conditions_json`` holds a JSON list of
    ``{"field", "operator", "value"}`` objects, all of which must hold.
    """
    __tablename__ = "governance_policies"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), unique=True, nullable=False, index=True)
    description = Column(Text, nullable=True)
    category = Column(Enum(PolicyCategory), default=PolicyCategory.restriction, nullable=False)
    effect = Column(String(10), nullable=False, default="block")  # allow | warn | block
    priority = Column(Integer, nullable=False, default=0)
    actions_json = Column(Text, nullable=True)
    resources_json = Column(Text, nullable=True)
    roles_json = Column(Text, nullable=True)
    conditions_json = Column(Text, nullable=True)
    message = Column(String(500), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class ApprovalRule(Base):
    """Which requests need approval, who approves, and how SLA breaches escalate.

    ``escalation_targets_json`` is a JSON list of role names, one per
    escalation level starting at level 1; the last entry repeats.
    """
    __tablename__ = "governance_approval_rules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), unique=True, nullable=False)
    request_type = Column(String(100), nullable=False, default="*")  # action, or *
    resource_type = Column(String(100), nullable=False, default="*")
    approver_role = Column(String(50), nullable=False)
    escalation_targets_json = Column(Text, nullable=True)
    base_sla_hours = Column(Float, nullable=False, default=24)
    max_escalation_level = Column(Integer, nullable=False, default=2)
    auto_approve = Column(Boolean, default=False, nullable=False)
    auto_reject = Column(Boolean, default=False, nullable=False)
    max_risk_score = Column(Float, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
