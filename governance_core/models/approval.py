"""Approval request and step models."""

import enum

from sqlalchemy import (
    Column, Integer, String, Text, DateTime, Float, ForeignKey, Enum,
)
from sqlalchemy.orm import relationship

from governance_core.core.clock import utcnow
from governance_core.db.base import Base


class ApprovalStatus(str, enum.Enum):
    pending = "pending"
    escalated = "escalated"
    approved = "approved"
    rejected = "rejected"
    cancelled = "cancelled"
    expired = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    ApprovalStatus.approved,
    ApprovalStatus.rejected,
    ApprovalStatus.cancelled,
    ApprovalStatus.expired,
})
OPEN_STATUSES = frozenset({ApprovalStatus.pending, ApprovalStatus.escalated})


class StepDecision(str, enum.Enum):
    approved = "approved"
    rejected = "rejected"
    escalated = "escalated"
    auto_approved = "auto_approved"
    auto_rejected = "auto_rejected"
    expired = "expired"
    cancelled = "cancelled"


class ApprovalRequest(Base):
    """A gated action awaiting a decision."""
    __tablename__ = "governance_approval_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    requester_id = Column(String(100), nullable=False, index=True)
    request_type = Column(String(100), nullable=False)  # the gated action, e.g. "export"
    resource_type = Column(String(100), nullable=False)
    resource_id = Column(String(100), nullable=True)
    status = Column(Enum(ApprovalStatus), default=ApprovalStatus.pending, nullable=False, index=True)
    priority = Column(String(20), nullable=False, default="normal")
    reason = Column(Text, nullable=True)
    risk_score = Column(Float, nullable=True)
    metadata_json = Column(Text, nullable=True)
    rule_id = Column(Integer, ForeignKey("governance_approval_rules.id", ondelete="SET NULL"), nullable=True)
    current_approver_role = Column(String(50), nullable=False)
    escalation_level = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    sla_deadline = Column(DateTime, nullable=False, index=True)
    escalated_at = Column(DateTime, nullable=True)
    resolved_at = Column(DateTime, nullable=True)

    steps = relationship(
        "ApprovalStep",
        back_populates="request",
        cascade="all, delete-orphan",
        order_by="ApprovalStep.step_order",
        lazy="selectin",
    )
    rule = relationship("ApprovalRule", lazy="joined")


class ApprovalStep(Base):
    """One recorded decision or system transition on a request, in order."""
    __tablename__ = "governance_approval_steps"

    id = Column(Integer, primary_key=True, autoincrement=True)
    request_id = Column(
        Integer, ForeignKey("governance_approval_requests.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    step_order = Column(Integer, nullable=False)
    approver_role = Column(String(50), nullable=False)
    decision = Column(Enum(StepDecision), nullable=False)
    decided_by = Column(String(100), nullable=True)  # None for sweep transitions
    decided_at = Column(DateTime, default=utcnow, nullable=False)
    reason = Column(Text, nullable=True)

    request = relationship("ApprovalRequest", back_populates="steps")
