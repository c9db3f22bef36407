"""Governance orchestrator: RBAC, then policies, then approval, always audited."""

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from governance_core.core.config import Settings
from governance_core.core.exceptions import PolicyViolation
from governance_core.services.approval_service import ApprovalService
from governance_core.services.audit_service import AuditService
from governance_core.services.policy_engine import (
    PolicyContext, PolicyEffect, PolicyEngine, PolicyService,
)
from governance_core.services.rbac_service import RBACService

logger = logging.getLogger("governance_core")

WARNINGS_HEADER = "X-Governance-Warnings"


class GovernanceOutcome(str, enum.Enum):
    allow = "allow"
    warn = "warn"
    block = "block"
    pending_approval = "pending_approval"


@dataclass
class GovernanceDecision:
    outcome: GovernanceOutcome
    matched_policies: List[str] = field(default_factory=list)
    messages: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    approval_request_id: Optional[int] = None

    @property
    def allowed(self) -> bool:
        return self.outcome in (GovernanceOutcome.allow, GovernanceOutcome.warn)

    def to_dict(self) -> Dict[str, Any]:
        error = None
        if self.outcome is GovernanceOutcome.block:
            error = self.messages[0] if self.messages else "Action blocked"
        return {
            "outcome": self.outcome.value,
            "allowed": self.allowed,
            "error": error,
            "matchedPolicies": self.matched_policies,
            "messages": self.messages,
            "warnings": self.warnings,
            "approvalRequestId": self.approval_request_id,
        }


class GovernanceService:
    """Runs every enabled check for one governed action."""

    def __init__(
        self,
        settings: Settings,
        policy_engine: PolicyEngine,
        approvals: ApprovalService,
        audit: AuditService,
    ):
        self.settings = settings
        self.policy_engine = policy_engine
        self.approvals = approvals
        self.audit = audit

    def evaluate(
        self,
        db: Session,
        identity,
        action: str,
        resource: str,
        resource_id: Optional[str] = None,
        scope: Optional[str] = None,
        scope_value: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        risk_score: Optional[float] = None,
        request_approval: bool = True,
    ) -> GovernanceDecision:
        """Decide allow / warn / block / pending approval and audit the attempt.

        With every subsystem disabled the answer is a plain allow.
        """
        decision = self._decide(
            db, identity, action, resource, resource_id, scope, scope_value,
            metadata or {}, risk_score, request_approval,
        )
        self.audit.record(
            db, "governance.evaluated", resource, resource_id,
            actor=identity,
            outcome=decision.outcome.value,
            metadata={
                "requested_action": action,
                "scope": scope,
                "scope_value": scope_value,
                "matched_policies": decision.matched_policies,
                "messages": decision.messages,
                "warnings": decision.warnings,
                "approval_request_id": decision.approval_request_id,
            },
        )
        db.commit()
        if decision.approval_request_id is not None:
            self.approvals.announce_created(self.approvals.get(db, decision.approval_request_id))
        if decision.outcome is GovernanceOutcome.block:
            logger.info("Blocked %s on %s for user %s: %s", action, resource, identity.user_id, decision.messages)
        return decision

    def enforce(self, db: Session, identity, action: str, resource: str, **kwargs) -> GovernanceDecision:
        """Like ``evaluate`` but raises ``PolicyViolation`` on block."""
        decision = self.evaluate(db, identity, action, resource, **kwargs)
        if decision.outcome is GovernanceOutcome.block:
            raise PolicyViolation(
                decision.messages[0] if decision.messages else "Action blocked",
                messages=decision.messages,
                matched_policies=decision.matched_policies,
            )
        return decision

    def _decide(
        self, db, identity, action, resource, resource_id, scope, scope_value,
        metadata, risk_score, request_approval,
    ) -> GovernanceDecision:
        if self.settings.ENABLE_RBAC and not RBACService.has_permission(
            db, identity.roles, action, resource, scope, scope_value,
        ):
            return GovernanceDecision(
                outcome=GovernanceOutcome.block,
                messages=[f"Your roles do not grant '{action}' on '{resource}'"],
            )

        decision = GovernanceDecision(outcome=GovernanceOutcome.allow)
        if self.settings.ENABLE_POLICY_ENFORCEMENT:
            context = PolicyContext(
                action=action,
                resource=resource,
                resource_id=resource_id,
                user_id=identity.user_id,
                user_roles=tuple(identity.roles),
                metadata=metadata,
            )
            result = self.policy_engine.evaluate(PolicyService.active_definitions(db), context)
            decision.matched_policies = result.matched_policies
            decision.messages = result.messages
            decision.warnings = result.warnings
            if result.effect is PolicyEffect.block:
                decision.outcome = GovernanceOutcome.block
                return decision
            if result.effect is PolicyEffect.warn:
                decision.outcome = GovernanceOutcome.warn

        if request_approval and self.settings.ENABLE_APPROVAL_WORKFLOWS:
            rule = self.approvals.match_rule(db, action, resource, risk_score)
            if rule is not None:
                request = self.approvals.create_request(
                    db, identity, action, resource,
                    resource_id=resource_id, risk_score=risk_score, metadata=metadata, rule=rule,
                )
                decision.outcome = GovernanceOutcome.pending_approval
                decision.approval_request_id = request.id
        return decision
