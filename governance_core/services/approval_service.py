"""Approval workflow engine: request lifecycle, decisions and SLA escalation.

Every state change is a conditional UPDATE on the status and escalation level
the caller last saw. If another worker moved the request first the update
matches no row and the change is dropped, so a sweep racing a human decision
(or another sweep) never transitions a request twice.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import update
from sqlalchemy.orm import Session

from governance_core.core.clock import Clock, utcnow
from governance_core.core.config import Settings
from governance_core.core.exceptions import (
    ApprovalPreconditionViolation, ApproverNotAuthorized, PolicyViolation,
    ResourceNotFoundError, ValidationError,
)
from governance_core.models.approval import (
    OPEN_STATUSES, ApprovalRequest, ApprovalStatus, ApprovalStep, StepDecision,
)
from governance_core.models.policy import ApprovalRule
from governance_core.services.audit_service import AuditService
from governance_core.services.policy_engine import PolicyContext, PolicyEngine, PolicyService

logger = logging.getLogger("governance_core")

DECIDE_ACTION = "approval.decide"
APPROVAL_RESOURCE = "approval_request"

ResolutionHandler = Callable[[Session, ApprovalRequest], None]
Notifier = Callable[[str, Dict[str, Any]], None]


def sla_hours_for_level(base_hours: float, level: int) -> float:
    """SLA budget at an escalation level; each level halves the previous one."""
    return base_hours * (0.5 ** level)


def deadline_for(start: datetime, base_hours: float, level: int) -> datetime:
    return start + timedelta(hours=sla_hours_for_level(base_hours, level))


def is_overdue(deadline: datetime, now: datetime) -> bool:
    return now > deadline


def escalation_target(rule: Optional[ApprovalRule], level: int, current_role: str) -> str:
    """Approver role for ``level`` (1-based); the last target repeats."""
    targets = _loads(rule.escalation_targets_json, []) if rule is not None else []
    if not targets:
        return current_role
    return targets[min(level, len(targets)) - 1]


def _loads(raw: Optional[str], default):
    if not raw:
        return default
    return json.loads(raw)


def request_snapshot(request: ApprovalRequest) -> Dict[str, Any]:
    return {
        "id": request.id,
        "requester_id": request.requester_id,
        "request_type": request.request_type,
        "resource_type": request.resource_type,
        "resource_id": request.resource_id,
        "status": ApprovalStatus(request.status).value,
        "priority": request.priority,
        "risk_score": request.risk_score,
        "current_approver_role": request.current_approver_role,
        "escalation_level": request.escalation_level,
        "sla_deadline": request.sla_deadline.isoformat() if request.sla_deadline else None,
        "created_at": request.created_at.isoformat() if request.created_at else None,
        "resolved_at": request.resolved_at.isoformat() if request.resolved_at else None,
        "metadata": _loads(request.metadata_json, {}),
    }


@dataclass
class SweepReport:
    escalated: List[int] = field(default_factory=list)
    approved: List[int] = field(default_factory=list)
    rejected: List[int] = field(default_factory=list)
    expired: List[int] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)

    @property
    def transitioned(self) -> int:
        return len(self.escalated) + len(self.approved) + len(self.rejected) + len(self.expired)

    def to_dict(self) -> Dict[str, List[int]]:
        return {
            "escalated": self.escalated,
            "approved": self.approved,
            "rejected": self.rejected,
            "expired": self.expired,
            "skipped": self.skipped,
        }


class ApprovalService:
    """State machine for approval requests."""

    def __init__(
        self,
        settings: Settings,
        audit: AuditService,
        policy_engine: PolicyEngine,
        notify: Optional[Notifier] = None,
        clock: Clock = utcnow,
    ):
        self.settings = settings
        self.audit = audit
        self.policy_engine = policy_engine
        self.bypass_roles = frozenset(settings.POLICY_BYPASS_ROLES)
        self.notify = notify or (lambda event, payload: None)
        self.clock = clock
        self._handlers: Dict[str, ResolutionHandler] = {}

    def register_handler(self, request_type: str, handler: ResolutionHandler) -> None:
        """Run ``handler`` whenever a request of ``request_type`` reaches a terminal state."""
        self._handlers[request_type] = handler

    # ---- Lookup ----

    @staticmethod
    def match_rule(
        db: Session,
        request_type: str,
        resource_type: str,
        risk_score: Optional[float] = None,
    ) -> Optional[ApprovalRule]:
        """Most specific active rule for the request; exact matches beat wildcards."""
        rules = db.query(ApprovalRule).filter(ApprovalRule.is_active == True).all()  # noqa: E712
        candidates = []
        for rule in rules:
            if rule.request_type not in (request_type, "*"):
                continue
            if rule.resource_type not in (resource_type, "*"):
                continue
            if rule.max_risk_score is not None and risk_score is not None and risk_score > rule.max_risk_score:
                continue
            specificity = (rule.request_type != "*") * 2 + (rule.resource_type != "*")
            candidates.append((-specificity, rule.id, rule))
        if not candidates:
            return None
        return sorted(candidates, key=lambda c: c[:2])[0][2]

    @staticmethod
    def get(db: Session, request_id: int) -> ApprovalRequest:
        request = db.query(ApprovalRequest).filter(ApprovalRequest.id == request_id).first()
        if not request:
            raise ResourceNotFoundError(f"Approval request {request_id} not found")
        return request

    def list_pending(self, db: Session, roles: Optional[Sequence[str]] = None) -> List[ApprovalRequest]:
        """Open requests; narrowed to the given approver roles unless one bypasses."""
        query = db.query(ApprovalRequest).filter(ApprovalRequest.status.in_(list(OPEN_STATUSES)))
        if roles is not None and not self.bypass_roles.intersection(roles):
            query = query.filter(ApprovalRequest.current_approver_role.in_(list(roles)))
        return query.order_by(ApprovalRequest.sla_deadline.asc()).all()

    def count_overdue(self, db: Session) -> int:
        """Open requests past their deadline that the next sweep will pick up."""
        now = self.clock()
        return sum(
            1 for request in self.list_pending(db)
            if request.sla_deadline is not None and is_overdue(request.sla_deadline, now)
        )

    # ---- Creation ----

    def create_request(
        self,
        db: Session,
        requester,
        request_type: str,
        resource_type: str,
        resource_id: Optional[str] = None,
        risk_score: Optional[float] = None,
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        priority: str = "normal",
        rule: Optional[ApprovalRule] = None,
    ) -> ApprovalRequest:
        """Stage a pending request routed by the matching rule. The caller commits."""
        rule = rule or self.match_rule(db, request_type, resource_type, risk_score)
        if rule is None:
            raise ValidationError(
                f"No approval rule covers {request_type} on {resource_type}",
                errors=[{"field": "request_type", "message": "no matching approval rule"}],
            )
        now = self.clock()
        meta = dict(metadata or {})
        meta.update({"requester_id": requester.user_id, "escalation_level": 0})
        request = ApprovalRequest(
            requester_id=requester.user_id,
            request_type=request_type,
            resource_type=resource_type,
            resource_id=str(resource_id) if resource_id is not None else None,
            status=ApprovalStatus.pending,
            priority=priority,
            reason=reason,
            risk_score=risk_score,
            metadata_json=json.dumps(meta, default=str),
            rule_id=rule.id,
            current_approver_role=rule.approver_role,
            escalation_level=0,
            created_at=now,
            sla_deadline=deadline_for(now, rule.base_sla_hours, 0),
        )
        db.add(request)
        db.flush()
        self.audit.record(
            db, "approval.created", APPROVAL_RESOURCE, request.id,
            actor=requester, after=request_snapshot(request), outcome="pending_approval",
        )
        logger.info(
            "Approval request %s created for %s on %s (approver %s)",
            request.id, request_type, resource_type, rule.approver_role,
        )
        return request

    def announce_created(self, request: ApprovalRequest) -> None:
        """Tell approvers about a committed request."""
        self.notify("approval.created", request_snapshot(request))

    # ---- Human transitions ----

    def decide(self, db: Session, request_id: int, decider, approve: bool, reason: Optional[str] = None) -> ApprovalRequest:
        """Approve or reject an open request, then commit."""
        request = self.get(db, request_id)
        attempted = "approve" if approve else "reject"
        if request.status not in OPEN_STATUSES:
            self._deny(db, request, decider, attempted, f"request is already {ApprovalStatus(request.status).value}")

        roles = set(decider.roles)
        if request.current_approver_role not in roles and not self.bypass_roles.intersection(roles):
            self.audit.record_and_commit(
                db, "approval.decision_denied", APPROVAL_RESOURCE,
                resource_id=request.id, actor=decider, outcome="denied",
                metadata={"attempted": attempted, "required_role": request.current_approver_role},
            )
            raise ApproverNotAuthorized(
                f"Approval request {request.id} requires role '{request.current_approver_role}'"
            )

        verdict = self.policy_engine.evaluate(
            PolicyService.active_definitions(db),
            self._decision_context(request, decider),
            allow_bypass=False,
        )
        if not verdict.allowed:
            self.audit.record_and_commit(
                db, "approval.decision_blocked", APPROVAL_RESOURCE,
                resource_id=request.id, actor=decider, outcome="block",
                metadata={"attempted": attempted, "matched_policies": verdict.matched_policies},
            )
            raise PolicyViolation(
                verdict.messages[0] if verdict.messages else "Decision blocked by policy",
                messages=verdict.messages,
                matched_policies=verdict.matched_policies,
            )

        target = ApprovalStatus.approved if approve else ApprovalStatus.rejected
        decision = StepDecision.approved if approve else StepDecision.rejected
        before = request_snapshot(request)
        if not self._apply(db, request, target, resolved=True):
            db.refresh(request)
            self._deny(db, request, decider, attempted, "request changed concurrently")
        self._add_step(db, request, decision, decided_by=decider.user_id, reason=reason)
        self.audit.record(
            db, f"approval.{target.value}", APPROVAL_RESOURCE, request.id,
            actor=decider, before=before, after=request_snapshot(request), outcome=target.value,
        )
        self._resolve(db, request)
        db.commit()
        self.notify(f"approval.{target.value}", request_snapshot(request))
        return request

    def cancel(self, db: Session, request_id: int, actor, reason: Optional[str] = None) -> ApprovalRequest:
        """Withdraw a request. Only the requester may, and only before escalation."""
        request = self.get(db, request_id)
        if request.status != ApprovalStatus.pending:
            self._deny(db, request, actor, "cancel", f"request is {ApprovalStatus(request.status).value}")
        if str(actor.user_id) != str(request.requester_id):
            self.audit.record_and_commit(
                db, "approval.cancel_denied", APPROVAL_RESOURCE,
                resource_id=request.id, actor=actor, outcome="denied",
                metadata={"attempted": "cancel"},
            )
            raise ApproverNotAuthorized("Only the requester may cancel an approval request")

        before = request_snapshot(request)
        if not self._apply(db, request, ApprovalStatus.cancelled, resolved=True):
            db.refresh(request)
            self._deny(db, request, actor, "cancel", "request changed concurrently")
        self._add_step(db, request, StepDecision.cancelled, decided_by=actor.user_id, reason=reason)
        self.audit.record(
            db, "approval.cancelled", APPROVAL_RESOURCE, request.id,
            actor=actor, before=before, after=request_snapshot(request), outcome="cancelled",
        )
        self._resolve(db, request)
        db.commit()
        return request

    # ---- Sweep ----

    def process_overdue(self, db: Session, now: Optional[datetime] = None) -> SweepReport:
        """Escalate or settle every open request whose deadline has passed.

        Each request commits on its own so one failure leaves the rest applied.
        """
        now = now or self.clock()
        report = SweepReport()
        overdue = (
            db.query(ApprovalRequest)
            .filter(
                ApprovalRequest.status.in_(list(OPEN_STATUSES)),
                ApprovalRequest.sla_deadline < now,
            )
            .order_by(ApprovalRequest.sla_deadline.asc())
            .all()
        )
        for request in overdue:
            rule = request.rule
            max_level = rule.max_escalation_level if rule is not None else 0
            if request.escalation_level < max_level:
                applied = self._escalate(db, request, rule, now)
                bucket = report.escalated
            else:
                applied, target = self._settle(db, request, rule, now)
                bucket = getattr(report, target.value) if applied else None
            if not applied:
                db.rollback()
                report.skipped.append(request.id)
                logger.debug("Approval request %s moved before the sweep reached it", request.id)
                continue
            db.commit()
            bucket.append(request.id)
        if report.transitioned:
            logger.info("Escalation sweep: %s", report.to_dict())
        return report

    def _escalate(self, db: Session, request: ApprovalRequest, rule: ApprovalRule, now: datetime) -> bool:
        before = request_snapshot(request)
        level = request.escalation_level + 1
        role = escalation_target(rule, level, request.current_approver_role)
        meta = _loads(request.metadata_json, {})
        meta["escalation_level"] = level
        applied = self._apply(
            db, request, ApprovalStatus.escalated,
            escalation_level=level,
            current_approver_role=role,
            sla_deadline=deadline_for(now, rule.base_sla_hours, level),
            escalated_at=now,
            metadata_json=json.dumps(meta, default=str),
        )
        if not applied:
            return False
        self._add_step(db, request, StepDecision.escalated, reason=f"SLA breached, escalated to {role}", at=now)
        self.audit.record(
            db, "approval.escalated", APPROVAL_RESOURCE, request.id,
            before=before, after=request_snapshot(request), outcome="escalated", source="sweep",
        )
        self.notify("approval.escalated", request_snapshot(request))
        return True

    def _settle(self, db: Session, request: ApprovalRequest, rule: Optional[ApprovalRule], now: datetime):
        if rule is not None and rule.auto_approve:
            target, decision = ApprovalStatus.approved, StepDecision.auto_approved
        elif rule is not None and rule.auto_reject:
            target, decision = ApprovalStatus.rejected, StepDecision.auto_rejected
        else:
            target, decision = ApprovalStatus.expired, StepDecision.expired
        before = request_snapshot(request)
        if not self._apply(db, request, target, resolved=True, now=now):
            return False, target
        self._add_step(db, request, decision, reason="SLA breached at maximum escalation level", at=now)
        self.audit.record(
            db, f"approval.{target.value}", APPROVAL_RESOURCE, request.id,
            before=before, after=request_snapshot(request), outcome=target.value, source="sweep",
        )
        self._resolve(db, request)
        self.notify(f"approval.{target.value}", request_snapshot(request))
        return True, target

    # ---- Internals ----

    def _apply(
        self,
        db: Session,
        request: ApprovalRequest,
        status: ApprovalStatus,
        resolved: bool = False,
        now: Optional[datetime] = None,
        **values,
    ) -> bool:
        """Conditionally move ``request`` to ``status``; False if it moved first."""
        if resolved:
            values["resolved_at"] = now or self.clock()
        result = db.execute(
            update(ApprovalRequest)
            .where(
                ApprovalRequest.id == request.id,
                ApprovalRequest.status == request.status,
                ApprovalRequest.escalation_level == request.escalation_level,
            )
            .values(status=status, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        db.refresh(request)
        return True

    def _add_step(
        self,
        db: Session,
        request: ApprovalRequest,
        decision: StepDecision,
        decided_by: Optional[str] = None,
        reason: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> ApprovalStep:
        step = ApprovalStep(
            request_id=request.id,
            step_order=len(request.steps) + 1,
            approver_role=request.current_approver_role,
            decision=decision,
            decided_by=decided_by,
            decided_at=at or self.clock(),
            reason=reason,
        )
        db.add(step)
        db.flush()
        db.refresh(request)
        return step

    def _resolve(self, db: Session, request: ApprovalRequest) -> None:
        handler = self._handlers.get(request.request_type)
        if handler is not None:
            handler(db, request)

    def _deny(self, db: Session, request: ApprovalRequest, actor, attempted: str, why: str) -> None:
        """Discard staged changes, audit the refused transition, then raise."""
        db.rollback()
        self.audit.record_and_commit(
            db, "approval.transition_denied", APPROVAL_RESOURCE,
            resource_id=request.id, actor=actor, outcome="denied",
            metadata={
                "attempted": attempted,
                "status": ApprovalStatus(request.status).value,
                "reason": why,
            },
        )
        raise ApprovalPreconditionViolation(f"Cannot {attempted} approval request {request.id}: {why}")

    @staticmethod
    def _decision_context(request: ApprovalRequest, decider) -> PolicyContext:
        return PolicyContext(
            action=DECIDE_ACTION,
            resource=APPROVAL_RESOURCE,
            resource_id=str(request.id),
            user_id=decider.user_id,
            user_roles=tuple(decider.roles),
            metadata={
                "requester_id": request.requester_id,
                "request_type": request.request_type,
                "resource_type": request.resource_type,
                "risk_score": request.risk_score,
                "escalation_level": request.escalation_level,
            },
        )
