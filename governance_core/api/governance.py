"""Governance overview and evaluation API router."""

import logging

from fastapi import APIRouter, Depends, Response
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from governance_core.api.deps import get_services, set_warnings
from governance_core.core.security import RequestIdentity, get_identity
from governance_core.db.session import get_db
from governance_core.models.approval import OPEN_STATUSES, ApprovalRequest
from governance_core.models.audit_log import AuditLog
from governance_core.models.policy import Policy
from governance_core.models.role import Role
from governance_core.schemas.schemas import EvaluateRequest
from governance_core.services.container import GovernanceServices

router = APIRouter(prefix="/governance", tags=["governance"])
logger = logging.getLogger("governance_core")


@router.post("/evaluate")
async def evaluate(
    body: EvaluateRequest,
    response: Response,
    db: Session = Depends(get_db),
    identity: RequestIdentity = Depends(get_identity),
    services: GovernanceServices = Depends(get_services),
):
    """Run the full governance pipeline for the caller without raising on block."""
    decision = services.governance.evaluate(
        db, identity, body.action, body.resource,
        resource_id=body.resource_id, scope=body.scope, scope_value=body.scope_value,
        metadata=body.metadata, risk_score=body.risk_score, request_approval=body.request_approval,
    )
    set_warnings(response, decision.warnings)
    if not decision.allowed and decision.approval_request_id is None:
        response.status_code = 403
    return decision.to_dict()


@router.get("/summary")
async def summary(
    db: Session = Depends(get_db),
    identity: RequestIdentity = Depends(get_identity),
    services: GovernanceServices = Depends(get_services),
):
    """Counts and feature toggles for the admin dashboard."""
    settings = services.settings
    return {
        "features": {
            "rbac": settings.ENABLE_RBAC,
            "policyEnforcement": settings.ENABLE_POLICY_ENFORCEMENT,
            "approvalWorkflows": settings.ENABLE_APPROVAL_WORKFLOWS,
            "auditLogs": settings.ENABLE_AUDIT_LOGS,
            "escalation": settings.ENABLE_ESCALATION,
            "exportGating": settings.ENABLE_EXPORT_GATING,
            "notifications": settings.ENABLE_NOTIFICATIONS,
        },
        "roles": db.query(Role).count(),
        "activePolicies": db.query(Policy).filter(Policy.is_active == True).count(),  # noqa: E712
        "openApprovals": db.query(ApprovalRequest).filter(ApprovalRequest.status.in_(list(OPEN_STATUSES))).count(),
        "overdueApprovals": services.approvals.count_overdue(db),
        "auditEntries": db.query(AuditLog).count(),
        "blockedAttempts": db.query(AuditLog).filter(AuditLog.outcome == "block").count(),
    }


@router.get("/health")
async def health_check(db: Session = Depends(get_db)):
    """Database reachability."""
    db_ok = False
    try:
        db.execute(text("SELECT 1"))
        db_ok = True
    except SQLAlchemyError as e:
        logger.warning("Health check query failed: %s", e)
    return {"database": "ok" if db_ok else "error", "status": "healthy" if db_ok else "degraded"}
