"""Approval workflow API router."""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from governance_core.api.deps import get_services
from governance_core.core.security import RequestIdentity, get_identity
from governance_core.db.session import get_db
from governance_core.schemas.schemas import ApprovalCancel, ApprovalCreate, ApprovalDecision, ApprovalOut
from governance_core.services.container import GovernanceServices

router = APIRouter(prefix="/governance/approvals", tags=["approvals"])


@router.post("/", response_model=ApprovalOut)
async def create_approval(
    body: ApprovalCreate,
    db: Session = Depends(get_db),
    identity: RequestIdentity = Depends(get_identity),
    services: GovernanceServices = Depends(get_services),
):
    """Open an approval request routed by the matching approval rule."""
    request = services.approvals.create_request(
        db, identity, body.request_type, body.resource_type,
        resource_id=body.resource_id, risk_score=body.risk_score,
        reason=body.reason, metadata=body.metadata, priority=body.priority,
    )
    db.commit()
    db.refresh(request)
    services.approvals.announce_created(request)
    return request


@router.get("/pending", response_model=list[ApprovalOut])
async def pending_approvals(
    db: Session = Depends(get_db),
    identity: RequestIdentity = Depends(get_identity),
    services: GovernanceServices = Depends(get_services),
):
    """Open requests the caller's roles may decide."""
    return services.approvals.list_pending(db, identity.roles)


@router.get("/{request_id}", response_model=ApprovalOut)
async def get_approval(
    request_id: int,
    db: Session = Depends(get_db),
    identity: RequestIdentity = Depends(get_identity),
    services: GovernanceServices = Depends(get_services),
):
    return services.approvals.get(db, request_id)


@router.post("/{request_id}/decide", response_model=ApprovalOut)
async def decide_approval(
    request_id: int,
    body: ApprovalDecision,
    db: Session = Depends(get_db),
    identity: RequestIdentity = Depends(get_identity),
    services: GovernanceServices = Depends(get_services),
):
    return services.approvals.decide(db, request_id, identity, body.approve, body.reason)


@router.post("/{request_id}/cancel", response_model=ApprovalOut)
async def cancel_approval(
    request_id: int,
    body: ApprovalCancel,
    db: Session = Depends(get_db),
    identity: RequestIdentity = Depends(get_identity),
    services: GovernanceServices = Depends(get_services),
):
    return services.approvals.cancel(db, request_id, identity, body.reason)
