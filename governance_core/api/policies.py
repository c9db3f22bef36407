"""Policy API router: CRUD plus dry-run evaluation."""

from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from governance_core.api.deps import get_services, governed
from governance_core.core.security import RequestIdentity, get_identity
from governance_core.db.session import get_db
from governance_core.schemas.schemas import (
    MessageResponse, PolicyCreate, PolicyDryRun, PolicyOut, PolicyUpdate,
)
from governance_core.services.container import GovernanceServices
from governance_core.services.policy_engine import PolicyContext, policy_service, policy_snapshot

router = APIRouter(prefix="/governance/policies", tags=["policies"])

manage_policies = governed("manage", "policies")


@router.get("/", response_model=list[PolicyOut])
async def list_policies(
    category: Optional[str] = Query(None),
    active_only: bool = Query(False),
    db: Session = Depends(get_db),
    identity: RequestIdentity = Depends(get_identity),
):
    return [PolicyOut(**policy_snapshot(p)) for p in policy_service.list_policies(db, category, active_only)]


@router.get("/{policy_id}", response_model=PolicyOut)
async def get_policy(policy_id: int, db: Session = Depends(get_db), identity: RequestIdentity = Depends(get_identity)):
    return PolicyOut(**policy_snapshot(policy_service.get(db, policy_id)))


@router.post("/", response_model=PolicyOut)
async def create_policy(
    body: PolicyCreate,
    db: Session = Depends(get_db),
    identity: RequestIdentity = Depends(get_identity),
    services: GovernanceServices = Depends(get_services),
    _=Depends(manage_policies),
):
    """Create a policy; malformed conditions are rejected with per-condition detail."""
    data = body.model_dump()
    data["conditions"] = [c.model_dump() for c in body.conditions]
    policy = policy_service.create(db, **data)
    snapshot = policy_snapshot(policy)
    services.audit.record(db, "policy.created", "policies", policy.id, actor=identity, after=snapshot)
    db.commit()
    return PolicyOut(**snapshot)


@router.put("/{policy_id}", response_model=PolicyOut)
async def update_policy(
    policy_id: int,
    body: PolicyUpdate,
    db: Session = Depends(get_db),
    identity: RequestIdentity = Depends(get_identity),
    services: GovernanceServices = Depends(get_services),
    _=Depends(manage_policies),
):
    before = policy_snapshot(policy_service.get(db, policy_id))
    changes = body.model_dump(exclude_unset=True)
    if body.conditions is not None:
        changes["conditions"] = [c.model_dump() for c in body.conditions]
    policy = policy_service.update(db, policy_id, **changes)
    after = policy_snapshot(policy)
    services.audit.record(db, "policy.updated", "policies", policy.id, actor=identity, before=before, after=after)
    db.commit()
    return PolicyOut(**after)


@router.delete("/{policy_id}", response_model=MessageResponse)
async def delete_policy(
    policy_id: int,
    db: Session = Depends(get_db),
    identity: RequestIdentity = Depends(get_identity),
    services: GovernanceServices = Depends(get_services),
    _=Depends(manage_policies),
):
    before = policy_snapshot(policy_service.get(db, policy_id))
    policy_service.delete(db, policy_id)
    services.audit.record(db, "policy.deleted", "policies", policy_id, actor=identity, before=before)
    db.commit()
    return MessageResponse(message=f"Policy '{before['name']}' deleted")


@router.post("/evaluate")
async def dry_run(
    body: PolicyDryRun,
    db: Session = Depends(get_db),
    identity: RequestIdentity = Depends(get_identity),
    services: GovernanceServices = Depends(get_services),
):
    """Evaluate active policies against a hypothetical context. Nothing is recorded."""
    context = PolicyContext(
        action=body.action,
        resource=body.resource,
        resource_id=body.resource_id,
        user_id=body.user_id,
        user_roles=tuple(body.user_roles),
        metadata=body.metadata,
    )
    result = services.policy_engine.evaluate(policy_service.active_definitions(db), context)
    return result.to_dict()
