"""Roles, permissions and role-assignment API router."""

from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from governance_core.api.deps import get_services, governed
from governance_core.core.security import RequestIdentity, get_identity
from governance_core.db.session import get_db
from governance_core.models.role import Permission, Role
from governance_core.schemas.schemas import (
    AssignmentCreate, AssignmentOut, MessageResponse, PermissionCheck,
    PermissionCreate, PermissionOut, RoleCreate, RoleOut, RoleUpdate,
)
from governance_core.services.container import GovernanceServices
from governance_core.services.rbac_service import permission_snapshot, rbac_service, role_snapshot

router = APIRouter(prefix="/governance", tags=["roles"])

manage_roles = governed("manage", "roles")


@router.get("/roles", response_model=list[RoleOut])
async def list_roles(db: Session = Depends(get_db), identity: RequestIdentity = Depends(get_identity)):
    """List roles, most senior first."""
    return rbac_service.list_roles(db)


@router.post("/roles", response_model=RoleOut)
async def create_role(
    body: RoleCreate,
    db: Session = Depends(get_db),
    identity: RequestIdentity = Depends(get_identity),
    services: GovernanceServices = Depends(get_services),
    _=Depends(manage_roles),
):
    role = rbac_service.create_role(db, body.name, body.priority, body.description, body.display_name)
    services.audit.record(db, "role.created", "roles", role.id, actor=identity, after=role_snapshot(role))
    db.commit()
    db.refresh(role)
    return role


@router.put("/roles/{role_id}", response_model=RoleOut)
async def update_role(
    role_id: int,
    body: RoleUpdate,
    db: Session = Depends(get_db),
    identity: RequestIdentity = Depends(get_identity),
    services: GovernanceServices = Depends(get_services),
    _=Depends(manage_roles),
):
    """Update a role; roles already held by users are immutable."""
    before = role_snapshot(rbac_service.get_role(db, role_id))
    role = rbac_service.update_role(db, role_id, **body.model_dump(exclude_unset=True))
    services.audit.record(db, "role.updated", "roles", role.id, actor=identity, before=before, after=role_snapshot(role))
    db.commit()
    db.refresh(role)
    return role


@router.delete("/roles/{role_id}", response_model=MessageResponse)
async def delete_role(
    role_id: int,
    db: Session = Depends(get_db),
    identity: RequestIdentity = Depends(get_identity),
    services: GovernanceServices = Depends(get_services),
    _=Depends(manage_roles),
):
    """Delete a role with its permissions and assignments."""
    before = role_snapshot(rbac_service.get_role(db, role_id))
    rbac_service.delete_role(db, role_id)
    services.audit.record(db, "role.deleted", "roles", role_id, actor=identity, before=before)
    db.commit()
    return MessageResponse(message=f"Role '{before['name']}' deleted")


@router.get("/permissions", response_model=list[PermissionOut])
async def list_permissions(
    role: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    identity: RequestIdentity = Depends(get_identity),
):
    query = db.query(Permission)
    if role:
        query = query.join(Role, Permission.role_id == Role.id).filter(Role.name == role)
    return query.order_by(Permission.role_id, Permission.resource, Permission.action).all()


@router.post("/permissions", response_model=PermissionOut)
async def grant_permission(
    body: PermissionCreate,
    db: Session = Depends(get_db),
    identity: RequestIdentity = Depends(get_identity),
    services: GovernanceServices = Depends(get_services),
    _=Depends(manage_roles),
):
    permission = rbac_service.grant(
        db, body.role_id, body.action, body.resource, body.scope, body.scope_value, body.is_allowed,
    )
    services.audit.record(
        db, "permission.granted", "permissions", permission.id,
        actor=identity, after=permission_snapshot(permission),
    )
    db.commit()
    db.refresh(permission)
    return permission


@router.delete("/permissions/{permission_id}", response_model=MessageResponse)
async def revoke_permission(
    permission_id: int,
    db: Session = Depends(get_db),
    identity: RequestIdentity = Depends(get_identity),
    services: GovernanceServices = Depends(get_services),
    _=Depends(manage_roles),
):
    permission = rbac_service.revoke(db, permission_id)
    services.audit.record(
        db, "permission.revoked", "permissions", permission_id,
        actor=identity, before=permission_snapshot(permission),
    )
    db.commit()
    return MessageResponse(message="Permission revoked")


@router.post("/permissions/check")
async def check_permission(
    body: PermissionCheck,
    db: Session = Depends(get_db),
    identity: RequestIdentity = Depends(get_identity),
):
    """Evaluate RBAC alone for an arbitrary role set."""
    allowed = rbac_service.has_permission(db, body.roles, body.action, body.resource, body.scope, body.scope_value)
    return {"allowed": allowed}


@router.post("/assignments", response_model=AssignmentOut)
async def assign_role(
    body: AssignmentCreate,
    db: Session = Depends(get_db),
    identity: RequestIdentity = Depends(get_identity),
    services: GovernanceServices = Depends(get_services),
    _=Depends(manage_roles),
):
    assignment = rbac_service.assign(db, body.user_id, body.role_name, granted_by=identity.user_id)
    services.audit.record(
        db, "role.assigned", "user_roles", body.user_id, actor=identity,
        after={"user_id": body.user_id, "role": body.role_name},
    )
    db.commit()
    db.refresh(assignment)
    return assignment


@router.delete("/assignments", response_model=MessageResponse)
async def unassign_role(
    user_id: str = Query(...),
    role_name: str = Query(...),
    db: Session = Depends(get_db),
    identity: RequestIdentity = Depends(get_identity),
    services: GovernanceServices = Depends(get_services),
    _=Depends(manage_roles),
):
    rbac_service.unassign(db, user_id, role_name)
    services.audit.record(
        db, "role.unassigned", "user_roles", user_id, actor=identity,
        before={"user_id": user_id, "role": role_name},
    )
    db.commit()
    return MessageResponse(message=f"Role '{role_name}' removed from user {user_id}")


@router.get("/users/{user_id}/roles")
async def user_roles(user_id: str, db: Session = Depends(get_db), identity: RequestIdentity = Depends(get_identity)):
    """Roles held by a user and the permissions they add up to."""
    roles = rbac_service.roles_for_user(db, user_id)
    permissions = rbac_service.permissions_for_roles(db, roles)
    return {
        "user_id": user_id,
        "roles": roles,
        "permissions": [permission_snapshot(p) for p in permissions],
    }
