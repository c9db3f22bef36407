"""RBAC service: permission evaluation plus role, grant and assignment admin."""

import logging
from typing import Iterable, List, NamedTuple, Optional, Sequence

from sqlalchemy.orm import Session

from governance_core.core.clock import utcnow
from governance_core.core.exceptions import (
    ResourceConflictError, ResourceNotFoundError, ValidationError,
)
from governance_core.models.role import GLOBAL_SCOPE, Permission, Role, UserRoleAssignment

logger = logging.getLogger("governance_core")


class PermissionEntry(NamedTuple):
    """Detached permission, shaped like a ``Permission`` row."""

    action: str
    resource: str
    scope: str = GLOBAL_SCOPE
    scope_value: Optional[str] = None
    is_allowed: bool = True


def matches_scope(permission, scope: Optional[str] = None, scope_value: Optional[str] = None) -> bool:
    """Whether a permission covers the requested scope.

    A global permission covers any request. A scoped one covers requests of
    the same scope kind, and when it names a value, only that value.
    """
    if permission.scope == GLOBAL_SCOPE:
        return True
    if permission.scope != (scope or GLOBAL_SCOPE):
        return False
    if not permission.scope_value:
        return True
    return permission.scope_value == scope_value


def has_permission(
    permissions: Iterable,
    action: str,
    resource: str,
    scope: Optional[str] = None,
    scope_value: Optional[str] = None,
) -> bool:
    """Union-of-roles permission check with explicit-deny precedence."""
    relevant = [p for p in permissions if p.action == action and p.resource == resource]
    if not relevant:
        return False
    in_scope = [p for p in relevant if matches_scope(p, scope, scope_value)]
    if any(not p.is_allowed for p in in_scope):
        return False
    return any(p.is_allowed for p in in_scope)


class RBACService:
    """Role and permission store operations."""

    @staticmethod
    def permissions_for_roles(db: Session, role_names: Sequence[str]) -> List[Permission]:
        """All permissions held by the named, active roles. Unknown names contribute nothing."""
        if not role_names:
            return []
        return (
            db.query(Permission)
            .join(Role, Permission.role_id == Role.id)
            .filter(Role.name.in_(list(role_names)), Role.is_active == True)  # noqa: E712
            .all()
        )

    @staticmethod
    def has_permission(
        db: Session,
        user_roles: Sequence[str],
        action: str,
        resource: str,
        scope: Optional[str] = None,
        scope_value: Optional[str] = None,
    ) -> bool:
        permissions = RBACService.permissions_for_roles(db, user_roles)
        return has_permission(permissions, action, resource, scope, scope_value)

    # ---- Roles ----

    @staticmethod
    def get_role(db: Session, role_id: int) -> Role:
        role = db.query(Role).filter(Role.id == role_id).first()
        if not role:
            raise ResourceNotFoundError(f"Role {role_id} not found")
        return role

    @staticmethod
    def get_role_by_name(db: Session, name: str) -> Role:
        role = db.query(Role).filter(Role.name == name).first()
        if not role:
            raise ResourceNotFoundError(f"Role '{name}' not found")
        return role

    @staticmethod
    def list_roles(db: Session) -> List[Role]:
        return db.query(Role).order_by(Role.priority.desc(), Role.name).all()

    @staticmethod
    def create_role(
        db: Session,
        name: str,
        priority: int,
        description: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> Role:
        """Stage a new role. The caller commits."""
        if priority < 1:
            raise ValidationError(
                "Role priority must be positive",
                errors=[{"field": "priority", "message": "must be >= 1"}],
            )
        if db.query(Role).filter(Role.name == name).first():
            raise ResourceConflictError(f"Role '{name}' already exists")
        role = Role(name=name, priority=priority, description=description, display_name=display_name)
        db.add(role)
        db.flush()
        return role

    @staticmethod
    def update_role(db: Session, role_id: int, **changes) -> Role:
        """Update a role that no user holds yet."""
        role = RBACService.get_role(db, role_id)
        held = db.query(UserRoleAssignment).filter(UserRoleAssignment.role_id == role.id).count()
        if held > 0:
            raise ResourceConflictError(f"Role '{role.name}' is assigned to users and cannot change")
        if "priority" in changes and changes["priority"] is not None and changes["priority"] < 1:
            raise ValidationError(
                "Role priority must be positive",
                errors=[{"field": "priority", "message": "must be >= 1"}],
            )
        for key, value in changes.items():
            if value is not None and key in ("name", "priority", "description", "display_name", "is_active"):
                setattr(role, key, value)
        db.flush()
        return role

    @staticmethod
    def delete_role(db: Session, role_id: int) -> Role:
        """Delete a role, cascading to its permissions and assignments."""
        role = RBACService.get_role(db, role_id)
        if role.is_system:
            raise ResourceConflictError(f"System role '{role.name}' cannot be deleted")
        db.delete(role)
        db.flush()
        logger.info(f"Role '{role.name}' deleted with its permissions and assignments")
        return role

    # ---- Permissions ----

    @staticmethod
    def grant(
        db: Session,
        role_id: int,
        action: str,
        resource: str,
        scope: str = GLOBAL_SCOPE,
        scope_value: Optional[str] = None,
        is_allowed: bool = True,
    ) -> Permission:
        role = RBACService.get_role(db, role_id)
        existing = (
            db.query(Permission)
            .filter(
                Permission.role_id == role.id,
                Permission.action == action,
                Permission.resource == resource,
                Permission.scope == scope,
                Permission.scope_value == scope_value if scope_value is not None else Permission.scope_value.is_(None),
            )
            .first()
        )
        if existing:
            raise ResourceConflictError(
                f"Permission {action}:{resource} ({scope}) already exists on role '{role.name}'"
            )
        permission = Permission(
            role_id=role.id, action=action, resource=resource,
            scope=scope, scope_value=scope_value, is_allowed=is_allowed,
        )
        db.add(permission)
        db.flush()
        return permission

    @staticmethod
    def revoke(db: Session, permission_id: int) -> Permission:
        permission = db.query(Permission).filter(Permission.id == permission_id).first()
        if not permission:
            raise ResourceNotFoundError(f"Permission {permission_id} not found")
        db.delete(permission)
        db.flush()
        return permission

    # ---- Assignments ----

    @staticmethod
    def assign(db: Session, user_id: str, role_name: str, granted_by: Optional[str] = None) -> UserRoleAssignment:
        role = RBACService.get_role_by_name(db, role_name)
        existing = (
            db.query(UserRoleAssignment)
            .filter(UserRoleAssignment.user_id == user_id, UserRoleAssignment.role_id == role.id)
            .first()
        )
        if existing:
            raise ResourceConflictError(f"User {user_id} already holds role '{role_name}'")
        assignment = UserRoleAssignment(user_id=user_id, role_id=role.id, granted_by=granted_by)
        db.add(assignment)
        db.flush()
        return assignment

    @staticmethod
    def unassign(db: Session, user_id: str, role_name: str) -> UserRoleAssignment:
        role = RBACService.get_role_by_name(db, role_name)
        assignment = (
            db.query(UserRoleAssignment)
            .filter(UserRoleAssignment.user_id == user_id, UserRoleAssignment.role_id == role.id)
            .first()
        )
        if not assignment:
            raise ResourceNotFoundError(f"User {user_id} does not hold role '{role_name}'")
        db.delete(assignment)
        db.flush()
        return assignment

    @staticmethod
    def roles_for_user(db: Session, user_id: str) -> List[str]:
        """Names of the active, unexpired roles assigned to a user."""
        now = utcnow()
        rows = (
            db.query(UserRoleAssignment)
            .join(Role, UserRoleAssignment.role_id == Role.id)
            .filter(
                UserRoleAssignment.user_id == user_id,
                UserRoleAssignment.is_active == True,  # noqa: E712
                Role.is_active == True,  # noqa: E712
            )
            .all()
        )
        return [
            row.role.name for row in rows
            if row.expires_at is None or row.expires_at > now
        ]


def role_snapshot(role: Role) -> dict:
    return {
        "id": role.id,
        "name": role.name,
        "display_name": role.display_name,
        "description": role.description,
        "priority": role.priority,
        "is_active": role.is_active,
        "permissions": [
            {
                "action": p.action, "resource": p.resource, "scope": p.scope,
                "scope_value": p.scope_value, "is_allowed": p.is_allowed,
            }
            for p in role.permissions
        ],
    }


def permission_snapshot(permission: Permission) -> dict:
    return {
        "id": permission.id,
        "role_id": permission.role_id,
        "action": permission.action,
        "resource": permission.resource,
        "scope": permission.scope,
        "scope_value": permission.scope_value,
        "is_allowed": permission.is_allowed,
    }


rbac_service = RBACService()
