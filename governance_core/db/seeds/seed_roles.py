"""Seed default roles and their permissions."""

import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from governance_core.models.role import GLOBAL_SCOPE, Permission, Role

logger = logging.getLogger("governance_core")

ROLES = [
    {"name": "super_admin", "display_name": "Super Admin", "priority": 100, "is_system": True,
     "description": "Full governance access, bypasses policies"},
    {"name": "admin", "display_name": "Admin", "priority": 80, "is_system": True,
     "description": "Manage roles, policies and approvals"},
    {"name": "ops", "display_name": "Operations", "priority": 60, "is_system": True,
     "description": "Approve routine requests and run exports"},
    {"name": "editor", "display_name": "Editor", "priority": 40, "is_system": True,
     "description": "Create and publish content"},
    {"name": "analyst", "display_name": "Analyst", "priority": 30, "is_system": True,
     "description": "Read and export reporting data"},
    {"name": "viewer", "display_name": "Viewer", "priority": 10, "is_system": True,
     "description": "Read-only access"},
]

# role -> (action, resource, scope, scope_value, is_allowed)
PERMISSIONS = {
    "super_admin": [
        ("manage", "roles", GLOBAL_SCOPE, None, True),
        ("manage", "policies", GLOBAL_SCOPE, None, True),
        ("view", "audit_logs", GLOBAL_SCOPE, None, True),
        ("approve", "approval_requests", GLOBAL_SCOPE, None, True),
        ("export", "audit_logs", GLOBAL_SCOPE, None, True),
        ("export", "roles", GLOBAL_SCOPE, None, True),
        ("export", "permissions", GLOBAL_SCOPE, None, True),
        ("export", "policies", GLOBAL_SCOPE, None, True),
        ("export", "approval_requests", GLOBAL_SCOPE, None, True),
    ],
    "admin": [
        ("manage", "roles", GLOBAL_SCOPE, None, True),
        ("manage", "policies", GLOBAL_SCOPE, None, True),
        ("view", "audit_logs", GLOBAL_SCOPE, None, True),
        ("approve", "approval_requests", GLOBAL_SCOPE, None, True),
        ("export", "audit_logs", GLOBAL_SCOPE, None, True),
        ("export", "policies", GLOBAL_SCOPE, None, True),
        ("export", "approval_requests", GLOBAL_SCOPE, None, True),
        ("delete", "content", GLOBAL_SCOPE, None, True),
    ],
    "ops": [
        ("approve", "approval_requests", GLOBAL_SCOPE, None, True),
        ("view", "audit_logs", GLOBAL_SCOPE, None, True),
        ("export", "approval_requests", GLOBAL_SCOPE, None, True),
    ],
    "editor": [
        ("view", "content", GLOBAL_SCOPE, None, True),
        ("edit", "content", GLOBAL_SCOPE, None, True),
        ("publish", "content", GLOBAL_SCOPE, None, True),
        ("delete", "content", GLOBAL_SCOPE, None, False),
    ],
    "analyst": [
        ("view", "content", GLOBAL_SCOPE, None, True),
        ("export", "approval_requests", GLOBAL_SCOPE, None, True),
    ],
    "viewer": [
        ("view", "content", GLOBAL_SCOPE, None, True),
    ],
}


def seed_roles(db: Session) -> int:
    """Insert default roles and permissions that do not exist yet.

    Rows are matched on their natural keys, so running this again is a no-op.
    Returns the number of rows inserted.
    """
    inserted = 0
    for role_data in ROLES:
        if not db.query(Role).filter(Role.name == role_data["name"]).first():
            db.add(Role(**role_data))
            inserted += 1
    db.flush()

    for role_name, grants in PERMISSIONS.items():
        role = db.query(Role).filter(Role.name == role_name).first()
        for action, resource, scope, scope_value, is_allowed in grants:
            exists = (
                db.query(Permission.id)
                .filter(
                    Permission.role_id == role.id,
                    Permission.action == action,
                    Permission.resource == resource,
                    Permission.scope == scope,
                    Permission.scope_value.is_(None) if scope_value is None else Permission.scope_value == scope_value,
                )
                .first()
            )
            if not exists:
                db.add(Permission(
                    role_id=role.id, action=action, resource=resource,
                    scope=scope, scope_value=scope_value, is_allowed=is_allowed,
                ))
                inserted += 1

    try:
        db.commit()
    except IntegrityError:
        # another process seeded concurrently
        db.rollback()
        logger.info("Roles already seeded by a concurrent run")
        return 0
    logger.info("Seeded %s role and permission rows", inserted)
    return inserted
