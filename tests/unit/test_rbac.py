"""
Unit tests for RBAC permission evaluation and role administration.
"""

import pytest

from governance_core.core.exceptions import (
    ResourceConflictError, ResourceNotFoundError, ValidationError,
)
from governance_core.models.role import Permission, UserRoleAssignment
from governance_core.services.rbac_service import (
    PermissionEntry, has_permission, matches_scope, rbac_service,
)


def test_global_permission_covers_any_scope():
    entry = PermissionEntry("edit", "content")
    assert matches_scope(entry)
    assert matches_scope(entry, "team", "t-1")


def test_scoped_permission_needs_same_scope_kind():
    entry = PermissionEntry("edit", "content", scope="team", scope_value="t-1")
    assert matches_scope(entry, "team", "t-1")
    assert not matches_scope(entry, "team", "t-2")
    assert not matches_scope(entry, "project", "t-1")
    assert not matches_scope(entry)


def test_scoped_permission_without_value_covers_every_value():
    entry = PermissionEntry("edit", "content", scope="team")
    assert matches_scope(entry, "team", "t-1")
    assert matches_scope(entry, "team", "t-9")


def test_no_matching_entry_denies():
    assert not has_permission([], "view", "content")
    assert not has_permission([PermissionEntry("view", "reports")], "view", "content")


def test_explicit_deny_beats_allow_from_another_role():
    entries = [
        PermissionEntry("delete", "content", is_allowed=True),
        PermissionEntry("delete", "content", is_allowed=False),
    ]
    assert not has_permission(entries, "delete", "content")


def test_out_of_scope_deny_does_not_apply():
    entries = [
        PermissionEntry("edit", "content"),
        PermissionEntry("edit", "content", scope="team", scope_value="t-2", is_allowed=False),
    ]
    assert has_permission(entries, "edit", "content", "team", "t-1")
    assert not has_permission(entries, "edit", "content", "team", "t-2")


def test_action_and_resource_match_exactly():
    entries = [PermissionEntry("export", "audit_logs")]
    assert not has_permission(entries, "export", "audit")
    assert not has_permission(entries, "Export", "audit_logs")


def test_seeded_roles_union_with_deny_precedence(db):
    assert rbac_service.has_permission(db, ["admin"], "delete", "content")
    assert not rbac_service.has_permission(db, ["editor"], "delete", "content")
    # editor's explicit deny wins over admin's allow
    assert not rbac_service.has_permission(db, ["admin", "editor"], "delete", "content")


def test_senior_role_does_not_inherit_junior_permissions(db):
    assert rbac_service.has_permission(db, ["editor"], "publish", "content")
    assert not rbac_service.has_permission(db, ["admin"], "publish", "content")


def test_unknown_roles_contribute_nothing(db):
    assert rbac_service.permissions_for_roles(db, ["ghost"]) == []
    assert not rbac_service.has_permission(db, ["ghost"], "view", "content")
    assert rbac_service.has_permission(db, ["ghost", "viewer"], "view", "content")


def test_inactive_role_grants_nothing(db):
    role = rbac_service.create_role(db, "contractor", 20)
    rbac_service.grant(db, role.id, "view", "content")
    db.commit()
    assert rbac_service.has_permission(db, ["contractor"], "view", "content")

    rbac_service.update_role(db, role.id, is_active=False)
    db.commit()
    assert not rbac_service.has_permission(db, ["contractor"], "view", "content")


def test_create_role_validation(db):
    with pytest.raises(ValidationError) as exc:
        rbac_service.create_role(db, "bad", 0)
    assert exc.value.errors[0]["field"] == "priority"

    with pytest.raises(ResourceConflictError):
        rbac_service.create_role(db, "admin", 50)


def test_role_held_by_users_is_immutable(db):
    role = rbac_service.create_role(db, "auditor", 25)
    rbac_service.assign(db, "carol", "auditor", granted_by="alice")
    db.commit()

    with pytest.raises(ResourceConflictError):
        rbac_service.update_role(db, role.id, priority=30)


def test_delete_role_cascades(db):
    role = rbac_service.create_role(db, "auditor", 25)
    rbac_service.grant(db, role.id, "view", "audit_logs")
    rbac_service.assign(db, "carol", "auditor")
    db.commit()
    role_id = role.id

    rbac_service.delete_role(db, role_id)
    db.commit()

    assert db.query(Permission).filter(Permission.role_id == role_id).count() == 0
    assert db.query(UserRoleAssignment).filter(UserRoleAssignment.role_id == role_id).count() == 0
    assert rbac_service.roles_for_user(db, "carol") == []


def test_system_roles_cannot_be_deleted(db):
    admin = rbac_service.get_role_by_name(db, "admin")
    with pytest.raises(ResourceConflictError):
        rbac_service.delete_role(db, admin.id)


def test_duplicate_grant_and_assignment_conflict(db):
    viewer = rbac_service.get_role_by_name(db, "viewer")
    with pytest.raises(ResourceConflictError):
        rbac_service.grant(db, viewer.id, "view", "content")

    rbac_service.assign(db, "dave", "viewer")
    db.commit()
    with pytest.raises(ResourceConflictError):
        rbac_service.assign(db, "dave", "viewer")


def test_unassign_missing_assignment(db):
    with pytest.raises(ResourceNotFoundError):
        rbac_service.unassign(db, "nobody", "viewer")
    with pytest.raises(ResourceNotFoundError):
        rbac_service.get_role_by_name(db, "ghost")
