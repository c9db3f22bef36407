"""
Unit tests for seeding, settings defaults and identity claims.
"""

from governance_core.core.config import Settings
from governance_core.core.security import identity_from_claims
from governance_core.db.seeds.seed_policies import APPROVAL_RULES, POLICIES, seed_policies
from governance_core.db.seeds.seed_roles import ROLES, seed_roles
from governance_core.models.policy import ApprovalRule, Policy
from governance_core.models.role import Role


def test_seeding_is_idempotent(db):
    # the db fixture already seeded once
    assert seed_roles(db) == 0
    assert seed_policies(db) == 0
    assert db.query(Role).count() == len(ROLES)
    assert db.query(Policy).count() == len(POLICIES)
    assert db.query(ApprovalRule).count() == len(APPROVAL_RULES)


def test_seeding_fills_gaps(db):
    db.query(Policy).filter(Policy.name == "viewer-no-delete").delete()
    db.commit()
    assert seed_policies(db) == 1


def test_feature_toggles_default_off():
    settings = Settings(_env_file=None)
    assert not any([
        settings.ENABLE_RBAC,
        settings.ENABLE_POLICY_ENFORCEMENT,
        settings.ENABLE_APPROVAL_WORKFLOWS,
        settings.ENABLE_AUDIT_LOGS,
        settings.ENABLE_ESCALATION,
        settings.ENABLE_EXPORT_GATING,
        settings.ENABLE_NOTIFICATIONS,
    ])


def test_identity_from_claims():
    identity = identity_from_claims({"sub": 17, "roles": ["editor", "analyst"]})
    assert identity.user_id == "17"
    assert identity.roles == ["editor", "analyst"]

    single = identity_from_claims({"sub": "u-2", "role": "viewer"})
    assert single.roles == ["viewer"]

    anonymous = identity_from_claims({})
    assert not anonymous.is_authenticated
