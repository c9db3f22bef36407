"""Seed baseline policies and approval rules."""

import json
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from governance_core.models.policy import ApprovalRule, Policy, PolicyCategory
from governance_core.services.policy_engine import validate_conditions

logger = logging.getLogger("governance_core")

POLICIES = [
    {
        "name": "no-self-approval",
        "description": "Approvers may never decide their own requests",
        "category": PolicyCategory.approval,
        "effect": "block",
        "priority": 100,
        "actions": ["approval.decide"],
        "conditions": [{"field": "is_own_request", "operator": "eq", "value": True}],
        "message": "You cannot approve or reject your own request",
    },
    {
        "name": "require-authentication",
        "description": "Anonymous callers are never allowed through",
        "category": PolicyCategory.restriction,
        "effect": "block",
        "priority": 90,
        "conditions": [{"field": "is_authenticated", "operator": "eq", "value": False}],
        "message": "Authentication required",
    },
    {
        "name": "viewer-no-delete",
        "description": "Viewers cannot delete anything",
        "category": PolicyCategory.restriction,
        "effect": "block",
        "priority": 50,
        "actions": ["delete"],
        "roles": ["viewer"],
        "message": "Viewers cannot delete resources",
    },
    {
        "name": "governance-export-warning",
        "description": "Flag exports of governance records",
        "category": PolicyCategory.warning,
        "effect": "warn",
        "priority": 10,
        "actions": ["export"],
        "conditions": [{"field": "resource", "operator": "in", "value": ["audit_logs", "approval_requests"]}],
        "message": "Exports of governance records are monitored",
    },
]

APPROVAL_RULES = [
    {"name": "export-approval", "request_type": "export", "resource_type": "export_request",
     "approver_role": "admin", "escalation_targets": ["super_admin"],
     "base_sla_hours": 24, "max_escalation_level": 2},
    {"name": "content-publish", "request_type": "publish", "resource_type": "content",
     "approver_role": "editor", "escalation_targets": ["admin", "super_admin"],
     "base_sla_hours": 24, "max_escalation_level": 2, "auto_approve": True, "max_risk_score": 50},
    {"name": "content-delete", "request_type": "delete", "resource_type": "content",
     "approver_role": "admin", "escalation_targets": ["super_admin"],
     "base_sla_hours": 48, "max_escalation_level": 1, "auto_reject": True},
    {"name": "role-management", "request_type": "manage_roles", "resource_type": "users",
     "approver_role": "super_admin", "escalation_targets": [],
     "base_sla_hours": 24, "max_escalation_level": 1},
]


def seed_policies(db: Session) -> int:
    """Insert baseline policies and approval rules missing by name."""
    inserted = 0
    for data in POLICIES:
        if db.query(Policy).filter(Policy.name == data["name"]).first():
            continue
        conditions = validate_conditions(data.get("conditions", []))
        db.add(Policy(
            name=data["name"],
            description=data["description"],
            category=data["category"],
            effect=data["effect"],
            priority=data["priority"],
            actions_json=json.dumps(data.get("actions", [])),
            resources_json=json.dumps(data.get("resources", [])),
            roles_json=json.dumps(data.get("roles", [])),
            conditions_json=json.dumps([c.to_dict() for c in conditions]),
            message=data["message"],
        ))
        inserted += 1

    for data in APPROVAL_RULES:
        if db.query(ApprovalRule).filter(ApprovalRule.name == data["name"]).first():
            continue
        rule = dict(data)
        targets = rule.pop("escalation_targets")
        db.add(ApprovalRule(escalation_targets_json=json.dumps(targets), **rule))
        inserted += 1

    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info("Policies already seeded by a concurrent run")
        return 0
    logger.info("Seeded %s policy and approval-rule rows", inserted)
    return inserted
