"""
Unit tests for the policy condition engine and policy store.
"""

import json

import pytest

from governance_core.core.exceptions import ResourceConflictError, ValidationError
from governance_core.models.policy import Policy
from governance_core.services.policy_engine import (
    Condition, Operator, PolicyContext, PolicyDefinition, PolicyEffect, PolicyEngine,
    policy_service, reduce_effects, validate_conditions,
)


@pytest.fixture
def engine():
    return PolicyEngine(bypass_roles=["super_admin"], admin_roles=["admin", "super_admin"])


def _context(**kwargs):
    defaults = {"action": "export", "resource": "reports", "user_id": "u-1", "user_roles": ("analyst",)}
    defaults.update(kwargs)
    return PolicyContext(**defaults)


def _policy(name, effect, conditions=(), priority=0, message=None, **sets):
    return PolicyDefinition(
        name=name,
        effect=PolicyEffect(effect),
        conditions=tuple(Condition(f, Operator(op), v) for f, op, v in conditions),
        priority=priority,
        message=message,
        actions=frozenset(sets.get("actions", ())),
        resources=frozenset(sets.get("resources", ())),
        roles=frozenset(sets.get("roles", ())),
    )


@pytest.mark.parametrize("field, op, value, expected", [
    ("action", "eq", "export", True),
    ("action", "ne", "export", False),
    ("metadata.size", "gt", 100, True),
    ("metadata.size", "gte", 150, True),
    ("metadata.size", "lt", 100, False),
    ("metadata.size", "lte", 150, True),
    ("resource", "in", ["reports", "users"], True),
    ("resource", "nin", ["reports", "users"], False),
    ("user_roles", "in", ["admin", "analyst"], True),
    ("user_roles", "contains", "analyst", True),
    ("metadata.note", "contains", "quarter", True),
    ("metadata.note", "matches", r"^Q[1-4]", True),
    ("metadata.missing", "matches", ".*", False),
])
def test_operators(engine, field, op, value, expected):
    context = _context(metadata={"size": 150, "note": "Q3 quarterly report"})
    assert engine.evaluate_condition(Condition(field, Operator(op), value), context) is expected


def test_numeric_operators_ignore_non_numbers(engine):
    context = _context(metadata={"flag": True, "size": "150"})
    assert not engine.evaluate_condition(Condition("metadata.flag", Operator.gt, 0), context)
    assert not engine.evaluate_condition(Condition("metadata.size", Operator.gt, 100), context)


def test_invalid_pattern_evaluates_false(engine):
    context = _context(metadata={"note": "abc"})
    assert not engine.evaluate_condition(Condition("metadata.note", Operator.matches, "[unclosed"), context)


def test_nested_metadata_path(engine):
    context = _context(metadata={"owner": {"team": "finance"}})
    assert engine.resolve_field(context, "metadata.owner.team") == "finance"
    assert engine.resolve_field(context, "metadata.owner.team.name") is None


def test_derived_fields(engine):
    context = _context(user_roles=("admin",), metadata={"requester_id": "u-1"})
    assert engine.resolve_field(context, "is_admin") is True
    assert engine.resolve_field(context, "is_own_request") is True
    assert engine.resolve_field(_context(user_id=None), "is_authenticated") is False
    assert engine.resolve_field(_context(metadata={"requester_id": "u-2"}), "is_own_request") is False


def test_reduce_effects_precedence():
    assert reduce_effects([]) is PolicyEffect.allow
    assert reduce_effects(["allow", "warn"]) is PolicyEffect.warn
    assert reduce_effects(["warn", "block", "allow"]) is PolicyEffect.block


def test_block_beats_warn_and_collects_messages(engine):
    policies = [
        _policy("size-warning", "warn", [("metadata.size", "gt", 100)], message="Large export"),
        _policy("finance-only", "block", [("metadata.team", "ne", "finance")], priority=5),
        _policy("irrelevant", "block", actions=["delete"]),
    ]
    result = engine.evaluate(policies, _context(metadata={"size": 500, "team": "ops"}))

    assert result.effect is PolicyEffect.block
    assert not result.allowed
    assert result.matched_policies == ["finance-only", "size-warning"]
    assert result.messages == ["Blocked by policy 'finance-only'"]
    assert result.warnings == ["Large export"]


def test_warn_only_is_allowed(engine):
    result = engine.evaluate([_policy("heads-up", "warn", message="careful")], _context())
    assert result.allowed
    assert result.effect is PolicyEffect.warn
    assert result.to_dict()["warnings"] == ["careful"]


def test_no_applicable_policy_allows(engine):
    result = engine.evaluate([_policy("other", "block", resources=["users"])], _context())
    assert result.allowed
    assert result.matched_policies == []


def test_wildcard_and_role_applicability(engine):
    wildcard = _policy("all-actions", "block", actions=["*"], roles=["analyst"])
    assert not engine.evaluate([wildcard], _context()).allowed
    assert engine.evaluate([wildcard], _context(user_roles=("viewer",))).allowed


def test_bypass_role_skips_policies_unless_disabled(engine):
    policy = _policy("own-request", "block", [("is_own_request", "eq", True)])
    context = _context(user_roles=("super_admin",), metadata={"requester_id": "u-1"})

    assert engine.evaluate([policy], context).allowed
    strict = engine.evaluate([policy], context, allow_bypass=False)
    assert not strict.allowed
    assert strict.matched_policies == ["own-request"]


def test_validate_conditions_reports_each_problem():
    with pytest.raises(ValidationError) as exc:
        validate_conditions([
            {"field": "action", "operator": "eq", "value": "x"},
            {"field": "bogus", "operator": "eq", "value": 1},
            {"field": "metadata.size", "operator": "gt", "value": "big"},
            {"field": "resource", "operator": "in", "value": "reports"},
            {"field": "metadata.note", "operator": "matches", "value": "(open"},
            {"field": "action", "operator": "like", "value": "x"},
        ])
    errors = exc.value.errors
    assert [(e["index"], e["field"]) for e in errors] == [
        (1, "field"), (2, "value"), (3, "value"), (4, "value"), (5, "operator"),
    ]


def test_validate_rejects_non_object_condition():
    with pytest.raises(ValidationError) as exc:
        validate_conditions(["action == export"])
    assert exc.value.errors[0]["message"] == "must be an object"


def test_policy_store_round_trip(db):
    policy = policy_service.create(
        db, name="block-large-exports", effect="block", actions=["export"],
        conditions=[{"field": "metadata.record_count", "operator": "gt", "value": 10000}],
        message="Too large",
    )
    db.commit()

    names = [d.name for d in policy_service.active_definitions(db)]
    assert "block-large-exports" in names

    policy_service.update(db, policy.id, is_active=False)
    db.commit()
    assert "block-large-exports" not in [d.name for d in policy_service.active_definitions(db)]


def test_policy_store_rejects_bad_input(db):
    with pytest.raises(ValidationError) as exc:
        policy_service.create(db, name="broken", effect="explode", category="nonsense")
    assert {e["field"] for e in exc.value.errors} == {"effect", "category"}

    with pytest.raises(ResourceConflictError):
        policy_service.create(db, name="no-self-approval", effect="block")


def test_pattern_check_only_applies_to_writes():
    raw = [{"field": "resource", "operator": "matches", "value": "("}]
    with pytest.raises(ValidationError):
        validate_conditions(raw)
    assert validate_conditions(raw, strict=False)[0].value == "("


def test_stored_invalid_pattern_never_matches(db, engine):
    db.add(Policy(
        name="legacy-pattern", effect="block",
        conditions_json=json.dumps([{"field": "resource", "operator": "matches", "value": "("}]),
    ))
    db.commit()

    definitions = policy_service.active_definitions(db)
    assert "legacy-pattern" in [d.name for d in definitions]
    result = engine.evaluate(definitions, _context(resource="(reports"))
    assert "legacy-pattern" not in result.matched_policies


def test_unreadable_stored_policy_is_skipped(db):
    db.add(Policy(
        name="legacy-operator", effect="block",
        conditions_json=json.dumps([{"field": "resource", "operator": "between", "value": [1, 2]}]),
    ))
    db.add(Policy(name="legacy-effect", effect="explode"))
    db.commit()

    names = [d.name for d in policy_service.active_definitions(db)]
    assert "legacy-operator" not in names
    assert "legacy-effect" not in names
    assert "no-self-approval" in names
