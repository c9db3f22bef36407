"""Policy condition engine.

Policies are data: applicability sets (actions, resources, roles), an ordered
list of ``(field, operator, value)`` conditions and an effect. Every policy
that applies to a request contributes its effect and the results reduce by
precedence ``block > warn > allow``.
"""

import enum
import json
import logging
import re
from dataclasses import dataclass, field
from numbers import Number
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy.orm import Session

from governance_core.core.exceptions import (
    ResourceConflictError, ResourceNotFoundError, ValidationError,
)
from governance_core.models.policy import Policy, PolicyCategory

logger = logging.getLogger("governance_core")

WILDCARD = "*"
METADATA_PREFIX = "metadata."


class PolicyEffect(str, enum.Enum):
    allow = "allow"
    warn = "warn"
    block = "block"

    @property
    def rank(self) -> int:
        return _EFFECT_RANK[self]


_EFFECT_RANK = {PolicyEffect.allow: 0, PolicyEffect.warn: 1, PolicyEffect.block: 2}


def reduce_effects(effects: Iterable[PolicyEffect]) -> PolicyEffect:
    """Most severe effect wins; no effects means allow."""
    final = PolicyEffect.allow
    for effect in effects:
        effect = PolicyEffect(effect)
        if effect.rank > final.rank:
            final = effect
    return final


class ContextField(str, enum.Enum):
    action = "action"
    resource = "resource"
    resource_id = "resource_id"
    user_id = "user_id"
    user_roles = "user_roles"
    is_authenticated = "is_authenticated"
    is_admin = "is_admin"
    is_own_request = "is_own_request"


class Operator(str, enum.Enum):
    eq = "eq"
    ne = "ne"
    gt = "gt"
    gte = "gte"
    lt = "lt"
    lte = "lte"
    in_ = "in"
    nin = "nin"
    contains = "contains"
    matches = "matches"


NUMERIC_OPERATORS = frozenset({Operator.gt, Operator.gte, Operator.lt, Operator.lte})
SET_OPERATORS = frozenset({Operator.in_, Operator.nin})


@dataclass(frozen=True)
class PolicyContext:
    """Everything a condition may look at for one governed request."""

    action: str
    resource: str
    resource_id: Optional[str] = None
    user_id: Optional[str] = None
    user_roles: Sequence[str] = ()
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Condition:
    field: str
    operator: Operator
    value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {"field": self.field, "operator": self.operator.value, "value": self.value}


@dataclass(frozen=True)
class PolicyDefinition:
    """Detached, parsed view of a ``Policy`` row."""

    name: str
    effect: PolicyEffect
    actions: frozenset = frozenset()
    resources: frozenset = frozenset()
    roles: frozenset = frozenset()
    conditions: tuple = ()
    category: PolicyCategory = PolicyCategory.restriction
    message: Optional[str] = None
    priority: int = 0
    id: Optional[int] = None

    @classmethod
    def from_model(cls, policy: Policy) -> "PolicyDefinition":
        return cls(
            id=policy.id,
            name=policy.name,
            effect=PolicyEffect(policy.effect),
            actions=frozenset(_loads_list(policy.actions_json)),
            resources=frozenset(_loads_list(policy.resources_json)),
            roles=frozenset(_loads_list(policy.roles_json)),
            conditions=tuple(validate_conditions(_loads_list(policy.conditions_json), strict=False)),
            category=PolicyCategory(policy.category),
            message=policy.message,
            priority=policy.priority,
        )


@dataclass
class PolicyEvaluationResult:
    effect: PolicyEffect
    allowed: bool
    matched_policies: List[str] = field(default_factory=list)
    messages: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "effect": self.effect.value,
            "allowed": self.allowed,
            "matchedPolicies": self.matched_policies,
            "messages": self.messages,
            "warnings": self.warnings,
        }


def _loads_list(raw: Optional[str]) -> list:
    if not raw:
        return []
    value = json.loads(raw)
    return value if isinstance(value, list) else []


def _is_number(value: Any) -> bool:
    return isinstance(value, Number) and not isinstance(value, bool)


def _is_known_field(name: str) -> bool:
    if name.startswith(METADATA_PREFIX):
        return len(name) > len(METADATA_PREFIX)
    return name in ContextField._value2member_map_


def validate_condition(raw: Any, index: int = 0, strict: bool = True) -> Condition:
    """Parse one condition dict, raising ``ValidationError`` with field detail.

    ``strict=False`` skips the pattern compile check so stored rows still
    load; an invalid pattern then evaluates to false.
    """
    errors = []
    if not isinstance(raw, dict):
        raise ValidationError(
            "Malformed policy condition",
            errors=[{"index": index, "field": "condition", "message": "must be an object"}],
        )
    name = raw.get("field")
    op = raw.get("operator")
    value = raw.get("value")

    if not isinstance(name, str) or not _is_known_field(name):
        errors.append({"index": index, "field": "field", "message": f"unknown context field {name!r}"})
    if op not in Operator._value2member_map_:
        errors.append({"index": index, "field": "operator", "message": f"unknown operator {op!r}"})
    else:
        operator = Operator(op)
        if operator in NUMERIC_OPERATORS and not _is_number(value):
            errors.append({"index": index, "field": "value", "message": f"'{op}' needs a numeric value"})
        if operator in SET_OPERATORS and not isinstance(value, list):
            errors.append({"index": index, "field": "value", "message": f"'{op}' needs a list value"})
        if strict and operator is Operator.matches:
            try:
                re.compile(str(value))
            except re.error as e:
                errors.append({"index": index, "field": "value", "message": f"invalid pattern: {e}"})

    if errors:
        raise ValidationError("Malformed policy condition", errors=errors)
    return Condition(field=name, operator=Operator(op), value=value)


def validate_conditions(raw_conditions: Iterable[Any], strict: bool = True) -> List[Condition]:
    conditions = []
    errors = []
    for index, raw in enumerate(raw_conditions):
        try:
            conditions.append(validate_condition(raw, index, strict))
        except ValidationError as e:
            errors.extend(e.errors)
    if errors:
        raise ValidationError("Malformed policy conditions", errors=errors)
    return conditions


class PolicyEngine:
    """Stateless evaluator bound to the configured role tiers."""

    def __init__(self, bypass_roles: Sequence[str] = (), admin_roles: Sequence[str] = ()):
        self.bypass_roles = frozenset(bypass_roles)
        self.admin_roles = frozenset(admin_roles)

    def resolve_field(self, context: PolicyContext, name: str) -> Any:
        if name.startswith(METADATA_PREFIX):
            value: Any = context.metadata
            for part in name[len(METADATA_PREFIX):].split("."):
                if not isinstance(value, dict):
                    return None
                value = value.get(part)
            return value

        field_ = ContextField(name)
        if field_ is ContextField.action:
            return context.action
        if field_ is ContextField.resource:
            return context.resource
        if field_ is ContextField.resource_id:
            return context.resource_id
        if field_ is ContextField.user_id:
            return context.user_id
        if field_ is ContextField.user_roles:
            return list(context.user_roles)
        if field_ is ContextField.is_authenticated:
            return bool(context.user_id)
        if field_ is ContextField.is_admin:
            return bool(self.admin_roles.intersection(context.user_roles))
        if field_ is ContextField.is_own_request:
            requester = context.metadata.get("requester_id")
            return requester is not None and context.user_id is not None and str(requester) == str(context.user_id)
        raise ValueError(f"Unhandled context field {field_}")

    def evaluate_condition(self, condition: Condition, context: PolicyContext) -> bool:
        actual = self.resolve_field(context, condition.field)
        expected = condition.value
        op = condition.operator

        if op is Operator.eq:
            return actual == expected
        if op is Operator.ne:
            return actual != expected
        if op in NUMERIC_OPERATORS:
            if not (_is_number(actual) and _is_number(expected)):
                return False
            if op is Operator.gt:
                return actual > expected
            if op is Operator.gte:
                return actual >= expected
            if op is Operator.lt:
                return actual < expected
            return actual <= expected
        if op in SET_OPERATORS:
            if not isinstance(expected, (list, tuple, set, frozenset)):
                return False
            if isinstance(actual, list):
                member = any(item in expected for item in actual)
            else:
                member = actual in expected
            return member if op is Operator.in_ else not member
        if op is Operator.contains:
            if isinstance(actual, str):
                return isinstance(expected, str) and expected in actual
            if isinstance(actual, (list, tuple)):
                return expected in actual
            return False
        if op is Operator.matches:
            if actual is None:
                return False
            try:
                return re.search(str(expected), str(actual)) is not None
            except re.error:
                return False
        raise ValueError(f"Unhandled operator {op}")

    def applies(self, policy: PolicyDefinition, context: PolicyContext) -> bool:
        if policy.actions and context.action not in policy.actions and WILDCARD not in policy.actions:
            return False
        if policy.resources and context.resource not in policy.resources and WILDCARD not in policy.resources:
            return False
        if policy.roles and not policy.roles.intersection(context.user_roles):
            return False
        return all(self.evaluate_condition(c, context) for c in policy.conditions)

    def evaluate(
        self,
        policies: Iterable[PolicyDefinition],
        context: PolicyContext,
        allow_bypass: bool = True,
    ) -> PolicyEvaluationResult:
        """Reduce every applicable policy to one decision.

        ``allow_bypass=False`` evaluates bypass roles like any other role;
        approval decisions use it so the self-approval block binds everyone.
        """
        if allow_bypass and self.bypass_roles.intersection(context.user_roles):
            return PolicyEvaluationResult(effect=PolicyEffect.allow, allowed=True)

        matched = [
            p for p in sorted(policies, key=lambda p: (-p.priority, p.name))
            if self.applies(p, context)
        ]
        effect = reduce_effects(p.effect for p in matched)
        result = PolicyEvaluationResult(
            effect=effect,
            allowed=effect is not PolicyEffect.block,
            matched_policies=[p.name for p in matched],
        )
        for policy in matched:
            if policy.effect is PolicyEffect.block:
                result.messages.append(policy.message or f"Blocked by policy '{policy.name}'")
            elif policy.effect is PolicyEffect.warn:
                result.warnings.append(policy.message or f"Warning from policy '{policy.name}'")
        return result


class PolicyService:
    """Policy store operations."""

    @staticmethod
    def active_definitions(db: Session) -> List[PolicyDefinition]:
        policies = db.query(Policy).filter(Policy.is_active == True).all()  # noqa: E712
        definitions = []
        for policy in policies:
            try:
                definitions.append(PolicyDefinition.from_model(policy))
            except (ValidationError, ValueError) as e:
                logger.warning(f"Policy '{policy.name}' skipped, stored definition is unreadable: {e}")
        return definitions

    @staticmethod
    def get(db: Session, policy_id: int) -> Policy:
        policy = db.query(Policy).filter(Policy.id == policy_id).first()
        if not policy:
            raise ResourceNotFoundError(f"Policy {policy_id} not found")
        return policy

    @staticmethod
    def list_policies(db: Session, category: Optional[str] = None, active_only: bool = False) -> List[Policy]:
        query = db.query(Policy)
        if category:
            query = query.filter(Policy.category == PolicyCategory(category))
        if active_only:
            query = query.filter(Policy.is_active == True)  # noqa: E712
        return query.order_by(Policy.priority.desc(), Policy.name).all()

    @staticmethod
    def create(
        db: Session,
        name: str,
        effect: str,
        category: str = PolicyCategory.restriction.value,
        actions: Optional[List[str]] = None,
        resources: Optional[List[str]] = None,
        roles: Optional[List[str]] = None,
        conditions: Optional[List[Dict[str, Any]]] = None,
        message: Optional[str] = None,
        priority: int = 0,
        description: Optional[str] = None,
        is_active: bool = True,
    ) -> Policy:
        """Validate and stage a new policy. The caller commits."""
        effect, category, parsed = PolicyService._validate(effect, category, conditions or [])
        if db.query(Policy).filter(Policy.name == name).first():
            raise ResourceConflictError(f"Policy '{name}' already exists")
        policy = Policy(
            name=name,
            description=description,
            effect=effect.value,
            category=category,
            actions_json=json.dumps(actions or []),
            resources_json=json.dumps(resources or []),
            roles_json=json.dumps(roles or []),
            conditions_json=json.dumps([c.to_dict() for c in parsed]),
            message=message,
            priority=priority,
            is_active=is_active,
        )
        db.add(policy)
        db.flush()
        logger.info(f"Policy '{name}' staged ({effect.value}, {len(parsed)} conditions)")
        return policy

    @staticmethod
    def update(db: Session, policy_id: int, **changes) -> Policy:
        policy = PolicyService.get(db, policy_id)
        effect = changes.pop("effect", None) or policy.effect
        category = changes.pop("category", None) or policy.category
        conditions = changes.pop("conditions", None)
        effect, category, parsed = PolicyService._validate(
            effect, category, conditions if conditions is not None else _loads_list(policy.conditions_json),
        )
        policy.effect = effect.value
        policy.category = category
        if conditions is not None:
            policy.conditions_json = json.dumps([c.to_dict() for c in parsed])
        for key in ("actions", "resources", "roles"):
            if changes.get(key) is not None:
                setattr(policy, f"{key}_json", json.dumps(changes.pop(key)))
        for key, value in changes.items():
            if value is not None and key in ("name", "description", "message", "priority", "is_active"):
                setattr(policy, key, value)
        db.flush()
        return policy

    @staticmethod
    def delete(db: Session, policy_id: int) -> Policy:
        policy = PolicyService.get(db, policy_id)
        db.delete(policy)
        db.flush()
        logger.info(f"Policy '{policy.name}' deleted")
        return policy

    @staticmethod
    def _validate(effect, category, conditions):
        errors = []
        if effect not in PolicyEffect._value2member_map_:
            errors.append({"field": "effect", "message": f"unknown effect {effect!r}"})
        if category not in PolicyCategory._value2member_map_:
            errors.append({"field": "category", "message": f"unknown category {category!r}"})
        try:
            parsed = validate_conditions(conditions)
        except ValidationError as e:
            errors.extend(e.errors)
            parsed = []
        if errors:
            raise ValidationError("Invalid policy", errors=errors)
        return PolicyEffect(effect), PolicyCategory(category), parsed


def policy_snapshot(policy: Policy) -> Dict[str, Any]:
    """Plain dict of a policy, used for audit snapshots and exports."""
    return {
        "id": policy.id,
        "name": policy.name,
        "description": policy.description,
        "category": PolicyCategory(policy.category).value,
        "effect": policy.effect,
        "priority": policy.priority,
        "actions": _loads_list(policy.actions_json),
        "resources": _loads_list(policy.resources_json),
        "roles": _loads_list(policy.roles_json),
        "conditions": _loads_list(policy.conditions_json),
        "message": policy.message,
        "is_active": policy.is_active,
    }


policy_service = PolicyService()
