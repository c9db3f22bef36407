"""Audit service: redaction, diffs and the append-only audit trail.

Entries are written in the caller's transaction right after the governed
mutation is staged, and commit or roll back with it. A failed audit write
raises ``AuditWriteError`` so the mutation never commits without its entry.
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from governance_core.core.clock import Clock, utcnow
from governance_core.core.config import Settings
from governance_core.core.exceptions import AuditWriteError, ResourceNotFoundError
from governance_core.models.audit_log import AuditLog

logger = logging.getLogger("governance_core")

REDACTED = "[REDACTED]"
NEW_RECORD = "(new record)"
DELETED_RECORD = "(deleted record)"
RAW_CONTENT = "(raw content)"


def _redact(value: Any, terms: Tuple[str, ...]) -> Tuple[Any, bool]:
    if isinstance(value, dict):
        out = {}
        hit = False
        for key, item in value.items():
            if any(term in str(key).lower() for term in terms):
                out[key] = REDACTED
                hit = True
            else:
                out[key], nested = _redact(item, terms)
                hit = hit or nested
        return out, hit
    if isinstance(value, list):
        items = [_redact(item, terms) for item in value]
        return [item for item, _ in items], any(nested for _, nested in items)
    return value, False


def sanitize(record: Any, sensitive_terms: Iterable[str]) -> Any:
    """Copy of ``record`` with every sensitive key's value replaced by ``[REDACTED]``.

    Keys match case-insensitively on substring, at any nesting depth,
    including dicts inside lists. The input is not modified.
    """
    terms = tuple(t.lower() for t in sensitive_terms)
    return _redact(record, terms)[0]


@dataclass
class AuditDiff:
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    changed: List[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.changed)

    def to_dict(self) -> Dict[str, List[str]]:
        return {"added": self.added, "removed": self.removed, "changed": self.changed}


def _absent(value: Any) -> bool:
    return value is None or value == ""


def _as_record(value: Any) -> Optional[dict]:
    if isinstance(value, dict):
        return value
    if isinstance(value, (str, bytes)):
        try:
            parsed = json.loads(value)
        except ValueError:
            return None
        return parsed if isinstance(parsed, dict) else None
    return None


def _serialize(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def compute_diff(before: Any, after: Any) -> AuditDiff:
    """Key-level diff between two snapshots (dicts or JSON strings)."""
    diff = AuditDiff()
    if _absent(before) and _absent(after):
        return diff
    if _absent(before):
        diff.added.append(NEW_RECORD)
        return diff
    if _absent(after):
        diff.removed.append(DELETED_RECORD)
        return diff

    old, new = _as_record(before), _as_record(after)
    if old is None or new is None:
        if _serialize(before) != _serialize(after):
            diff.changed.append(RAW_CONTENT)
        return diff

    for key in dict.fromkeys([*old.keys(), *new.keys()]):
        if key not in old:
            diff.added.append(key)
        elif key not in new:
            diff.removed.append(key)
        elif _serialize(old[key]) != _serialize(new[key]):
            diff.changed.append(key)
    return diff


def snapshot_hash(before: Optional[str], after: Optional[str]) -> str:
    payload = json.dumps({"before": before, "after": after}, sort_keys=True)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class AuditService:
    """Writes and reads immutable audit log entries."""

    def __init__(self, settings: Settings, clock: Clock = utcnow):
        self.enabled = settings.ENABLE_AUDIT_LOGS
        self.sensitive_terms = tuple(settings.AUDIT_SENSITIVE_TERMS)
        self.clock = clock

    def _prepare(self, value: Any) -> Tuple[Optional[str], bool]:
        if _absent(value):
            return None, False
        record = _as_record(value) if isinstance(value, (str, bytes)) else value
        if record is None:
            # unstructured text cannot be inspected key by key
            return str(value), False
        terms = tuple(t.lower() for t in self.sensitive_terms)
        cleaned, hit = _redact(record, terms)
        return _serialize(cleaned), hit

    def record(
        self,
        db: Session,
        action: str,
        resource: str,
        resource_id: Optional[Any] = None,
        actor=None,
        before: Any = None,
        after: Any = None,
        outcome: Optional[str] = None,
        source: str = "api",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditLog]:
        """Stage one audit entry in the caller's transaction.

        ``actor`` is a ``RequestIdentity`` or None for system transitions.
        Returns None when audit logging is disabled.
        """
        if not self.enabled:
            return None

        before_s, before_hit = self._prepare(before)
        after_s, after_hit = self._prepare(after)
        meta_s, meta_hit = self._prepare(metadata)
        diff = compute_diff(before_s, after_s)

        entry = AuditLog(
            actor_id=getattr(actor, "user_id", None),
            actor_roles_json=json.dumps(list(getattr(actor, "roles", []) or [])),
            action=action,
            resource=resource,
            resource_id=str(resource_id) if resource_id is not None else None,
            outcome=outcome,
            before_snapshot=before_s,
            after_snapshot=after_s,
            diff_json=json.dumps(diff.to_dict()),
            redacted=before_hit or after_hit or meta_hit,
            snapshot_hash=snapshot_hash(before_s, after_s),
            source=source,
            ip_address=getattr(actor, "ip_address", None),
            user_agent=getattr(actor, "user_agent", None),
            request_id=getattr(actor, "request_id", None),
            metadata_json=meta_s,
            created_at=self.clock(),
        )
        try:
            db.add(entry)
            db.flush()
        except SQLAlchemyError as e:
            logger.error("Audit write failed for %s on %s: %s", action, resource, e)
            raise AuditWriteError(f"Audit entry for '{action}' could not be written") from e
        return entry

    def record_and_commit(self, db: Session, action: str, resource: str, **kwargs) -> Optional[AuditLog]:
        """Record an event that has no mutation of its own and commit it immediately."""
        entry = self.record(db, action, resource, **kwargs)
        if entry is None:
            return None
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Audit commit failed for %s on %s: %s", action, resource, e)
            raise AuditWriteError(f"Audit entry for '{action}' could not be written") from e
        return entry

    @staticmethod
    def query_logs(
        db: Session,
        actor_id: Optional[str] = None,
        action: Optional[str] = None,
        resource: Optional[str] = None,
        resource_id: Optional[str] = None,
        outcome: Optional[str] = None,
        page: int = 1,
        page_size: int = 50,
        request_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Query audit logs with filters and pagination."""
        query = db.query(AuditLog)

        if actor_id:
            query = query.filter(AuditLog.actor_id == actor_id)
        if action:
            query = query.filter(AuditLog.action.ilike(f"%{action}%"))
        if resource:
            query = query.filter(AuditLog.resource == resource)
        if resource_id:
            query = query.filter(AuditLog.resource_id == resource_id)
        if outcome:
            query = query.filter(AuditLog.outcome == outcome)
        if request_id:
            query = query.filter(AuditLog.request_id == request_id)

        total = query.count()
        logs = (
            query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )
        return {"logs": logs, "total": total, "page": page, "page_size": page_size}

    @staticmethod
    def verify_integrity(db: Session, entry_id: int) -> bool:
        """Recompute an entry's snapshot hash and compare it with the stored one."""
        entry = db.query(AuditLog).filter(AuditLog.id == entry_id).first()
        if not entry:
            raise ResourceNotFoundError(f"Audit entry {entry_id} not found")
        return entry.snapshot_hash == snapshot_hash(entry.before_snapshot, entry.after_snapshot)


def audit_entry_snapshot(entry: AuditLog) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "actor_id": entry.actor_id,
        "actor_roles": json.loads(entry.actor_roles_json) if entry.actor_roles_json else [],
        "action": entry.action,
        "resource": entry.resource,
        "resource_id": entry.resource_id,
        "outcome": entry.outcome,
        "diff": json.loads(entry.diff_json) if entry.diff_json else None,
        "redacted": entry.redacted,
        "source": entry.source,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }
