"""Audit log model: append-only."""

from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, event

from governance_core.core.clock import utcnow
from governance_core.db.base import Base


class AuditLog(Base):
    """Immutable audit trail for every governed attempt and mutation.

    This table is APPEND-ONLY. ORM updates and deletes raise, see the mapper
    listeners below. Snapshots are stored already sanitized.
    """
    __tablename__ = "governance_audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    actor_id = Column(String(100), nullable=True, index=True)
    actor_roles_json = Column(Text, nullable=True)
    action = Column(String(100), nullable=False, index=True)  # e.g. "policy.created"
    resource = Column(String(100), nullable=False, index=True)
    resource_id = Column(String(100), nullable=True)
    outcome = Column(String(30), nullable=True)  # allow | warn | block | pending_approval | denied
    before_snapshot = Column(Text, nullable=True)
    after_snapshot = Column(Text, nullable=True)
    diff_json = Column(Text, nullable=True)
    redacted = Column(Boolean, default=False, nullable=False)
    snapshot_hash = Column(String(64), nullable=True)
    source = Column(String(50), nullable=True)  # api | sweep | cli | system
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(String(500), nullable=True)
    request_id = Column(String(64), nullable=True, index=True)
    metadata_json = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)


class AppendOnlyViolation(RuntimeError):
    """Raised when code tries to change or remove an audit entry."""


@event.listens_for(AuditLog, "before_update")
def _block_update(mapper, connection, target):
    raise AppendOnlyViolation(f"Audit entry {target.id} is append-only")


@event.listens_for(AuditLog, "before_delete")
def _block_delete(mapper, connection, target):
    raise AppendOnlyViolation(f"Audit entry {target.id} is append-only")
