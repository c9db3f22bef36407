"""Audit trail API router."""

from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from governance_core.api.deps import governed
from governance_core.core.security import RequestIdentity, get_identity
from governance_core.db.session import get_db
from governance_core.schemas.schemas import AuditLogOut
from governance_core.services.audit_service import AuditService

router = APIRouter(prefix="/governance/audit", tags=["audit"])

view_audit = governed("view", "audit_logs")


@router.get("/")
async def get_audit_logs(
    action: Optional[str] = Query(None),
    resource: Optional[str] = Query(None),
    resource_id: Optional[str] = Query(None),
    actor_id: Optional[str] = Query(None),
    outcome: Optional[str] = Query(None),
    request_id: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    identity: RequestIdentity = Depends(get_identity),
    _=Depends(view_audit),
):
    """Query audit logs, newest first."""
    result = AuditService.query_logs(
        db, actor_id, action, resource, resource_id, outcome, page, page_size, request_id=request_id,
    )
    return {
        "logs": [AuditLogOut.model_validate(log) for log in result["logs"]],
        "total": result["total"],
        "page": result["page"],
    }


@router.get("/{entry_id}/verify")
async def verify_entry(
    entry_id: int,
    db: Session = Depends(get_db),
    identity: RequestIdentity = Depends(get_identity),
    _=Depends(view_audit),
):
    """Recompute an entry's snapshot hash."""
    return {"id": entry_id, "valid": AuditService.verify_integrity(db, entry_id)}
