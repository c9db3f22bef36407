"""Governed export service: approval gating, rate limiting and format conversion."""

import io
import json
import logging
import os
import re
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from xml.sax.saxutils import escape

from openpyxl import Workbook
from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE
from openpyxl.utils.exceptions import IllegalCharacterError
from sqlalchemy.orm import Session

from governance_core.core.clock import Clock, utcnow
from governance_core.core.config import Settings
from governance_core.core.exceptions import (
    ExportExpiredError, ExportGenerationFailure, PolicyViolation, RateLimitExceeded,
    ResourceConflictError, ResourceNotFoundError, ValidationError,
)
from governance_core.models.approval import ApprovalRequest, ApprovalStatus
from governance_core.models.audit_log import AuditLog
from governance_core.models.export_job import ExportFormat, ExportJob, ExportStatus
from governance_core.models.policy import Policy
from governance_core.models.role import Permission, Role
from governance_core.services.approval_service import ApprovalService, request_snapshot
from governance_core.services.audit_service import AuditService, audit_entry_snapshot
from governance_core.services.policy_engine import policy_snapshot

logger = logging.getLogger("governance_core")

EXPORT_REQUEST_TYPE = "export"
EXPORT_RESOURCE = "export_request"
HIGH_PRIORITY_RECORDS = 10000
# Field names double as XML element names
FIELD_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_.-]*$")

RecordProvider = Callable[[Session, Dict[str, Any]], List[Dict[str, Any]]]


def requires_approval(
    resource_type: str,
    record_count: int,
    sensitive_resources: Sequence[str],
    threshold_records: int,
) -> bool:
    return resource_type in sensitive_resources or record_count > threshold_records


# ---- Format conversion ----

def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def _csv_field(value: Any) -> str:
    text = _cell(value)
    if "," in text or '"' in text or "\n" in text:
        return '"' + text.replace('"', '""') + '"'
    return text


def to_csv(records: List[Dict[str, Any]]) -> str:
    """Header from the first record's keys; quote fields holding commas or quotes."""
    if not records:
        return ""
    headers = list(records[0].keys())
    lines = [",".join(_csv_field(h) for h in headers)]
    for record in records:
        lines.append(",".join(_csv_field(record.get(h)) for h in headers))
    return "\n".join(lines)


def to_json(records: List[Dict[str, Any]]) -> str:
    return json.dumps(records, indent=2, default=str)


def to_xml(records: List[Dict[str, Any]]) -> str:
    lines = ['<?xml version="1.0" encoding="UTF-8"?>', "<export>"]
    for record in records:
        lines.append("  <record>")
        for key, value in record.items():
            text = escape(_cell(value), {'"': "&quot;", "'": "&apos;"})
            lines.append(f"    <{key}>{text}</{key}>")
        lines.append("  </record>")
    lines.append("</export>")
    return "\n".join(lines)


def _sheet_cell(value: Any) -> str:
    # control characters are rejected by the xlsx writer
    return ILLEGAL_CHARACTERS_RE.sub("", _cell(value))


def to_xlsx(records: List[Dict[str, Any]]) -> bytes:
    workbook = Workbook(write_only=True)
    sheet = workbook.create_sheet("Export")
    if records:
        headers = list(records[0].keys())
        sheet.append([_sheet_cell(h) for h in headers])
        for record in records:
            sheet.append([_sheet_cell(record.get(h)) for h in headers])
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def render(records: List[Dict[str, Any]], fmt: ExportFormat) -> bytes:
    fmt = ExportFormat(fmt)
    if fmt is ExportFormat.csv:
        return to_csv(records).encode("utf-8")
    if fmt is ExportFormat.json:
        return to_json(records).encode("utf-8")
    if fmt is ExportFormat.xml:
        return to_xml(records).encode("utf-8")
    if fmt is ExportFormat.xlsx:
        return to_xlsx(records)
    raise ValueError(f"Unhandled export format {fmt}")


def project(records: List[Dict[str, Any]], fields: Optional[Sequence[str]]) -> List[Dict[str, Any]]:
    if not fields:
        return records
    return [{f: record.get(f) for f in fields} for record in records]


# ---- Built-in record providers ----

def _filtered(db: Session, model, filters: Dict[str, Any]):
    query = db.query(model)
    for key, value in (filters or {}).items():
        column = getattr(model, key, None)
        if column is None or not hasattr(column, "property"):
            raise ValidationError(
                f"Unknown filter '{key}'",
                errors=[{"field": f"filters.{key}", "message": "not a filterable field"}],
            )
        query = query.filter(column == value)
    return query.order_by(model.id)


def roles_provider(db: Session, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [
        {"id": r.id, "name": r.name, "priority": r.priority, "description": r.description, "is_system": r.is_system}
        for r in _filtered(db, Role, filters).all()
    ]


def permissions_provider(db: Session, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [
        {
            "id": p.id, "role": p.role.name, "action": p.action, "resource": p.resource,
            "scope": p.scope, "scope_value": p.scope_value, "is_allowed": p.is_allowed,
        }
        for p in _filtered(db, Permission, filters).all()
    ]


def policies_provider(db: Session, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [policy_snapshot(p) for p in _filtered(db, Policy, filters).all()]


def audit_logs_provider(db: Session, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [audit_entry_snapshot(e) for e in _filtered(db, AuditLog, filters).all()]


def approval_requests_provider(db: Session, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [request_snapshot(r) for r in _filtered(db, ApprovalRequest, filters).all()]


BUILTIN_PROVIDERS: Dict[str, RecordProvider] = {
    "roles": roles_provider,
    "permissions": permissions_provider,
    "policies": policies_provider,
    "audit_logs": audit_logs_provider,
    "approval_requests": approval_requests_provider,
}


def job_snapshot(job: ExportJob) -> Dict[str, Any]:
    return {
        "id": job.id,
        "requester_id": job.requester_id,
        "resource_type": job.resource_type,
        "format": ExportFormat(job.format).value,
        "status": ExportStatus(job.status).value,
        "record_count": job.record_count,
        "requires_approval": job.requires_approval,
        "approval_request_id": job.approval_request_id,
        "file_size": job.file_size,
        "expires_at": job.expires_at.isoformat() if job.expires_at else None,
        "error": job.error,
    }


class ExportService:
    """Runs export jobs from request to expiring download."""

    def __init__(
        self,
        settings: Settings,
        approvals: ApprovalService,
        audit: AuditService,
        rate_counter,
        clock: Clock = utcnow,
    ):
        self.settings = settings
        self.approvals = approvals
        self.audit = audit
        self.rate_counter = rate_counter
        self.clock = clock
        self.admin_roles = frozenset(settings.ADMIN_ROLES)
        self._providers: Dict[str, RecordProvider] = {}
        for resource_type, provider in BUILTIN_PROVIDERS.items():
            self.register_provider(resource_type, provider)
        approvals.register_handler(EXPORT_REQUEST_TYPE, self.on_approval_resolved)

    def register_provider(self, resource_type: str, provider: RecordProvider) -> None:
        self._providers[resource_type] = provider

    def _fetch(self, db: Session, job: ExportJob) -> List[Dict[str, Any]]:
        provider = self._providers.get(job.resource_type)
        if provider is None:
            raise ValidationError(
                f"Resource '{job.resource_type}' cannot be exported",
                errors=[{"field": "resource_type", "message": "no export provider registered"}],
            )
        filters = json.loads(job.filters_json) if job.filters_json else {}
        fields = json.loads(job.fields_json) if job.fields_json else None
        return project(provider(db, filters), fields)

    # ---- Lifecycle ----

    def initiate(
        self,
        db: Session,
        requester,
        resource_type: str,
        fmt: str,
        filters: Optional[Dict[str, Any]] = None,
        fields: Optional[List[str]] = None,
    ) -> ExportJob:
        """Create an export job, gating or generating it immediately."""
        if fmt not in self.settings.EXPORT_ALLOWED_FORMATS or fmt not in ExportFormat._value2member_map_:
            raise ValidationError(
                f"Format '{fmt}' is not allowed",
                errors=[{"field": "format", "message": f"allowed: {', '.join(self.settings.EXPORT_ALLOWED_FORMATS)}"}],
            )
        if resource_type not in self._providers:
            raise ValidationError(
                f"Resource '{resource_type}' cannot be exported",
                errors=[{"field": "resource_type", "message": "no export provider registered"}],
            )
        bad_fields = [f for f in fields or [] if not isinstance(f, str) or not FIELD_NAME_RE.match(f)]
        if bad_fields:
            raise ValidationError(
                f"Invalid export fields: {bad_fields}",
                errors=[{"field": "fields", "message": "names must start with a letter or underscore "
                         "and hold only letters, digits, '_', '-' or '.'"}],
            )

        now = self.clock()
        limit = self.rate_counter.consume(db, requester.user_id, self.settings.EXPORT_RATE_LIMIT_PER_HOUR, now)
        if not limit.allowed:
            self.audit.record_and_commit(
                db, "export.rate_limited", EXPORT_RESOURCE, actor=requester, outcome="block",
                metadata={"resource_type": resource_type, "format": fmt},
            )
            raise RateLimitExceeded(
                f"Export limit of {self.settings.EXPORT_RATE_LIMIT_PER_HOUR} per hour reached",
                retry_after=limit.retry_after,
            )

        job = ExportJob(
            requester_id=requester.user_id,
            resource_type=resource_type,
            format=ExportFormat(fmt),
            filters_json=json.dumps(filters or {}, default=str),
            fields_json=json.dumps(fields) if fields else None,
            status=ExportStatus.pending,
            created_at=now,
        )
        db.add(job)
        db.flush()

        records = self._fetch(db, job)
        job.record_count = len(records)
        if job.record_count > self.settings.EXPORT_MAX_RECORDS:
            db.rollback()
            raise ValidationError(
                f"Export of {len(records)} records exceeds the maximum of {self.settings.EXPORT_MAX_RECORDS}",
                errors=[{"field": "filters", "message": "narrow the export"}],
            )

        job.requires_approval = self.settings.ENABLE_EXPORT_GATING and requires_approval(
            resource_type, job.record_count,
            self.settings.EXPORT_SENSITIVE_RESOURCES, self.settings.EXPORT_APPROVAL_THRESHOLD,
        )
        self.audit.record(
            db, "export.requested", EXPORT_RESOURCE, job.id, actor=requester,
            after=job_snapshot(job), outcome="pending_approval" if job.requires_approval else "allow",
        )

        if job.requires_approval:
            approval = self.approvals.create_request(
                db, requester, EXPORT_REQUEST_TYPE, EXPORT_RESOURCE,
                resource_id=job.id,
                reason=f"Export of {job.record_count} {resource_type} records as {fmt}",
                metadata={"resource_type": resource_type, "format": fmt, "record_count": job.record_count},
                priority="high" if job.record_count > HIGH_PRIORITY_RECORDS else "normal",
            )
            job.approval_request_id = approval.id
            db.commit()
            self.approvals.announce_created(approval)
            logger.info("Export %s awaiting approval %s", job.id, approval.id)
            return job

        self._generate(db, job, records, actor=requester)
        db.commit()
        if job.status == ExportStatus.failed:
            raise ExportGenerationFailure(f"Export {job.id} failed: {job.error}")
        return job

    def on_approval_resolved(self, db: Session, request: ApprovalRequest) -> None:
        """Resolution hook for export approvals; runs in the approval's transaction."""
        job = db.query(ExportJob).filter(ExportJob.approval_request_id == request.id).first()
        if job is None:
            logger.warning("Approval %s resolved but no export job references it", request.id)
            return
        if job.status != ExportStatus.pending:
            return
        if request.status == ApprovalStatus.approved:
            self._generate(db, job, action="export.approved_and_completed")
            return
        job.status = ExportStatus.failed
        job.error = f"Export request {ApprovalStatus(request.status).value}"
        job.completed_at = self.clock()
        db.flush()
        self.audit.record(
            db, "export.rejected", EXPORT_RESOURCE, job.id,
            after=job_snapshot(job), outcome=ApprovalStatus(request.status).value, source="system",
        )

    def _generate(
        self,
        db: Session,
        job: ExportJob,
        records: Optional[List[Dict[str, Any]]] = None,
        actor=None,
        action: str = "export.completed",
    ) -> ExportJob:
        """Produce the artifact or mark the job failed; never exposes a partial file."""
        job.status = ExportStatus.processing
        db.flush()

        fmt = ExportFormat(job.format)
        path = os.path.join(self.settings.EXPORT_STORAGE_PATH, f"export_{job.id}.{fmt.value}")
        tmp_path = path + ".part"
        try:
            if records is None:
                records = self._fetch(db, job)
            content = render(records, fmt)
            os.makedirs(self.settings.EXPORT_STORAGE_PATH, exist_ok=True)
            with open(tmp_path, "wb") as fh:
                fh.write(content)
            os.replace(tmp_path, path)
        except (OSError, ValueError, IllegalCharacterError, ValidationError) as e:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            job.status = ExportStatus.failed
            job.error = str(e)
            job.completed_at = self.clock()
            db.flush()
            logger.error("Export %s failed: %s", job.id, e)
            self.audit.record(db, "export.failed", EXPORT_RESOURCE, job.id, actor=actor, after=job_snapshot(job), outcome="failed")
            return job

        now = self.clock()
        job.status = ExportStatus.completed
        job.record_count = len(records)
        job.artifact_path = path
        job.file_size = len(content)
        job.completed_at = now
        job.expires_at = now + timedelta(hours=self.settings.EXPORT_EXPIRATION_HOURS)
        job.download_url = f"/api/exports/{job.id}/download"
        db.flush()
        self.audit.record(db, action, EXPORT_RESOURCE, job.id, actor=actor, after=job_snapshot(job), outcome="completed")
        logger.info("Export %s completed: %s records as %s", job.id, job.record_count, fmt.value)
        return job

    # ---- Reads ----

    def get(self, db: Session, job_id: int, viewer=None) -> ExportJob:
        job = db.query(ExportJob).filter(ExportJob.id == job_id).first()
        if not job:
            raise ResourceNotFoundError(f"Export {job_id} not found")
        if viewer is not None:
            self._check_owner(job, viewer)
        return job

    def list_for_user(self, db: Session, viewer, page: int = 1, page_size: int = 20) -> Dict[str, Any]:
        query = db.query(ExportJob)
        if not self.admin_roles.intersection(viewer.roles):
            query = query.filter(ExportJob.requester_id == viewer.user_id)
        total = query.count()
        jobs = (
            query.order_by(ExportJob.created_at.desc(), ExportJob.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )
        return {"exports": jobs, "total": total, "page": page}

    def open_download(self, db: Session, job_id: int, viewer) -> Tuple[str, str, str]:
        """Path, content type and filename of a live artifact."""
        job = self.get(db, job_id, viewer)
        if job.expires_at is not None and self.clock() > job.expires_at:
            raise ExportExpiredError(f"Download link for export {job.id} has expired")
        if job.status != ExportStatus.completed:
            raise ResourceConflictError(f"Export {job.id} is {ExportStatus(job.status).value}")
        if not job.artifact_path or not os.path.exists(job.artifact_path):
            raise ResourceNotFoundError(f"Artifact for export {job.id} is gone")
        self.audit.record_and_commit(db, "export.downloaded", EXPORT_RESOURCE, resource_id=job.id, actor=viewer, outcome="allow")
        fmt = ExportFormat(job.format)
        return job.artifact_path, fmt.content_type, f"{job.resource_type}_export_{job.id}.{fmt.value}"

    def purge_expired(self, db: Session) -> int:
        """Delete artifacts whose links expired. Job rows stay for the record."""
        now = self.clock()
        jobs = (
            db.query(ExportJob)
            .filter(ExportJob.expires_at < now, ExportJob.artifact_path.isnot(None))
            .all()
        )
        for job in jobs:
            if os.path.exists(job.artifact_path):
                os.remove(job.artifact_path)
            job.artifact_path = None
        db.commit()
        if jobs:
            logger.info("Purged %s expired export artifacts", len(jobs))
        return len(jobs)

    def _check_owner(self, job: ExportJob, viewer) -> None:
        if str(job.requester_id) == str(viewer.user_id) or self.admin_roles.intersection(viewer.roles):
            return
        raise PolicyViolation("Only the requester or an admin may access this export")
