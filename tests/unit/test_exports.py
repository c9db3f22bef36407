"""
Unit tests for export gating, format conversion and the export job lifecycle.
"""

import io
import json
import os
import xml.etree.ElementTree as ET

import pytest
from openpyxl import load_workbook
from openpyxl.utils.exceptions import IllegalCharacterError

from governance_core.core.exceptions import (
    ExportExpiredError, ExportGenerationFailure, PolicyViolation, RateLimitExceeded, ValidationError,
)
from governance_core.core.security import RequestIdentity
from governance_core.models.approval import ApprovalStatus
from governance_core.models.audit_log import AuditLog
from governance_core.models.export_job import ExportFormat, ExportStatus
from governance_core.services.export_service import (
    project, render, requires_approval, to_csv, to_json, to_xlsx, to_xml,
)

ADMIN = RequestIdentity(user_id="alice", roles=["admin"])
OTHER_ADMIN = RequestIdentity(user_id="bob", roles=["admin"])
ANALYST = RequestIdentity(user_id="erin", roles=["analyst"])

RECORDS = [
    {"id": 1, "name": "Smith, John", "note": 'said "hi"'},
    {"id": 2, "name": "Plain", "note": None},
]


def test_requires_approval():
    sensitive = ["users", "audit_logs"]
    assert requires_approval("audit_logs", 1, sensitive, 1000)
    assert requires_approval("reports", 1001, sensitive, 1000)
    assert not requires_approval("reports", 1000, sensitive, 1000)


def test_to_csv_quotes_special_fields():
    assert to_csv(RECORDS) == '\n'.join([
        "id,name,note",
        '1,"Smith, John","said ""hi"""',
        "2,Plain,",
    ])
    assert to_csv([]) == ""


def test_to_json_is_indented():
    text = to_json(RECORDS)
    assert json.loads(text) == RECORDS
    assert '\n  {' in text


def test_to_xml_escapes_values():
    xml = to_xml([{"name": "<Tom & \"Jerry\">", "tag": "it's"}])
    assert xml.startswith('<?xml version="1.0" encoding="UTF-8"?>')
    assert "<name>&lt;Tom &amp; &quot;Jerry&quot;&gt;</name>" in xml
    assert "<tag>it&apos;s</tag>" in xml
    assert xml.endswith("</export>")


def test_to_xlsx_writes_header_and_rows():
    workbook = load_workbook(io.BytesIO(to_xlsx(RECORDS)))
    rows = list(workbook["Export"].iter_rows(values_only=True))
    assert rows[0] == ("id", "name", "note")
    assert rows[1][1] == "Smith, John"
    assert len(rows) == 3


def test_render_and_project():
    assert render(RECORDS, ExportFormat.csv).startswith(b"id,name,note")
    assert project(RECORDS, ["name"]) == [{"name": "Smith, John"}, {"name": "Plain"}]
    assert project(RECORDS, None) is RECORDS


def test_ungated_export_completes_inline(db, services, settings):
    job = services.exports.initiate(db, ADMIN, "roles", "csv", fields=["name", "priority"])

    assert job.status == ExportStatus.completed
    assert not job.requires_approval
    assert job.record_count == 6
    assert job.download_url == f"/api/exports/{job.id}/download"
    with open(job.artifact_path) as fh:
        assert fh.readline().strip() == "name,priority"
    assert not os.path.exists(job.artifact_path + ".part")


def test_sensitive_export_waits_for_approval(db, services):
    job = services.exports.initiate(db, ADMIN, "audit_logs", "json")

    assert job.requires_approval
    assert job.status == ExportStatus.pending
    assert job.artifact_path is None
    request = services.approvals.get(db, job.approval_request_id)
    assert request.request_type == "export"
    assert request.current_approver_role == "admin"


def test_approval_generates_export(db, services):
    job = services.exports.initiate(db, ADMIN, "audit_logs", "json")
    services.approvals.decide(db, job.approval_request_id, OTHER_ADMIN, approve=True)
    db.refresh(job)

    assert job.status == ExportStatus.completed
    with open(job.artifact_path) as fh:
        assert isinstance(json.load(fh), list)


def test_rejection_fails_export(db, services):
    job = services.exports.initiate(db, ADMIN, "audit_logs", "csv")
    request = services.approvals.decide(db, job.approval_request_id, OTHER_ADMIN, approve=False)
    db.refresh(job)

    assert request.status == ApprovalStatus.rejected
    assert job.status == ExportStatus.failed
    assert job.error == "Export request rejected"


def test_gating_disabled_exports_sensitive_data_inline(db, settings, session_factory, clock):
    from governance_core.services.container import build_services

    relaxed = build_services(settings.model_copy(update={"ENABLE_EXPORT_GATING": False}), session_factory, clock=clock)
    job = relaxed.exports.initiate(db, ADMIN, "audit_logs", "xml")
    assert job.status == ExportStatus.completed
    assert job.approval_request_id is None


def test_rejects_bad_requests(db, services):
    with pytest.raises(ValidationError):
        services.exports.initiate(db, ADMIN, "roles", "pdf")
    with pytest.raises(ValidationError):
        services.exports.initiate(db, ADMIN, "payroll", "csv")
    with pytest.raises(ValidationError) as exc:
        services.exports.initiate(db, ADMIN, "roles", "csv", filters={"salary": 1})
    assert exc.value.errors[0]["field"] == "filters.salary"


def test_max_records_enforced(db, settings, session_factory, clock):
    from governance_core.services.container import build_services

    capped = build_services(settings.model_copy(update={"EXPORT_MAX_RECORDS": 3}), session_factory, clock=clock)
    with pytest.raises(ValidationError):
        capped.exports.initiate(db, ADMIN, "roles", "csv")


def test_rate_limit_per_user(db, settings, session_factory, clock):
    from governance_core.services.container import build_services

    limited = build_services(settings.model_copy(update={"EXPORT_RATE_LIMIT_PER_HOUR": 2}), session_factory, clock=clock)
    limited.exports.initiate(db, ADMIN, "roles", "csv")
    limited.exports.initiate(db, ADMIN, "roles", "json")
    with pytest.raises(RateLimitExceeded) as exc:
        limited.exports.initiate(db, ADMIN, "roles", "xml")
    assert exc.value.retry_after == 3600
    assert exc.value.headers() == {"Retry-After": "3600"}

    # other users and the next hour are unaffected
    limited.exports.initiate(db, OTHER_ADMIN, "roles", "csv")
    clock.advance(hours=1)
    limited.exports.initiate(db, ADMIN, "roles", "csv")


def test_download_expires(db, services, clock):
    job = services.exports.initiate(db, ADMIN, "policies", "csv")
    path, content_type, filename = services.exports.open_download(db, job.id, ADMIN)
    assert content_type == "text/csv"
    assert filename == f"policies_export_{job.id}.csv"

    clock.advance(hours=25)
    with pytest.raises(ExportExpiredError):
        services.exports.open_download(db, job.id, ADMIN)


def test_only_owner_or_admin_sees_export(db, services):
    job = services.exports.initiate(db, ANALYST, "approval_requests", "csv")
    assert services.exports.get(db, job.id, ADMIN).id == job.id
    with pytest.raises(PolicyViolation):
        services.exports.get(db, job.id, RequestIdentity(user_id="frank", roles=["viewer"]))

    listed = services.exports.list_for_user(db, RequestIdentity(user_id="frank", roles=["viewer"]))
    assert listed["total"] == 0


def test_purge_expired_removes_artifacts(db, services, clock):
    job = services.exports.initiate(db, ADMIN, "roles", "csv")
    path = job.artifact_path
    assert services.exports.purge_expired(db) == 0

    clock.advance(hours=30)
    assert services.exports.purge_expired(db) == 1
    db.refresh(job)
    assert job.artifact_path is None
    assert not os.path.exists(path)


def test_to_xlsx_drops_control_characters():
    workbook = load_workbook(io.BytesIO(to_xlsx([{"description": "ding\x07dong"}])))
    rows = list(workbook["Export"].iter_rows(values_only=True))
    assert rows[1] == ("dingdong",)


def test_approved_xlsx_export_with_control_characters(db, services):
    services.audit.record(db, "bell\x01rung", "roles", actor=ADMIN)
    db.commit()
    job = services.exports.initiate(db, ADMIN, "audit_logs", "xlsx")

    request = services.approvals.decide(db, job.approval_request_id, OTHER_ADMIN, approve=True)
    db.refresh(job)

    assert request.status == ApprovalStatus.approved
    assert job.status == ExportStatus.completed
    sheet = load_workbook(job.artifact_path)["Export"]
    actions = [row[3] for row in sheet.iter_rows(min_row=2, values_only=True)]
    assert "bellrung" in actions


def test_render_error_marks_job_failed(db, services, monkeypatch):
    def broken_sheet(records):
        raise IllegalCharacterError("cannot be used in worksheets")

    monkeypatch.setattr("governance_core.services.export_service.to_xlsx", broken_sheet)
    with pytest.raises(ExportGenerationFailure):
        services.exports.initiate(db, ADMIN, "roles", "xlsx")

    job = services.exports.list_for_user(db, ADMIN)["exports"][0]
    assert job.status == ExportStatus.failed
    assert "worksheets" in job.error
    assert db.query(AuditLog).filter(AuditLog.action == "export.failed").count() == 1


def test_export_field_names_must_be_xml_names(db, services):
    with pytest.raises(ValidationError) as exc:
        services.exports.initiate(db, ADMIN, "roles", "xml", fields=["name", "a b<c"])
    assert exc.value.errors[0]["field"] == "fields"

    job = services.exports.initiate(db, ADMIN, "roles", "xml", fields=["name", "is_system"])
    root = ET.parse(job.artifact_path).getroot()
    assert [child.tag for child in root[0]] == ["name", "is_system"]


def test_registered_provider_is_exportable(db, services):
    services.exports.register_provider("teams", lambda session, filters: [{"id": 1, "name": "core"}])
    job = services.exports.initiate(db, ADMIN, "teams", "csv")

    assert job.status == ExportStatus.completed
    assert job.record_count == 1
