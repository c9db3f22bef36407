"""Governed export API router."""

from fastapi import APIRouter, Depends, Query, Response
from fastapi.responses import FileResponse
from sqlalchemy.orm import Session

from governance_core.api.deps import get_services, set_warnings
from governance_core.core.security import RequestIdentity, get_identity
from governance_core.db.session import get_db
from governance_core.schemas.schemas import ExportCreate, ExportCreated, ExportOut
from governance_core.services.container import GovernanceServices

router = APIRouter(prefix="/exports", tags=["exports"])


@router.post("", response_model=ExportCreated)
async def create_export(
    body: ExportCreate,
    response: Response,
    db: Session = Depends(get_db),
    identity: RequestIdentity = Depends(get_identity),
    services: GovernanceServices = Depends(get_services),
):
    """Request an export; gated exports wait for approval, others complete inline."""
    decision = services.governance.enforce(
        db, identity, "export", body.resource_type,
        metadata={"format": body.format, "filters": body.filters},
        request_approval=False,
    )
    set_warnings(response, decision.warnings)
    job = services.exports.initiate(db, identity, body.resource_type, body.format, body.filters, body.fields)
    return ExportCreated(
        success=True,
        exportId=job.id,
        requiresApproval=job.requires_approval,
        approvalRequestId=job.approval_request_id,
        downloadUrl=job.download_url,
        recordCount=job.record_count,
    )


@router.get("")
async def list_exports(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    identity: RequestIdentity = Depends(get_identity),
    services: GovernanceServices = Depends(get_services),
):
    result = services.exports.list_for_user(db, identity, page, page_size)
    return {
        "exports": [ExportOut.model_validate(job) for job in result["exports"]],
        "total": result["total"],
        "page": result["page"],
    }


@router.get("/{export_id}", response_model=ExportOut)
async def get_export(
    export_id: int,
    db: Session = Depends(get_db),
    identity: RequestIdentity = Depends(get_identity),
    services: GovernanceServices = Depends(get_services),
):
    return services.exports.get(db, export_id, identity)


@router.get("/{export_id}/download")
async def download_export(
    export_id: int,
    db: Session = Depends(get_db),
    identity: RequestIdentity = Depends(get_identity),
    services: GovernanceServices = Depends(get_services),
):
    """Stream the artifact; 410 once the link has expired."""
    path, content_type, filename = services.exports.open_download(db, export_id, identity)
    return FileResponse(path, media_type=content_type, filename=filename)
