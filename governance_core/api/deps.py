"""Shared FastAPI dependencies for governed endpoints."""

from fastapi import Depends, Request, Response
from sqlalchemy.orm import Session

from governance_core.core.security import RequestIdentity, get_identity
from governance_core.db.session import get_db
from governance_core.services.container import GovernanceServices
from governance_core.services.governance_service import WARNINGS_HEADER, GovernanceDecision


def get_services(request: Request) -> GovernanceServices:
    return request.app.state.services


def set_warnings(response: Response, warnings) -> None:
    if warnings:
        response.headers[WARNINGS_HEADER] = "; ".join(warnings)


def governed(action: str, resource: str):
    """Dependency that enforces RBAC and policies for one action.

    Blocks raise ``PolicyViolation`` (403); warnings go out in the
    ``X-Governance-Warnings`` header. Approval gating is left to the
    dedicated workflows.
    """

    async def dependency(
        response: Response,
        db: Session = Depends(get_db),
        identity: RequestIdentity = Depends(get_identity),
        services: GovernanceServices = Depends(get_services),
    ) -> GovernanceDecision:
        decision = services.governance.enforce(db, identity, action, resource, request_approval=False)
        set_warnings(response, decision.warnings)
        return decision

    return dependency
