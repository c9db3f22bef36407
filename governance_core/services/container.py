"""Builds the service graph from one settings object."""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import sessionmaker

from governance_core.core.clock import Clock, utcnow
from governance_core.core.config import Settings
from governance_core.services.approval_service import ApprovalService
from governance_core.services.audit_service import AuditService
from governance_core.services.escalation import EscalationSweeper
from governance_core.services.export_service import ExportService
from governance_core.services.governance_service import GovernanceService
from governance_core.services.notification_service import NotificationService
from governance_core.services.policy_engine import PolicyEngine
from governance_core.services.rate_limiter import build_rate_counter


@dataclass
class GovernanceServices:
    settings: Settings
    audit: AuditService
    policy_engine: PolicyEngine
    notifications: NotificationService
    approvals: ApprovalService
    exports: ExportService
    governance: GovernanceService
    sweeper: EscalationSweeper


def build_services(
    settings: Settings,
    session_factory: sessionmaker,
    clock: Clock = utcnow,
    notifications: Optional[NotificationService] = None,
    rate_counter=None,
) -> GovernanceServices:
    audit = AuditService(settings, clock=clock)
    engine = PolicyEngine(settings.POLICY_BYPASS_ROLES, settings.ADMIN_ROLES)
    notifications = notifications or NotificationService(settings)
    approvals = ApprovalService(settings, audit, engine, notify=notifications.dispatch, clock=clock)
    exports = ExportService(
        settings, approvals, audit, rate_counter or build_rate_counter(settings), clock=clock,
    )
    return GovernanceServices(
        settings=settings,
        audit=audit,
        policy_engine=engine,
        notifications=notifications,
        approvals=approvals,
        exports=exports,
        governance=GovernanceService(settings, engine, approvals, audit),
        sweeper=EscalationSweeper(
            session_factory, approvals,
            interval_minutes=settings.ESCALATION_SWEEP_INTERVAL_MINUTES,
            enabled=settings.ENABLE_ESCALATION,
            clock=clock,
        ),
    )
