"""Models package: import all models so metadata.create_all can discover them."""

from governance_core.models.role import Role, Permission, UserRoleAssignment
from governance_core.models.policy import Policy, PolicyCategory, ApprovalRule
from governance_core.models.approval import (
    ApprovalRequest, ApprovalStep, ApprovalStatus, StepDecision,
)
from governance_core.models.audit_log import AuditLog
from governance_core.models.export_job import (
    ExportJob, ExportStatus, ExportFormat, ExportRateWindow,
)

__all__ = [
    "Role", "Permission", "UserRoleAssignment",
    "Policy", "PolicyCategory", "ApprovalRule",
    "ApprovalRequest", "ApprovalStep", "ApprovalStatus", "StepDecision",
    "AuditLog",
    "ExportJob", "ExportStatus", "ExportFormat", "ExportRateWindow",
]
