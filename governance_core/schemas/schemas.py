"""Pydantic schemas for API request/response serialization."""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime

from governance_core.models.approval import ApprovalStatus, StepDecision
from governance_core.models.export_job import ExportFormat, ExportStatus


# ---- Roles ----
class RoleCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    priority: int = Field(..., ge=1)
    display_name: Optional[str] = None
    description: Optional[str] = None

class RoleUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=50)
    priority: Optional[int] = Field(None, ge=1)
    display_name: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None

class PermissionOut(BaseModel):
    id: int
    role_id: int
    action: str
    resource: str
    scope: str
    scope_value: Optional[str] = None
    is_allowed: bool

    class Config:
        from_attributes = True

class RoleOut(BaseModel):
    id: int
    name: str
    display_name: Optional[str] = None
    description: Optional[str] = None
    priority: int
    is_system: bool
    is_active: bool
    permissions: List[PermissionOut] = []
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class PermissionCreate(BaseModel):
    role_id: int
    action: str = Field(..., min_length=1)
    resource: str = Field(..., min_length=1)
    scope: str = "global"
    scope_value: Optional[str] = None
    is_allowed: bool = True

class AssignmentCreate(BaseModel):
    user_id: str = Field(..., min_length=1)
    role_name: str = Field(..., min_length=1)

class AssignmentOut(BaseModel):
    id: int
    user_id: str
    role_id: int
    granted_by: Optional[str] = None
    is_active: bool
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class PermissionCheck(BaseModel):
    roles: List[str]
    action: str
    resource: str
    scope: Optional[str] = None
    scope_value: Optional[str] = None


# ---- Policies ----
class ConditionIn(BaseModel):
    field: str
    operator: str
    value: Any = None

class PolicyCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    effect: str = "block"
    category: str = "restriction"
    actions: List[str] = []
    resources: List[str] = []
    roles: List[str] = []
    conditions: List[ConditionIn] = []
    message: Optional[str] = None
    priority: int = 0
    description: Optional[str] = None
    is_active: bool = True

class PolicyUpdate(BaseModel):
    name: Optional[str] = None
    effect: Optional[str] = None
    category: Optional[str] = None
    actions: Optional[List[str]] = None
    resources: Optional[List[str]] = None
    roles: Optional[List[str]] = None
    conditions: Optional[List[ConditionIn]] = None
    message: Optional[str] = None
    priority: Optional[int] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None

class PolicyOut(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    category: str
    effect: str
    priority: int
    actions: List[str]
    resources: List[str]
    roles: List[str]
    conditions: List[Dict[str, Any]]
    message: Optional[str] = None
    is_active: bool

class EvaluateRequest(BaseModel):
    action: str = Field(..., min_length=1)
    resource: str = Field(..., min_length=1)
    resource_id: Optional[str] = None
    scope: Optional[str] = None
    scope_value: Optional[str] = None
    metadata: Dict[str, Any] = {}
    risk_score: Optional[float] = None
    request_approval: bool = True

class PolicyDryRun(BaseModel):
    action: str
    resource: str
    resource_id: Optional[str] = None
    user_id: Optional[str] = None
    user_roles: List[str] = []
    metadata: Dict[str, Any] = {}


# ---- Approvals ----
class ApprovalCreate(BaseModel):
    request_type: str = Field(..., min_length=1)
    resource_type: str = Field(..., min_length=1)
    resource_id: Optional[str] = None
    risk_score: Optional[float] = None
    reason: Optional[str] = None
    priority: str = "normal"
    metadata: Dict[str, Any] = {}

class ApprovalDecision(BaseModel):
    approve: bool
    reason: Optional[str] = None

class ApprovalCancel(BaseModel):
    reason: Optional[str] = None

class ApprovalStepOut(BaseModel):
    step_order: int
    approver_role: str
    decision: StepDecision
    decided_by: Optional[str] = None
    decided_at: Optional[datetime] = None
    reason: Optional[str] = None

    class Config:
        from_attributes = True

class ApprovalOut(BaseModel):
    id: int
    requester_id: str
    request_type: str
    resource_type: str
    resource_id: Optional[str] = None
    status: ApprovalStatus
    priority: str
    reason: Optional[str] = None
    risk_score: Optional[float] = None
    current_approver_role: str
    escalation_level: int
    created_at: Optional[datetime] = None
    sla_deadline: Optional[datetime] = None
    escalated_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    steps: List[ApprovalStepOut] = []

    class Config:
        from_attributes = True


# ---- Audit ----
class AuditLogOut(BaseModel):
    id: int
    actor_id: Optional[str] = None
    action: str
    resource: str
    resource_id: Optional[str] = None
    outcome: Optional[str] = None
    before_snapshot: Optional[str] = None
    after_snapshot: Optional[str] = None
    diff_json: Optional[str] = None
    redacted: bool
    snapshot_hash: Optional[str] = None
    source: Optional[str] = None
    ip_address: Optional[str] = None
    request_id: Optional[str] = None
    metadata_json: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


# ---- Exports ----
class ExportCreate(BaseModel):
    resource_type: str = Field(..., min_length=1)
    format: str = "csv"
    filters: Dict[str, Any] = {}
    fields: Optional[List[str]] = None

class ExportCreated(BaseModel):
    success: bool
    exportId: int
    requiresApproval: bool
    approvalRequestId: Optional[int] = None
    downloadUrl: Optional[str] = None
    recordCount: Optional[int] = None

class ExportOut(BaseModel):
    id: int
    requester_id: str
    resource_type: str
    format: ExportFormat
    status: ExportStatus
    record_count: Optional[int] = None
    requires_approval: bool
    approval_request_id: Optional[int] = None
    file_size: Optional[int] = None
    download_url: Optional[str] = None
    expires_at: Optional[datetime] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# ---- Common ----
class MessageResponse(BaseModel):
    message: str
    success: bool = True
