"""Export job and rate-window models."""

import enum

from sqlalchemy import (
    Column, Integer, String, Text, Boolean, DateTime, BigInteger,
    ForeignKey, Enum, UniqueConstraint,
)

from governance_core.core.clock import utcnow
from governance_core.db.base import Base


class ExportStatus(str, enum.Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class ExportFormat(str, enum.Enum):
    csv = "csv"
    json = "json"
    xlsx = "xlsx"
    xml = "xml"

    @property
    def content_type(self) -> str:
        return CONTENT_TYPES[self]


CONTENT_TYPES = {
    ExportFormat.csv: "text/csv",
    ExportFormat.json: "application/json",
    ExportFormat.xlsx: "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ExportFormat.xml: "application/xml",
}


class ExportJob(Base):
    """A bulk export, possibly gated behind an approval request."""
    __tablename__ = "governance_export_jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    requester_id = Column(String(100), nullable=False, index=True)
    resource_type = Column(String(100), nullable=False)
    format = Column(Enum(ExportFormat), nullable=False)
    filters_json = Column(Text, nullable=True)
    fields_json = Column(Text, nullable=True)
    status = Column(Enum(ExportStatus), default=ExportStatus.pending, nullable=False, index=True)
    record_count = Column(Integer, nullable=True)
    requires_approval = Column(Boolean, default=False, nullable=False)
    approval_request_id = Column(
        Integer, ForeignKey("governance_approval_requests.id", ondelete="SET NULL"), nullable=True,
    )
    artifact_path = Column(String(500), nullable=True)
    file_size = Column(BigInteger, nullable=True)
    download_url = Column(String(500), nullable=True)
    expires_at = Column(DateTime, nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)


class ExportRateWindow(Base):
    """Per-user export counter for one clock hour."""
    __tablename__ = "governance_export_rate_windows"
    __table_args__ = (
        UniqueConstraint("user_id", "window_start", name="uq_rate_window"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(100), nullable=False)
    window_start = Column(DateTime, nullable=False)
    count = Column(Integer, nullable=False, default=0)
