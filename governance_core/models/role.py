"""Role, permission and role-assignment models for RBAC."""

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, ForeignKey, UniqueConstraint,
)
from sqlalchemy.orm import relationship

from governance_core.core.clock import utcnow
from governance_core.db.base import Base

GLOBAL_SCOPE = "global"


class Role(Base):
    """Named role with a seniority priority (higher = more senior).

    Priority orders roles for display and approver routing only; it does not
    grant a senior role the permissions of junior ones.
    """
    __tablename__ = "governance_roles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(50), unique=True, nullable=False, index=True)
    display_name = Column(String(100), nullable=True)
    description = Column(String(255), nullable=True)
    priority = Column(Integer, nullable=False, default=10)
    is_system = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    permissions = relationship(
        "Permission", back_populates="role", cascade="all, delete-orphan", lazy="selectin",
    )
    assignments = relationship(
        "UserRoleAssignment", back_populates="role", cascade="all, delete-orphan",
    )


class Permission(Base):
    """Allow or explicit-deny entry for an action on a resource within a scope."""
    __tablename__ = "governance_permissions"
    __table_args__ = (
        UniqueConstraint("role_id", "action", "resource", "scope", "scope_value", name="uq_permission_natural_key"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    role_id = Column(Integer, ForeignKey("governance_roles.id", ondelete="CASCADE"), nullable=False, index=True)
    action = Column(String(100), nullable=False)
    resource = Column(String(100), nullable=False)
    scope = Column(String(50), nullable=False, default=GLOBAL_SCOPE)  # global or a scope kind, e.g. "team"
    scope_value = Column(String(255), nullable=True)  # None = every value of the scope kind
    is_allowed = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    role = relationship("Role", back_populates="permissions")


class UserRoleAssignment(Base):
    """Many-to-many link between an externally identified user and a role."""
    __tablename__ = "governance_user_roles"
    __table_args__ = (
        UniqueConstraint("user_id", "role_id", name="uq_user_role"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(100), nullable=False, index=True)
    role_id = Column(Integer, ForeignKey("governance_roles.id", ondelete="CASCADE"), nullable=False)
    granted_by = Column(String(100), nullable=True)
    expires_at = Column(DateTime, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    role = relationship("Role", back_populates="assignments", lazy="joined")
