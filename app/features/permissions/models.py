"""
Permission, Role, Group, ResourceOverride and AuditLog models.

This module implements the workspace-scoped permission store:
- Catalog permissions (mirrored from ``catalog.py``)
- Custom roles bundling permission codes, assigned to users per workspace
- Groups of users for bulk resource grants
- Per-resource overrides for a single user or group, with an ordered level
- Append-only audit trail of every permission-affecting change

Every workspace-scoped row carries ``workspace_id`` so cascades and cache
invalidation are scoped by one column.
"""
from datetime import datetime, timezone
from typing import Any, Dict
from sqlalchemy import (
    String, ForeignKey, Table, Column, JSON, Text, DateTime, Boolean,
    UniqueConstraint, Index, Enum as SQLEnum,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database.base import Base, TimestampMixin, generate_ulid, enum_values
from app.features.permissions.catalog import ResourceLevel, ResourceType, SubjectType


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Association Tables for Many-to-Many Relationships
# ============================================================================

# Role-Permission relationship (replaced wholesale on role update)
role_permissions = Table(
    "role_permissions",
    Base.metadata,
    Column("role_id", String(26), ForeignKey("workspace_roles.id", ondelete="CASCADE"), primary_key=True),
    Column("permission_code", String(100), ForeignKey("permissions.code", ondelete="CASCADE"), primary_key=True),
)

# Group membership
group_members = Table(
    "user_group_members",
    Base.metadata,
    Column("group_id", String(26), ForeignKey("user_groups.id", ondelete="CASCADE"), primary_key=True),
    Column("user_id", String(26), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True, index=True),
    Column("added_at", DateTime(timezone=True), nullable=False, default=utcnow),
)


# ============================================================================
# Core Models
# ============================================================================

class Permission(Base):
    """
    Catalog permission, keyed by its code (e.g. ``board.edit``).

    Rows are created by ``sync_permission_catalog`` and never modified.
    """
    __tablename__ = "permissions"

    code: Mapped[str] = mapped_column(String(100), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<Permission(code={self.code!r}, category={self.category})>"


class Role(Base, TimestampMixin):
    """
    Custom workspace role bundling permission codes.

    Distinct from the built-in membership roles; names are unique per workspace.
    """
    __tablename__ = "workspace_roles"
    __table_args__ = (
        UniqueConstraint("workspace_id", "name", name="uq_workspace_roles_workspace_name"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    workspace_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    color: Mapped[str] = mapped_column(String(7), nullable=False, default="#6366f1")
    # Set for roles created from the seeded templates
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    permissions: Mapped[list["Permission"]] = relationship(
        "Permission",
        secondary=role_permissions,
        lazy="selectin",
        order_by="Permission.code",
    )

    @property
    def permission_codes(self) -> list[str]:
        return sorted(permission.code for permission in self.permissions)

    def __repr__(self) -> str:
        return f"<Role(id={self.id}, name={self.name!r}, workspace_id={self.workspace_id})>"


class RoleAssignment(Base):
    """Custom role held by a user in a workspace."""
    __tablename__ = "user_roles"
    __table_args__ = (
        UniqueConstraint("user_id", "workspace_id", "role_id", name="uq_user_roles_user_workspace_role"),
        Index("ix_user_roles_workspace_user", "workspace_id", "user_id"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    user_id: Mapped[str] = mapped_column(String(26), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    workspace_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False
    )
    role_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("workspace_roles.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    assigned_by_id: Mapped[str | None] = mapped_column(String(26), ForeignKey("users.id"), nullable=True)
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<RoleAssignment(user_id={self.user_id}, workspace_id={self.workspace_id}, role_id={self.role_id})>"


class Group(Base, TimestampMixin):
    """
    Named set of workspace members used to grant resource overrides in bulk.
    """
    __tablename__ = "user_groups"
    __table_args__ = (
        UniqueConstraint("workspace_id", "name", name="uq_user_groups_workspace_name"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    workspace_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    color: Mapped[str] = mapped_column(String(7), nullable=False, default="#6366f1")
    created_by_id: Mapped[str | None] = mapped_column(String(26), ForeignKey("users.id"), nullable=True)

    def __repr__(self) -> str:
        return f"<Group(id={self.id}, name={self.name!r}, workspace_id={self.workspace_id})>"


class ResourceOverride(Base, TimestampMixin):
    """
    Direct grant of a level on a board or project to one user or one group.

    At most one row per (resource_type, resource_id, subject_type, subject_id).
    """
    __tablename__ = "resource_overrides"
    __table_args__ = (
        UniqueConstraint(
            "resource_type", "resource_id", "subject_type", "subject_id",
            name="uq_resource_overrides_resource_subject",
        ),
        Index("ix_resource_overrides_resource", "resource_type", "resource_id"),
        Index("ix_resource_overrides_subject", "subject_type", "subject_id"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    workspace_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    resource_type: Mapped[ResourceType] = mapped_column(
        SQLEnum(ResourceType, native_enum=False, values_callable=enum_values, length=20),
        nullable=False
    )
    resource_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subject_type: Mapped[SubjectType] = mapped_column(
        SQLEnum(SubjectType, native_enum=False, values_callable=enum_values, length=20),
        nullable=False
    )
    subject_id: Mapped[str] = mapped_column(String(26), nullable=False)
    level: Mapped[ResourceLevel] = mapped_column(
        SQLEnum(ResourceLevel, native_enum=False, values_callable=enum_values, length=20),
        nullable=False
    )
    granted_by_id: Mapped[str | None] = mapped_column(String(26), ForeignKey("users.id"), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<ResourceOverride({self.resource_type.value}:{self.resource_id} "
            f"{self.subject_type.value}:{self.subject_id} level={self.level.value})>"
        )


class AuditLog(Base):
    """
    Append-only record of a permission-affecting change.

    Rows are never updated or deleted, and outlive the entities they describe.
    """
    __tablename__ = "permission_audit_logs"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    workspace_id: Mapped[str] = mapped_column(String(26), nullable=False, index=True)

    # Action details
    action: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Actors
    performed_by: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True
    )
    target_user_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    # Snapshots
    old_value: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    new_value: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, action={self.action}, entity={self.entity_type}:{self.entity_id})>"
