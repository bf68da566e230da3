"""
Workspace models.

A workspace is the tenant boundary: memberships, custom roles, groups and
resource overrides all hang off a workspace ID. Boards and projects are only
modelled as far as ownership goes; their domain lives elsewhere.
"""
from datetime import datetime
from sqlalchemy import String, ForeignKey, DateTime, UniqueConstraint, Enum as SQLEnum, func
from sqlalchemy.orm import Mapped, mapped_column
import enum

from app.core.database.base import Base, TimestampMixin, generate_ulid, enum_values


class MemberRole(str, enum.Enum):
    """Built-in membership roles. Owner and admin bypass every check."""
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"
    VIEWER = "viewer"

    @property
    def bypasses_checks(self) -> bool:
        return self in (MemberRole.OWNER, MemberRole.ADMIN)


class Workspace(Base, TimestampMixin):
    """Tenant boundary. ``owner_id`` always matches the single owner membership."""
    __tablename__ = "workspaces"
    
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    owner_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("users.id"),
        nullable=False,
        index=True
    )
    
    def __repr__(self) -> str:
        return f"<Workspace(id={self.id}, name={self.name!r}, owner_id={self.owner_id})>"


class WorkspaceMember(Base):
    """
    Membership of a principal in a workspace.
    
    Exactly one row per (workspace, user).
    """
    __tablename__ = "workspace_members"
    __table_args__ = (
        UniqueConstraint("workspace_id", "user_id", name="uq_workspace_members_workspace_user"),
    )
    
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    workspace_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    user_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    role: Mapped[MemberRole] = mapped_column(
        SQLEnum(MemberRole, native_enum=False, values_callable=enum_values, length=20),
        default=MemberRole.MEMBER,
        nullable=False
    )
    invited_by_id: Mapped[str | None] = mapped_column(String(26), ForeignKey("users.id"), nullable=True)
    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False
    )
    
    def __repr__(self) -> str:
        return f"<WorkspaceMember(workspace_id={self.workspace_id}, user_id={self.user_id}, role={self.role})>"


class Board(Base, TimestampMixin):
    """Ownership record for a board."""
    __tablename__ = "boards"
    
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    workspace_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    
    def __repr__(self) -> str:
        return f"<Board(id={self.id}, workspace_id={self.workspace_id})>"


class Project(Base, TimestampMixin):
    """Ownership record for a project."""
    __tablename__ = "projects"
    
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    workspace_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    
    def __repr__(self) -> str:
        return f"<Project(id={self.id}, workspace_id={self.workspace_id})>"
