"""Workspace tenancy models - the multi-tenant access boundary for enrichment."""
from sqlalchemy import Column, String, DateTime, ForeignKey, Boolean, Uuid, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime
import enum
import uuid

from company_enrichment.models.base import Base


class WorkspaceRole(enum.Enum):
    owner = "owner"
    admin = "admin"
    member = "member"


class Workspace(Base):
    """Tenant. Every cache row, balance and metric hangs off one workspace."""
    __tablename__ = "workspaces"

    id = Column(Uuid(as_uuid=False), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    members = relationship("WorkspaceMember", back_populates="workspace", cascade="all, delete-orphan")
    api_balance = relationship("WorkspaceApiBalance", uselist=False, cascade="all, delete-orphan")
    cache_entries = relationship("EnrichmentCacheEntry", cascade="all, delete-orphan")


class WorkspaceMember(Base):
    """Membership row. Absence means 403 for the enrichment route."""
    __tablename__ = "workspace_members"
    __table_args__ = (
        UniqueConstraint("workspace_id", "user_id", name="uq_workspace_members_workspace_user"),
    )

    id = Column(Uuid(as_uuid=False), primary_key=True, default=lambda: str(uuid.uuid4()))
    workspace_id = Column(Uuid(as_uuid=False), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Uuid(as_uuid=False), nullable=False, index=True)
    role = Column(String(20), nullable=False, default=WorkspaceRole.member.value)
    created_at = Column(DateTime, default=datetime.utcnow)

    workspace = relationship("Workspace", back_populates="members")


class Profile(Base):
    """User profile mirror from the identity provider."""
    __tablename__ = "profiles"

    id = Column(Uuid(as_uuid=False), primary_key=True)
    email = Column(String(320), nullable=True)
    is_admin = Column(Boolean, default=False, nullable=False)  # platform admin, bypasses quotas
    created_at = Column(DateTime, default=datetime.utcnow)
