"""Enrichment tables - per-tenant cache, prepaid balance ledger and metrics sink."""
from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    JSON,
    Float,
    ForeignKey,
    Boolean,
    Uuid,
    UniqueConstraint,
    Index,
    CheckConstraint,
)
from datetime import datetime, timezone
import uuid

from company_enrichment.models.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EnrichmentCacheEntry(Base):
    """Validated enrichment payload cached per (domain, workspace)."""
    __tablename__ = "enrichment_cache"
    __table_args__ = (
        UniqueConstraint("domain", "workspace_id", name="uq_enrichment_cache_domain_workspace"),
        Index("ix_enrichment_cache_workspace_last_accessed", "workspace_id", "last_accessed_at"),
    )

    id = Column(Uuid(as_uuid=False), primary_key=True, default=lambda: str(uuid.uuid4()))
    domain = Column(String(255), nullable=False)  # lowercase, no www.
    workspace_id = Column(Uuid(as_uuid=False), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False)

    enrichment_data = Column(JSON, nullable=False, default=dict)
    provider = Column(String(40), nullable=False, default="unknown")

    fetched_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    hit_count = Column(Integer, nullable=False, default=0)
    last_accessed_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class WorkspaceApiBalance(Base):
    """Prepaid API balance in integer cents."""
    __tablename__ = "workspace_api_balances"
    __table_args__ = (
        CheckConstraint("balance_cents >= 0", name="ck_workspace_api_balances_non_negative"),
    )

    workspace_id = Column(Uuid(as_uuid=False), ForeignKey("workspaces.id", ondelete="CASCADE"), primary_key=True)
    balance_cents = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class ApiBalanceTransaction(Base):
    """Ledger row written alongside every balance deduction."""
    __tablename__ = "api_balance_transactions"

    id = Column(Uuid(as_uuid=False), primary_key=True, default=lambda: str(uuid.uuid4()))
    workspace_id = Column(Uuid(as_uuid=False), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Uuid(as_uuid=False), nullable=True)
    amount_cents = Column(Integer, nullable=False)  # negative for debits
    balance_after_cents = Column(Integer, nullable=False)
    description = Column(String(200), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class EnrichmentMetric(Base):
    """Insert-only observability record, one per pipeline invocation."""
    __tablename__ = "enrichment_metrics"

    id = Column(Uuid(as_uuid=False), primary_key=True, default=lambda: str(uuid.uuid4()))
    request_id = Column(String(40), nullable=False, index=True)
    workspace_id = Column(Uuid(as_uuid=False), nullable=True, index=True)
    user_id = Column(Uuid(as_uuid=False), nullable=True)

    domain = Column(String(255), nullable=True)
    provider = Column(String(40), nullable=True, index=True)
    success = Column(Boolean, nullable=False)
    cached = Column(Boolean, nullable=False, default=False)
    is_fallback = Column(Boolean, nullable=False, default=False)
    degraded = Column(Boolean, nullable=False, default=False)
    error_type = Column(String(40), nullable=True)

    duration_ms = Column(Integer, nullable=False, default=0)
    retry_count = Column(Integer, nullable=False, default=0)
    confidence_score = Column(Float, nullable=True)
    fields_enriched = Column(JSON, default=list)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)
