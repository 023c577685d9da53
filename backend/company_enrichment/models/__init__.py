from company_enrichment.models.base import Base
from company_enrichment.models.workspace import Workspace, WorkspaceMember, WorkspaceRole, Profile
from company_enrichment.models.enrichment import (
    EnrichmentCacheEntry,
    WorkspaceApiBalance,
    ApiBalanceTransaction,
    EnrichmentMetric,
)

__all__ = [
    "Base",
    # Tenancy
    "Workspace", "WorkspaceMember", "WorkspaceRole", "Profile",
    # Enrichment
    "EnrichmentCacheEntry", "WorkspaceApiBalance", "ApiBalanceTransaction", "EnrichmentMetric",
]
