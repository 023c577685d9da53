"""Tenant-scoped enrichment cache with a fixed TTL and per-workspace capacity cap."""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Union

from company_enrichment.services.enrichment.observability import fire_and_forget, get_logger
from company_enrichment.services.enrichment.stores import CacheStore
from company_enrichment.services.enrichment.types import (
    CacheEntry,
    CacheReadResult,
    EnrichedCompanyData,
    utcnow,
)
from company_enrichment.services.enrichment.url_validation import normalize_domain

logger = get_logger(__name__)

CACHE_TTL_SECONDS = 24 * 60 * 60
MAX_ENTRIES_PER_WORKSPACE = 1000
EVICTION_SLACK = 10


class EnrichmentCache:
    """Read/write-through cache keyed by (normalised domain, workspace).

    Hit bookkeeping and capacity pruning run as fire-and-forget tasks and can
    never fail the read or write that scheduled them.
    """

    def __init__(
        self,
        store: CacheStore,
        *,
        ttl_seconds: int = CACHE_TTL_SECONDS,
        max_entries: int = MAX_ENTRIES_PER_WORKSPACE,
        eviction_slack: int = EVICTION_SLACK,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self.ttl = timedelta(seconds=max(1, int(ttl_seconds)))
        self.max_entries = max(1, int(max_entries))
        self.eviction_slack = max(0, int(eviction_slack))
        self._clock = clock

    async def read(self, domain: str, workspace_id: str) -> CacheReadResult:
        key = normalize_domain(domain)
        now = self._clock()
        try:
            entry = await self._store.get(key, workspace_id)
        except Exception as exc:
            logger.warning("cache.read_failed", workspace_id=workspace_id, error=str(exc)[:500])
            return CacheReadResult(found=False)

        if entry is None:
            return CacheReadResult(found=False)

        if entry.expires_at <= now:
            try:
                await self._store.delete(key, workspace_id)
            except Exception as exc:
                logger.warning("cache.expired_delete_failed", workspace_id=workspace_id, error=str(exc)[:500])
            logger.debug("cache.expired", workspace_id=workspace_id)
            return CacheReadResult(found=False)

        fire_and_forget(
            self._store.record_hit(key, workspace_id, now),
            logger=logger,
            event="cache.hit_record_failed",
        )
        remaining_ms = int((entry.expires_at - now).total_seconds() * 1000)
        return CacheReadResult(found=True, entry=entry, remaining_ttl_ms=max(0, remaining_ms))

    async def write(
        self,
        domain: str,
        workspace_id: str,
        data: Union[EnrichedCompanyData, Dict[str, Any]],
        provider: str,
    ) -> Optional[CacheEntry]:
        """Upsert with a fresh TTL and a zeroed hit counter. Returns ``None`` on store failure."""
        key = normalize_domain(domain)
        now = self._clock()
        payload = data.to_dict() if isinstance(data, EnrichedCompanyData) else dict(data)
        entry = CacheEntry(
            domain=key,
            workspace_id=workspace_id,
            enrichment_data=payload,
            provider=provider,
            fetched_at=now,
            expires_at=now + self.ttl,
            hit_count=0,
            last_accessed_at=now,
        )
        try:
            await self._store.upsert(entry)
        except Exception as exc:
            logger.warning("cache.write_failed", workspace_id=workspace_id, error=str(exc)[:500])
            return None

        fire_and_forget(
            self.enforce_capacity(workspace_id),
            logger=logger,
            event="cache.capacity_enforcement_failed",
        )
        return entry

    async def invalidate(self, domain: str, workspace_id: str) -> bool:
        deleted = await self._store.delete(normalize_domain(domain), workspace_id)
        return deleted > 0

    async def enforce_capacity(self, workspace_id: str) -> int:
        """Drop expired rows, then least-recently-accessed rows to just under the cap."""
        count = await self._store.count(workspace_id)
        if count <= self.max_entries:
            return 0
        removed = await self._store.delete_expired(workspace_id, self._clock())
        count -= removed
        if count > self.max_entries:
            overflow = count - self.max_entries + self.eviction_slack
            removed += await self._store.delete_least_recently_used(workspace_id, overflow)
        logger.info("cache.capacity_enforced", workspace_id=workspace_id, removed=removed)
        return removed
