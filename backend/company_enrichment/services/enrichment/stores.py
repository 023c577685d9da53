"""Backing stores for the enrichment pipeline.

Each concern has a small protocol with three kinds of implementation:
in-memory (tests, local development, process-local fallback), SQLAlchemy
(Postgres, authoritative) and Redis (rate counters). Every limit-enforcing
operation is a single atomic store-side operation; callers never
read-then-write to enforce a limit.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import asdict, replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Protocol, Set, Tuple

import redis.asyncio as aioredis
from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from company_enrichment.models import (
    ApiBalanceTransaction,
    EnrichmentCacheEntry,
    EnrichmentMetric,
    Profile,
    WorkspaceApiBalance,
    WorkspaceMember,
)
from company_enrichment.services.enrichment.types import CacheEntry, DeductionResult, EnrichmentMetrics, utcnow


# ============================================================================
# Protocols
# ============================================================================

class MembershipStore(Protocol):
    async def get_role(self, workspace_id: str, user_id: str) -> Optional[str]: ...

    async def is_platform_admin(self, user_id: str) -> bool: ...


class RateLimitStore(Protocol):
    async def increment(self, key: str, ttl_seconds: int) -> int:
        """Atomically increment ``key`` and return the new count."""
        ...


class BalanceStore(Protocol):
    async def get_balance(self, workspace_id: str) -> int: ...

    async def deduct(self, workspace_id: str, user_id: Optional[str], cents: int, description: str) -> DeductionResult: ...


class CacheStore(Protocol):
    async def get(self, domain: str, workspace_id: str) -> Optional[CacheEntry]: ...

    async def upsert(self, entry: CacheEntry) -> None: ...

    async def delete(self, domain: str, workspace_id: str) -> int: ...

    async def record_hit(self, domain: str, workspace_id: str, accessed_at: datetime) -> None: ...

    async def count(self, workspace_id: str) -> int: ...

    async def delete_expired(self, workspace_id: str, now: datetime) -> int: ...

    async def delete_least_recently_used(self, workspace_id: str, limit: int) -> int: ...


class MetricsSink(Protocol):
    async def insert(self, metrics: EnrichmentMetrics) -> None: ...


# ============================================================================
# In-memory
# ============================================================================

class InMemoryMembershipStore:
    def __init__(self) -> None:
        self._roles: Dict[Tuple[str, str], str] = {}
        self._admins: Set[str] = set()

    def add_member(self, workspace_id: str, user_id: str, role: str = "member") -> None:
        self._roles[(workspace_id, user_id)] = role

    def set_admin(self, user_id: str, is_admin: bool = True) -> None:
        if is_admin:
            self._admins.add(user_id)
        else:
            self._admins.discard(user_id)

    async def get_role(self, workspace_id: str, user_id: str) -> Optional[str]:
        return self._roles.get((workspace_id, user_id))

    async def is_platform_admin(self, user_id: str) -> bool:
        return user_id in self._admins


class InMemoryRateLimitStore:
    """Process-local counters; keys expire on their own like Redis TTLs."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._counters: Dict[str, Tuple[int, float]] = {}
        self._lock = asyncio.Lock()

    async def increment(self, key: str, ttl_seconds: int) -> int:
        async with self._lock:
            now = self._clock()
            count, expires_at = self._counters.get(key, (0, 0.0))
            if expires_at <= now:
                count, expires_at = 0, now + max(1, int(ttl_seconds))
            count += 1
            self._counters[key] = (count, expires_at)
            if len(self._counters) > 10_000:
                self._counters = {k: v for k, v in self._counters.items() if v[1] > now}
            return count


class InMemoryBalanceStore:
    def __init__(self, balances: Optional[Dict[str, int]] = None) -> None:
        self._balances: Dict[str, int] = dict(balances or {})
        self.transactions: List[Dict[str, object]] = []
        self._lock = asyncio.Lock()

    def set_balance(self, workspace_id: str, cents: int) -> None:
        self._balances[workspace_id] = int(cents)

    async def get_balance(self, workspace_id: str) -> int:
        return self._balances.get(workspace_id, 0)

    async def deduct(self, workspace_id: str, user_id: Optional[str], cents: int, description: str) -> DeductionResult:
        async with self._lock:
            current = self._balances.get(workspace_id, 0)
            if current < cents:
                return DeductionResult(success=False, balance_after_cents=current, error="Insufficient balance")
            after = current - cents
            self._balances[workspace_id] = after
            self.transactions.append(
                {
                    "workspace_id": workspace_id,
                    "user_id": user_id,
                    "amount_cents": -cents,
                    "balance_after_cents": after,
                    "description": description,
                    "created_at": utcnow(),
                }
            )
            return DeductionResult(success=True, balance_after_cents=after)


class InMemoryCacheStore:
    def __init__(self) -> None:
        self._rows: Dict[Tuple[str, str], CacheEntry] = {}

    async def get(self, domain: str, workspace_id: str) -> Optional[CacheEntry]:
        entry = self._rows.get((domain, workspace_id))
        return replace(entry) if entry is not None else None

    async def upsert(self, entry: CacheEntry) -> None:
        self._rows[(entry.domain, entry.workspace_id)] = replace(entry)

    async def delete(self, domain: str, workspace_id: str) -> int:
        return 1 if self._rows.pop((domain, workspace_id), None) is not None else 0

    async def record_hit(self, domain: str, workspace_id: str, accessed_at: datetime) -> None:
        entry = self._rows.get((domain, workspace_id))
        if entry is not None:
            entry.hit_count += 1
            entry.last_accessed_at = accessed_at

    async def count(self, workspace_id: str) -> int:
        return sum(1 for (_, ws) in self._rows if ws == workspace_id)

    async def delete_expired(self, workspace_id: str, now: datetime) -> int:
        doomed = [key for key, row in self._rows.items() if key[1] == workspace_id and row.expires_at <= now]
        for key in doomed:
            del self._rows[key]
        return len(doomed)

    async def delete_least_recently_used(self, workspace_id: str, limit: int) -> int:
        if limit <= 0:
            return 0
        rows = [(key, row) for key, row in self._rows.items() if key[1] == workspace_id]
        rows.sort(key=lambda item: item[1].last_accessed_at or item[1].fetched_at)
        for key, _ in rows[:limit]:
            del self._rows[key]
        return min(limit, len(rows))


class InMemoryMetricsSink:
    def __init__(self) -> None:
        self.records: List[EnrichmentMetrics] = []

    async def insert(self, metrics: EnrichmentMetrics) -> None:
        self.records.append(metrics)


# ============================================================================
# Redis
# ============================================================================

class RedisRateLimitStore:
    def __init__(self, redis_url: str, client: Optional[aioredis.Redis] = None) -> None:
        self._client = client or aioredis.Redis.from_url(redis_url, decode_responses=True)

    async def increment(self, key: str, ttl_seconds: int) -> int:
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.expire(key, max(1, int(ttl_seconds)))
            count, _ = await pipe.execute()
        return int(count)

    async def aclose(self) -> None:
        await self._client.aclose()


# ============================================================================
# SQLAlchemy
# ============================================================================

def _cache_entry_from_row(row: EnrichmentCacheEntry) -> CacheEntry:
    return CacheEntry(
        id=str(row.id) if row.id else None,
        domain=row.domain,
        workspace_id=str(row.workspace_id),
        enrichment_data=dict(row.enrichment_data or {}),
        provider=row.provider,
        fetched_at=row.fetched_at,
        expires_at=row.expires_at,
        hit_count=int(row.hit_count or 0),
        last_accessed_at=row.last_accessed_at,
    )


class SqlMembershipStore:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._session_maker = session_maker

    async def get_role(self, workspace_id: str, user_id: str) -> Optional[str]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(WorkspaceMember.role).where(
                    WorkspaceMember.workspace_id == workspace_id,
                    WorkspaceMember.user_id == user_id,
                )
            )
            return result.scalar_one_or_none()

    async def is_platform_admin(self, user_id: str) -> bool:
        async with self._session_maker() as session:
            result = await session.execute(select(Profile.is_admin).where(Profile.id == user_id))
            return bool(result.scalar_one_or_none())


class SqlBalanceStore:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._session_maker = session_maker

    async def get_balance(self, workspace_id: str) -> int:
        async with self._session_maker() as session:
            result = await session.execute(
                select(WorkspaceApiBalance.balance_cents).where(WorkspaceApiBalance.workspace_id == workspace_id)
            )
            return int(result.scalar_one_or_none() or 0)

    async def deduct(self, workspace_id: str, user_id: Optional[str], cents: int, description: str) -> DeductionResult:
        async with self._session_maker() as session:
            async with session.begin():
                result = await session.execute(
                    update(WorkspaceApiBalance)
                    .where(
                        WorkspaceApiBalance.workspace_id == workspace_id,
                        WorkspaceApiBalance.balance_cents >= cents,
                    )
                    .values(
                        balance_cents=WorkspaceApiBalance.balance_cents - cents,
                        updated_at=utcnow(),
                    )
                    .returning(WorkspaceApiBalance.balance_cents)
                    .execution_options(synchronize_session=False)
                )
                after = result.scalar_one_or_none()
                if after is None:
                    return DeductionResult(success=False, error="Insufficient balance")
                session.add(
                    ApiBalanceTransaction(
                        workspace_id=workspace_id,
                        user_id=user_id,
                        amount_cents=-cents,
                        balance_after_cents=int(after),
                        description=description[:200],
                    )
                )
        return DeductionResult(success=True, balance_after_cents=int(after))


class SqlCacheStore:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._session_maker = session_maker

    async def get(self, domain: str, workspace_id: str) -> Optional[CacheEntry]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(EnrichmentCacheEntry).where(
                    EnrichmentCacheEntry.domain == domain,
                    EnrichmentCacheEntry.workspace_id == workspace_id,
                )
            )
            row = result.scalar_one_or_none()
            return _cache_entry_from_row(row) if row is not None else None

    async def upsert(self, entry: CacheEntry) -> None:
        stmt = pg_insert(EnrichmentCacheEntry).values(
            domain=entry.domain,
            workspace_id=entry.workspace_id,
            enrichment_data=entry.enrichment_data,
            provider=entry.provider,
            fetched_at=entry.fetched_at,
            expires_at=entry.expires_at,
            hit_count=entry.hit_count,
            last_accessed_at=entry.last_accessed_at or entry.fetched_at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[EnrichmentCacheEntry.domain, EnrichmentCacheEntry.workspace_id],
            set_={
                "enrichment_data": stmt.excluded.enrichment_data,
                "provider": stmt.excluded.provider,
                "fetched_at": stmt.excluded.fetched_at,
                "expires_at": stmt.excluded.expires_at,
                "hit_count": stmt.excluded.hit_count,
                "last_accessed_at": stmt.excluded.last_accessed_at,
            },
        )
        async with self._session_maker() as session:
            await session.execute(stmt)
            await session.commit()

    async def delete(self, domain: str, workspace_id: str) -> int:
        async with self._session_maker() as session:
            result = await session.execute(
                delete(EnrichmentCacheEntry).where(
                    EnrichmentCacheEntry.domain == domain,
                    EnrichmentCacheEntry.workspace_id == workspace_id,
                )
            )
            await session.commit()
            return int(result.rowcount or 0)

    async def record_hit(self, domain: str, workspace_id: str, accessed_at: datetime) -> None:
        async with self._session_maker() as session:
            await session.execute(
                update(EnrichmentCacheEntry)
                .where(
                    EnrichmentCacheEntry.domain == domain,
                    EnrichmentCacheEntry.workspace_id == workspace_id,
                )
                .values(
                    hit_count=EnrichmentCacheEntry.hit_count + 1,
                    last_accessed_at=accessed_at,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def count(self, workspace_id: str) -> int:
        async with self._session_maker() as session:
            result = await session.execute(
                select(func.count(EnrichmentCacheEntry.id)).where(EnrichmentCacheEntry.workspace_id == workspace_id)
            )
            return int(result.scalar_one() or 0)

    async def delete_expired(self, workspace_id: str, now: datetime) -> int:
        async with self._session_maker() as session:
            result = await session.execute(
                delete(EnrichmentCacheEntry).where(
                    EnrichmentCacheEntry.workspace_id == workspace_id,
                    EnrichmentCacheEntry.expires_at <= now,
                )
            )
            await session.commit()
            return int(result.rowcount or 0)

    async def delete_least_recently_used(self, workspace_id: str, limit: int) -> int:
        if limit <= 0:
            return 0
        oldest = (
            select(EnrichmentCacheEntry.id)
            .where(EnrichmentCacheEntry.workspace_id == workspace_id)
            .order_by(EnrichmentCacheEntry.last_accessed_at.asc())
            .limit(limit)
            .scalar_subquery()
        )
        async with self._session_maker() as session:
            result = await session.execute(
                delete(EnrichmentCacheEntry).where(EnrichmentCacheEntry.id.in_(oldest))
            )
            await session.commit()
            return int(result.rowcount or 0)


class SqlMetricsSink:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._session_maker = session_maker

    async def insert(self, metrics: EnrichmentMetrics) -> None:
        values = asdict(metrics)
        values.pop("timestamp", None)
        async with self._session_maker() as session:
            session.add(EnrichmentMetric(**values))
            await session.commit()
