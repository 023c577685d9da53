"""Per-workspace rate ceiling and prepaid balance enforcement."""
from __future__ import annotations

import math
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from company_enrichment.services.enrichment.observability import get_logger
from company_enrichment.services.enrichment.stores import BalanceStore, RateLimitStore
from company_enrichment.services.enrichment.types import (
    BalanceResult,
    DeductionResult,
    FailurePolicy,
    RateLimitResult,
)

logger = get_logger(__name__)

RATE_LIMIT_WINDOW_SECONDS = 60
RATE_LIMIT_MAX_REQUESTS = 30
ENRICHMENT_COST_CENTS = 1


def coerce_policy(value: object, default: FailurePolicy = FailurePolicy.OPEN) -> FailurePolicy:
    try:
        return FailurePolicy(str(value or "").strip().lower())
    except ValueError:
        return default


class RateLimiter:
    """Fixed-window counter: ``enrichment:rate:{workspace}:{window_start}``.

    The store increments atomically, so parallel requests for one workspace
    never lose increments.
    """

    def __init__(
        self,
        store: RateLimitStore,
        *,
        window_seconds: int = RATE_LIMIT_WINDOW_SECONDS,
        max_requests: int = RATE_LIMIT_MAX_REQUESTS,
        failure_policy: FailurePolicy = FailurePolicy.OPEN,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self.window_seconds = max(1, int(window_seconds))
        self.max_requests = max(1, int(max_requests))
        self.failure_policy = failure_policy
        self._clock = clock

    def _window_start(self, now: float) -> int:
        return int(now // self.window_seconds) * self.window_seconds

    @staticmethod
    def key_for(workspace_id: str, window_start: int) -> str:
        return f"enrichment:rate:{workspace_id}:{window_start}"

    async def check(self, workspace_id: str) -> RateLimitResult:
        window_start = self._window_start(self._clock())
        reset_at = datetime.fromtimestamp(window_start + self.window_seconds, tz=timezone.utc)

        try:
            count = await self._store.increment(self.key_for(workspace_id, window_start), self.window_seconds)
        except Exception as exc:
            allowed = self.failure_policy == FailurePolicy.OPEN
            logger.error(
                "rate_limit.store_unavailable",
                workspace_id=workspace_id,
                failure_policy=self.failure_policy.value,
                allowed=allowed,
                error=str(exc)[:500],
            )
            return RateLimitResult(
                allowed=allowed,
                current_count=0,
                remaining=self.max_requests if allowed else 0,
                reset_at=reset_at,
                limit=self.max_requests,
                store_error=True,
            )

        return RateLimitResult(
            allowed=count <= self.max_requests,
            current_count=count,
            remaining=max(0, self.max_requests - count),
            reset_at=reset_at,
            limit=self.max_requests,
        )


def rate_limit_headers(result: RateLimitResult, *, now: Optional[float] = None, include_retry: bool = False) -> Dict[str, str]:
    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(int(result.reset_at.timestamp())),
    }
    if include_retry:
        current = time.time() if now is None else now
        headers["Retry-After"] = str(max(1, int(math.ceil(result.reset_at.timestamp() - current))))
    return headers


class BalanceLimiter:
    def __init__(
        self,
        store: BalanceStore,
        *,
        cost_cents: int = ENRICHMENT_COST_CENTS,
        failure_policy: FailurePolicy = FailurePolicy.OPEN,
    ) -> None:
        self._store = store
        self.cost_cents = max(0, int(cost_cents))
        self.failure_policy = failure_policy

    async def check(self, workspace_id: str) -> BalanceResult:
        try:
            balance = int(await self._store.get_balance(workspace_id))
        except Exception as exc:
            allowed = self.failure_policy == FailurePolicy.OPEN
            logger.error(
                "balance.store_unavailable",
                workspace_id=workspace_id,
                failure_policy=self.failure_policy.value,
                allowed=allowed,
                error=str(exc)[:500],
            )
            return BalanceResult(
                has_balance=allowed,
                current_balance_cents=0,
                cost_per_call_cents=self.cost_cents,
                store_error=True,
            )
        return BalanceResult(
            has_balance=balance >= self.cost_cents,
            current_balance_cents=balance,
            cost_per_call_cents=self.cost_cents,
        )

    async def deduct(self, workspace_id: str, user_id: Optional[str], description: str) -> DeductionResult:
        """Charge one call. Failures are logged; the enrichment already returned stands."""
        try:
            result = await self._store.deduct(workspace_id, user_id, self.cost_cents, description)
        except Exception as exc:
            logger.error("balance.deduction_failed", workspace_id=workspace_id, error=str(exc)[:500])
            return DeductionResult(success=False, error=str(exc)[:500])
        if not result.success:
            logger.warning("balance.deduction_rejected", workspace_id=workspace_id, error=result.error)
        return result
