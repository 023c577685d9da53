"""Outbound HTTP with hard timeouts, bounded retries and per-provider circuit breakers."""
from __future__ import annotations

import asyncio
import random
import threading
import time
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import httpx

from company_enrichment.services.enrichment.observability import get_logger
from company_enrichment.services.enrichment.types import FetchResult

logger = get_logger(__name__)

RETRYABLE_STATUSES = frozenset({429, 502, 503, 504})

DEFAULT_TIMEOUT_SECONDS = 15.0
DEFAULT_MAX_RETRIES = 2
BASE_RETRY_DELAY_MS = 500
MAX_RETRY_DELAY_MS = 5000
CIRCUIT_FAILURE_THRESHOLD = 5
CIRCUIT_RESET_TIMEOUT_SECONDS = 30.0


class CircuitBreaker:
    """Consecutive-failure breaker for one provider.

    Opens after ``failure_threshold`` consecutive failures. Once
    ``reset_timeout_s`` has elapsed since the last failure the next call is let
    through as a probe: success closes the breaker, failure re-opens it and
    restarts the cool-down.
    """

    def __init__(
        self,
        *,
        name: str,
        failure_threshold: int = CIRCUIT_FAILURE_THRESHOLD,
        reset_timeout_s: float = CIRCUIT_RESET_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._name = name
        self._failure_threshold = max(1, int(failure_threshold))
        self._reset_timeout_s = max(0.0, float(reset_timeout_s))
        self._clock = clock
        self._lock = threading.Lock()
        self._state = "closed"
        self._failures = 0
        self._last_failure_at: Optional[float] = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> str:
        return self._state

    @property
    def failures(self) -> int:
        return self._failures

    @property
    def is_open(self) -> bool:
        return self._state == "open"

    def allow_request(self) -> bool:
        with self._lock:
            if self._state != "open":
                return True
            elapsed = self._clock() - (self._last_failure_at or 0.0)
            if elapsed < self._reset_timeout_s:
                return False
            self._transition("half_open", reason="cooldown_elapsed")
            return True

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0
            if self._state != "closed":
                self._transition("closed", reason="success")

    def record_failure(self, *, reason: Optional[str] = None) -> None:
        with self._lock:
            self._failures += 1
            self._last_failure_at = self._clock()
            if self._state == "half_open":
                self._transition("open", reason=reason or "probe_failed")
            elif self._state == "closed" and self._failures >= self._failure_threshold:
                self._transition("open", reason=reason or "threshold_exceeded")

    def snapshot(self) -> Dict[str, Any]:
        return {"isOpen": self.is_open, "failures": self._failures, "state": self._state}

    def _transition(self, state: str, *, reason: str) -> None:
        if self._state == state:
            return
        self._state = state
        logger.warning(
            "circuit_breaker.state",
            circuit_breaker=self._name,
            state=state,
            reason=reason,
            failures=self._failures,
        )


class CircuitBreakerRegistry:
    """Explicitly scoped holder of breakers keyed by provider identifier."""

    def __init__(
        self,
        *,
        failure_threshold: int = CIRCUIT_FAILURE_THRESHOLD,
        reset_timeout_s: float = CIRCUIT_RESET_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._failure_threshold = failure_threshold
        self._reset_timeout_s = reset_timeout_s
        self._clock = clock
        self._lock = threading.Lock()
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get(self, key: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(key)
            if breaker is None:
                breaker = CircuitBreaker(
                    name=key,
                    failure_threshold=self._failure_threshold,
                    reset_timeout_s=self._reset_timeout_s,
                    clock=self._clock,
                )
                self._breakers[key] = breaker
            return breaker

    def allow_request(self, key: str) -> bool:
        return self.get(key).allow_request()

    def record_failure(self, key: str, *, reason: Optional[str] = None) -> None:
        self.get(key).record_failure(reason=reason)

    def record_success(self, key: str) -> None:
        self.get(key).record_success()

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {breaker.name: breaker.snapshot() for breaker in breakers}


def backoff_delay_seconds(
    attempt: int,
    *,
    base_delay_ms: int = BASE_RETRY_DELAY_MS,
    max_delay_ms: int = MAX_RETRY_DELAY_MS,
    rng: Callable[[], float] = random.random,
) -> float:
    """Exponential backoff with +/-20% jitter, capped at ``max_delay_ms``."""
    delay = float(base_delay_ms) * (2 ** max(0, attempt))
    jitter = delay * 0.2 * (rng() * 2.0 - 1.0)
    return max(0.0, min(delay + jitter, float(max_delay_ms))) / 1000.0


class ResilientHttpClient:
    def __init__(
        self,
        *,
        breakers: Optional[CircuitBreakerRegistry] = None,
        default_timeout_s: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay_ms: int = BASE_RETRY_DELAY_MS,
        max_delay_ms: int = MAX_RETRY_DELAY_MS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.breakers = breakers or CircuitBreakerRegistry()
        self._default_timeout_s = float(default_timeout_s)
        self._max_retries = max(0, int(max_retries))
        self._base_delay_ms = int(base_delay_ms)
        self._max_delay_ms = int(max_delay_ms)
        self._transport = transport
        self._sleep = sleep
        self._rng = rng
        self._client: Optional[httpx.AsyncClient] = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(transport=self._transport, follow_redirects=False)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _backoff(self, attempt: int) -> None:
        delay = backoff_delay_seconds(
            attempt,
            base_delay_ms=self._base_delay_ms,
            max_delay_ms=self._max_delay_ms,
            rng=self._rng,
        )
        if delay > 0:
            await self._sleep(delay)

    async def request(
        self,
        method: str,
        url: str,
        *,
        breaker_key: str,
        headers: Optional[Mapping[str, str]] = None,
        json: Any = None,
        params: Optional[Mapping[str, Any]] = None,
        timeout_s: Optional[float] = None,
        retries: Optional[int] = None,
    ) -> FetchResult:
        t0 = time.perf_counter()
        timeout = float(timeout_s if timeout_s is not None else self._default_timeout_s)
        max_retries = self._max_retries if retries is None else max(0, int(retries))

        def _elapsed_ms() -> int:
            return int((time.perf_counter() - t0) * 1000)

        breaker = self.breakers.get(breaker_key)
        if not breaker.allow_request():
            return FetchResult(
                success=False,
                error=f"Service temporarily unavailable (circuit breaker open for {breaker_key})",
                duration_ms=_elapsed_ms(),
                error_kind="circuit_open",
            )

        retry_count = 0
        attempt = 0
        while True:
            try:
                response = await asyncio.wait_for(
                    self._http().request(
                        method,
                        url,
                        headers=dict(headers or {}),
                        json=json,
                        params=params,
                        timeout=timeout,
                    ),
                    timeout=timeout,
                )
            except (asyncio.TimeoutError, httpx.TimeoutException):
                if attempt < max_retries:
                    logger.info("provider_http.retry", provider=breaker_key, attempt=attempt, reason="timeout")
                    await self._backoff(attempt)
                    attempt += 1
                    retry_count += 1
                    continue
                breaker.record_failure(reason="timeout")
                return FetchResult(
                    success=False,
                    error=f"{breaker_key} request timed out after {int(timeout * 1000)}ms",
                    duration_ms=_elapsed_ms(),
                    retry_count=retry_count,
                    error_kind="timeout",
                )
            except httpx.TransportError as exc:
                if attempt < max_retries:
                    logger.info("provider_http.retry", provider=breaker_key, attempt=attempt, reason="network")
                    await self._backoff(attempt)
                    attempt += 1
                    retry_count += 1
                    continue
                breaker.record_failure(reason="network")
                return FetchResult(
                    success=False,
                    error=f"{breaker_key} error: {str(exc)[:500] or exc.__class__.__name__}",
                    duration_ms=_elapsed_ms(),
                    retry_count=retry_count,
                    error_kind="network",
                )
            except httpx.HTTPError as exc:
                breaker.record_failure(reason="request_error")
                return FetchResult(
                    success=False,
                    error=f"{breaker_key} error: {str(exc)[:500] or exc.__class__.__name__}",
                    duration_ms=_elapsed_ms(),
                    retry_count=retry_count,
                    error_kind="network",
                )

            if response.is_success:
                breaker.record_success()
                try:
                    data = response.json()
                except ValueError:
                    data = None
                return FetchResult(
                    success=True,
                    data=data,
                    status_code=response.status_code,
                    duration_ms=_elapsed_ms(),
                    retry_count=retry_count,
                )

            if response.status_code in RETRYABLE_STATUSES and attempt < max_retries:
                logger.info(
                    "provider_http.retry",
                    provider=breaker_key,
                    attempt=attempt,
                    status_code=response.status_code,
                )
                await self._backoff(attempt)
                attempt += 1
                retry_count += 1
                continue

            breaker.record_failure(reason=f"http_{response.status_code}")
            return FetchResult(
                success=False,
                error=f"{breaker_key} error: {response.status_code} - {response.text[:500]}",
                status_code=response.status_code,
                duration_ms=_elapsed_ms(),
                retry_count=retry_count,
                error_kind="http",
            )
