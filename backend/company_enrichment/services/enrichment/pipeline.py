from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from company_enrichment.services.enrichment.auth import AuthGuard, resolve_workspace_id
from company_enrichment.services.enrichment.cache import EnrichmentCache
from company_enrichment.services.enrichment.limits import BalanceLimiter, RateLimiter, rate_limit_headers
from company_enrichment.services.enrichment.observability import (
    USER_MESSAGES,
    categorize_error,
    create_request_logger,
    fire_and_forget,
    format_user_error,
    generate_request_id,
    mask_domain,
    record_metrics,
    status_for_category,
)
from company_enrichment.services.enrichment.providers.base import ProviderAdapter
from company_enrichment.services.enrichment.resilient_http import CircuitBreakerRegistry
from company_enrichment.services.enrichment.stores import MetricsSink
from company_enrichment.services.enrichment.types import (
    EnrichedCompanyData,
    EnrichmentError,
    EnrichmentMetrics,
    EnrichmentOutcome,
    ErrorCategory,
    NormalizedTarget,
    Principal,
    ProviderId,
    RateLimitResult,
    RawProviderResult,
    now_iso,
)
from company_enrichment.services.enrichment.url_validation import (
    MAX_URL_LENGTH,
    MAX_URLS_PER_REQUEST,
    validate_enrichment_url,
    validate_payload,
)
from company_enrichment.services.enrichment.validation import (
    calculate_confidence,
    is_fallback_content,
    sanitize_citation_urls,
    sanitize_enrichment,
)

NOT_CONFIGURED_MESSAGE = "Enrichment service not configured. Please contact support."


def degraded_placeholder(target: NormalizedTarget) -> EnrichedCompanyData:
    return EnrichedCompanyData(
        description=f"Visit {target.domain} for more information about {target.company_name}.",
        confidence=0.0,
        source=ProviderId.fallback.value,
        ai_generated=True,
    )


_PROVIDER_SIDE_CATEGORIES = (
    ErrorCategory.timeout_error,
    ErrorCategory.circuit_breaker,
    ErrorCategory.provider_error,
)


def category_for_failure(raw: Optional[RawProviderResult]) -> ErrorCategory:
    kind = raw.error_kind if raw is not None else None
    if kind == "circuit_open":
        return ErrorCategory.circuit_breaker
    if kind == "timeout":
        return ErrorCategory.timeout_error
    if raw is not None and kind in (None, "parse", "empty"):
        # Untyped failures are classified from the provider's error text.
        category = categorize_error(raw.error or "")
        if category in _PROVIDER_SIDE_CATEGORIES:
            return category
    return ErrorCategory.provider_error


def category_for_exception(exc: Exception) -> ErrorCategory:
    category = categorize_error(str(exc))
    # Unexpected exception text is never echoed back as a validation message.
    if category == ErrorCategory.validation_error:
        return ErrorCategory.internal_error
    return category


def _validation_error(message: str) -> EnrichmentError:
    return EnrichmentError(message, category=ErrorCategory.validation_error, status_code=400)


@dataclass
class _RunContext:
    request_id: str
    started: float
    workspace_id: Optional[str] = None
    user_id: Optional[str] = None
    domain: Optional[str] = None
    provider: Optional[str] = None
    cached: bool = False
    retry_count: int = 0
    confidence: Optional[float] = None
    fields_enriched: List[str] = field(default_factory=list)
    is_fallback: bool = False
    degraded: bool = False

    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self.started) * 1000)


class EnrichmentPipeline:
    """Request-scoped enrichment flow.

    validate URL -> authenticate -> rate/balance -> cache -> provider(s) ->
    sanitize -> cache write -> bill, with a metrics record emitted for every
    outcome. Each stage short-circuits with an :class:`EnrichmentError`.
    """

    def __init__(
        self,
        *,
        auth: AuthGuard,
        rate_limiter: RateLimiter,
        balance: BalanceLimiter,
        cache: EnrichmentCache,
        providers: Sequence[ProviderAdapter],
        breakers: Optional[CircuitBreakerRegistry] = None,
        metrics_sink: Optional[MetricsSink] = None,
        production: bool = False,
        max_url_length: int = MAX_URL_LENGTH,
        max_urls_per_request: int = MAX_URLS_PER_REQUEST,
    ) -> None:
        self._auth = auth
        self._rate_limiter = rate_limiter
        self._balance = balance
        self._cache = cache
        self._providers: Dict[ProviderId, ProviderAdapter] = {p.provider_id: p for p in providers}
        self._breakers = breakers
        self._metrics_sink = metrics_sink
        self._production = production
        self._max_url_length = max_url_length
        self._max_urls = max_urls_per_request

    def _provider(self, provider_id: ProviderId) -> Optional[ProviderAdapter]:
        adapter = self._providers.get(provider_id)
        if adapter is None or not adapter.is_configured():
            return None
        return adapter

    def _routes_for(self, preference: Optional[str]) -> Tuple[List[ProviderAdapter], bool]:
        """Adapters to try in order, and whether the caller pinned one."""
        if preference == "primary":
            order, pinned = [ProviderId.groq_compound], True
        elif preference == "fallback":
            order, pinned = [ProviderId.youcom], True
        else:
            order, pinned = [ProviderId.groq_compound, ProviderId.youcom], False
        routes = [adapter for adapter in (self._provider(pid) for pid in order) if adapter is not None]
        return routes, pinned

    def circuit_breaker_status(self) -> Dict[str, Dict[str, Any]]:
        return self._breakers.snapshot() if self._breakers is not None else {}

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def enrich(
        self,
        body: Any,
        *,
        authorization: Optional[str],
        header_workspace_id: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> EnrichmentOutcome:
        ctx = _RunContext(request_id=request_id or generate_request_id(), started=time.perf_counter())
        log = create_request_logger(ctx.request_id)
        try:
            outcome = await self._run(ctx, log, body, authorization, header_workspace_id)
        except EnrichmentError as exc:
            log.info("enrichment.rejected", category=exc.category.value, status_code=exc.status_code)
            self._emit_metrics(ctx, log, success=False, error_type=exc.category.value)
            raise
        except Exception as exc:
            category = category_for_exception(exc)
            log.error(
                "enrichment.unexpected_error",
                error=str(exc)[:500],
                error_class=exc.__class__.__name__,
                category=category.value,
            )
            self._emit_metrics(ctx, log, success=False, error_type=category.value)
            raise EnrichmentError(
                format_user_error(str(exc), category),
                category=category,
                status_code=status_for_category(category),
            ) from exc

        self._emit_metrics(ctx, log, success=outcome.success, error_type=None)
        return outcome

    async def invalidate(
        self,
        domain: str,
        *,
        authorization: Optional[str],
        workspace_id: Optional[str],
    ) -> bool:
        """Manual refresh: drop the caller's cached entry for ``domain``."""
        check = validate_enrichment_url(domain, self._max_url_length)
        if not check.is_valid:
            raise _validation_error(check.error or "Invalid URL format")
        principal = await self._auth.authenticate(authorization, workspace_id)
        return await self._cache.invalidate(check.target.domain, principal.workspace_id)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _validate_targets(self, body: Any) -> Tuple[NormalizedTarget, List[str]]:
        payload = validate_payload(body, self._max_urls)
        if not payload.is_valid:
            raise _validation_error(payload.error or "Invalid request body")

        targets: List[NormalizedTarget] = []
        for url in body["urls"]:
            check = validate_enrichment_url(url, self._max_url_length)
            if not check.is_valid:
                raise _validation_error(check.error or "Invalid URL format")
            targets.append(check.target)
        primary = targets[0]
        hints = [t.domain for t in targets[1:] if t.domain != primary.domain]
        return primary, hints

    async def _check_limits(self, principal: Principal, log: Any) -> Optional[RateLimitResult]:
        if principal.is_admin:
            log.debug("enrichment.limits_skipped_for_admin")
            return None

        rate = await self._rate_limiter.check(principal.workspace_id)
        if not rate.allowed:
            log.warning("enrichment.rate_limited", current_count=rate.current_count, limit=rate.limit)
            raise EnrichmentError(
                USER_MESSAGES[ErrorCategory.rate_limit],
                category=ErrorCategory.rate_limit,
                status_code=429,
                details={"resetAt": rate.reset_at.isoformat()},
                headers=rate_limit_headers(rate, include_retry=True),
            )

        balance = await self._balance.check(principal.workspace_id)
        if not balance.has_balance:
            log.warning("enrichment.insufficient_balance", balance_cents=balance.current_balance_cents)
            raise EnrichmentError(
                USER_MESSAGES[ErrorCategory.balance_error],
                category=ErrorCategory.balance_error,
                status_code=402,
                details={
                    "currentBalanceCents": balance.current_balance_cents,
                    "costPerCallCents": balance.cost_per_call_cents,
                },
            )
        return rate

    async def _run(
        self,
        ctx: _RunContext,
        log: Any,
        body: Any,
        authorization: Optional[str],
        header_workspace_id: Optional[str],
    ) -> EnrichmentOutcome:
        target, hints = self._validate_targets(body)
        ctx.domain = target.domain

        workspace_id = resolve_workspace_id(body.get("workspaceId"), header_workspace_id)
        principal = await self._auth.authenticate(authorization, workspace_id)
        ctx.workspace_id, ctx.user_id = principal.workspace_id, principal.user_id
        log = log.bind(workspace_id=principal.workspace_id, user_id=principal.user_id)
        log.info("enrichment.request_received", url_count=len(body["urls"]), domain=target.domain)

        rate = await self._check_limits(principal, log)

        if body.get("useCache") is not False:
            hit = await self._cache.read(target.domain, principal.workspace_id)
            if hit.found and hit.entry is not None:
                data = EnrichedCompanyData.from_dict(hit.entry.enrichment_data)
                confidence = data.confidence if data.confidence is not None else calculate_confidence(data)
                ctx.provider, ctx.cached, ctx.confidence = hit.entry.provider, True, confidence
                ctx.fields_enriched = data.present_fields()
                log.info("enrichment.cache_hit", remaining_ttl_ms=hit.remaining_ttl_ms)
                return EnrichmentOutcome(
                    enrichment=data,
                    provider=hit.entry.provider,
                    cached=True,
                    duration_ms=ctx.elapsed_ms(),
                    confidence=confidence,
                    is_fallback=False,
                    degraded=False,
                    request_id=ctx.request_id,
                    rate_limit=rate,
                )

        routes, pinned = self._routes_for(body.get("provider"))
        if not routes:
            log.error("enrichment.no_provider_configured", preference=body.get("provider"))
            raise EnrichmentError(
                NOT_CONFIGURED_MESSAGE,
                category=ErrorCategory.provider_error,
                status_code=503,
            )

        warnings: List[str] = []
        chosen: Optional[ProviderAdapter] = None
        candidate: Dict[str, Any] = {}
        validated = None
        last_failure: Optional[RawProviderResult] = None

        for adapter in routes:
            log.info("enrichment.provider_attempt", provider=adapter.provider_id.value)
            raw = await adapter.call(target, hints)
            ctx.retry_count += raw.retry_count
            if not raw.success:
                last_failure = raw
                category = category_for_failure(raw)
                warnings.append(f"{adapter.provider_id.value} unavailable ({category.value})")
                log.warning(
                    "enrichment.provider_failed",
                    provider=adapter.provider_id.value,
                    error_kind=raw.error_kind,
                    status_code=raw.status_code,
                    retry_count=raw.retry_count,
                    error=str(raw.error or "")[:300],
                )
                continue

            candidate = adapter.parse(raw)
            outcome = sanitize_enrichment(candidate)
            if not outcome.is_valid:
                last_failure = raw
                warnings.append(f"{adapter.provider_id.value} returned no usable fields")
                log.warning("enrichment.provider_empty", provider=adapter.provider_id.value, fields_dropped=outcome.fields_dropped)
                continue

            chosen, validated = adapter, outcome
            warnings.extend(outcome.warnings)
            break

        if chosen is None or validated is None:
            category = category_for_failure(last_failure)
            if pinned:
                raise EnrichmentError(
                    format_user_error("", category),
                    category=category,
                    status_code=status_for_category(category),
                    details={"provider": routes[0].provider_id.value},
                )
            log.warning("enrichment.degraded", category=category.value)
            data = degraded_placeholder(target)
            warnings.append("Could not retrieve company information from any source")
            ctx.provider, ctx.is_fallback, ctx.degraded = ProviderId.fallback.value, True, True
            ctx.confidence = data.confidence
            ctx.fields_enriched = data.present_fields()
            return EnrichmentOutcome(
                enrichment=data,
                provider=ProviderId.fallback.value,
                cached=False,
                duration_ms=ctx.elapsed_ms(),
                confidence=data.confidence,
                is_fallback=True,
                degraded=True,
                request_id=ctx.request_id,
                warnings=warnings,
                rate_limit=rate,
            )

        data = validated.data
        data.citation_urls = sanitize_citation_urls(candidate.get("citationUrls") or [])
        data.confidence = calculate_confidence(data)
        data.source = chosen.provider_id.value
        data.ai_generated = True
        is_fallback = is_fallback_content(data, target.domain)

        ctx.provider, ctx.is_fallback = chosen.provider_id.value, is_fallback
        ctx.confidence, ctx.fields_enriched = data.confidence, data.present_fields()

        if not is_fallback:
            await self._cache.write(target.domain, principal.workspace_id, data, chosen.provider_id.value)
            if not principal.is_admin:
                await self._balance.deduct(
                    principal.workspace_id,
                    principal.user_id,
                    f"Company enrichment: {target.domain}",
                )

        log.info(
            "enrichment.completed",
            provider=chosen.provider_id.value,
            confidence=data.confidence,
            is_fallback=is_fallback,
            fields_dropped=validated.fields_dropped,
        )
        return EnrichmentOutcome(
            enrichment=data,
            provider=chosen.provider_id.value,
            cached=False,
            duration_ms=ctx.elapsed_ms(),
            confidence=data.confidence,
            is_fallback=is_fallback,
            degraded=False,
            request_id=ctx.request_id,
            warnings=warnings,
            rate_limit=rate,
        )

    def _emit_metrics(self, ctx: _RunContext, log: Any, *, success: bool, error_type: Optional[str]) -> None:
        domain = ctx.domain
        if domain and self._production:
            domain = mask_domain(domain)
        metrics = EnrichmentMetrics(
            request_id=ctx.request_id,
            workspace_id=ctx.workspace_id,
            timestamp=now_iso(),
            duration_ms=ctx.elapsed_ms(),
            success=success,
            cached=ctx.cached,
            provider=ctx.provider,
            error_type=error_type,
            retry_count=ctx.retry_count,
            confidence_score=ctx.confidence,
            fields_enriched=list(ctx.fields_enriched),
            user_id=ctx.user_id,
            domain=domain,
            is_fallback=ctx.is_fallback,
            degraded=ctx.degraded,
        )
        fire_and_forget(
            record_metrics(metrics, self._metrics_sink, log),
            logger=log,
            event="enrichment.metrics_failed",
        )
