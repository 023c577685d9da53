"""Production assembly of the enrichment pipeline from settings."""
from __future__ import annotations

from functools import lru_cache
from typing import Optional

from company_enrichment.config import Settings, get_settings
from company_enrichment.models.base import async_session_maker
from company_enrichment.services.enrichment.auth import AuthGuard, HttpIdentityVerifier
from company_enrichment.services.enrichment.cache import EnrichmentCache
from company_enrichment.services.enrichment.limits import BalanceLimiter, RateLimiter, coerce_policy
from company_enrichment.services.enrichment.pipeline import EnrichmentPipeline
from company_enrichment.services.enrichment.providers.compound import GroqCompoundProvider
from company_enrichment.services.enrichment.providers.extraction import GroqExtractor
from company_enrichment.services.enrichment.providers.search import YoucomSearchProvider
from company_enrichment.services.enrichment.resilient_http import CircuitBreakerRegistry, ResilientHttpClient
from company_enrichment.services.enrichment.stores import (
    InMemoryRateLimitStore,
    RateLimitStore,
    RedisRateLimitStore,
    SqlBalanceStore,
    SqlCacheStore,
    SqlMembershipStore,
    SqlMetricsSink,
)


def build_rate_limit_store(settings: Settings) -> RateLimitStore:
    if str(settings.rate_limit_backend or "").strip().lower() == "memory":
        return InMemoryRateLimitStore()
    return RedisRateLimitStore(settings.redis_url)


def build_http_client(settings: Settings, breakers: Optional[CircuitBreakerRegistry] = None) -> ResilientHttpClient:
    return ResilientHttpClient(
        breakers=breakers
        or CircuitBreakerRegistry(
            failure_threshold=settings.circuit_failure_threshold,
            reset_timeout_s=settings.circuit_reset_timeout_seconds,
        ),
        default_timeout_s=settings.http_default_timeout_seconds,
        max_retries=settings.http_max_retries,
        base_delay_ms=settings.http_base_retry_delay_ms,
        max_delay_ms=settings.http_max_retry_delay_ms,
    )


def build_pipeline(settings: Optional[Settings] = None) -> EnrichmentPipeline:
    settings = settings or get_settings()

    http = build_http_client(settings)
    extractor = GroqExtractor(
        http,
        api_key=settings.groq_api_key,
        api_url=settings.groq_api_url,
        model=settings.groq_extraction_model,
        timeout_s=settings.groq_timeout_seconds,
        retries=settings.groq_max_retries,
    )
    providers = [
        GroqCompoundProvider(
            http,
            extractor,
            api_key=settings.groq_api_key,
            api_url=settings.groq_api_url,
            model=settings.groq_compound_model,
            timeout_s=settings.groq_timeout_seconds,
            retries=settings.groq_max_retries,
        ),
        YoucomSearchProvider(
            http,
            extractor,
            api_key=settings.youcom_api_key.strip(),
            search_url=settings.youcom_search_url,
            timeout_s=settings.youcom_timeout_seconds,
            retries=settings.youcom_max_retries,
            num_web_results=settings.youcom_num_web_results,
        ),
    ]

    return EnrichmentPipeline(
        auth=AuthGuard(
            HttpIdentityVerifier(
                auth_url=settings.auth_url,
                anon_key=settings.auth_anon_key,
                timeout_seconds=settings.auth_timeout_seconds,
            ),
            SqlMembershipStore(async_session_maker),
        ),
        rate_limiter=RateLimiter(
            build_rate_limit_store(settings),
            window_seconds=settings.rate_limit_window_seconds,
            max_requests=settings.rate_limit_max_requests,
            failure_policy=coerce_policy(settings.rate_limit_failure_policy),
        ),
        balance=BalanceLimiter(
            SqlBalanceStore(async_session_maker),
            cost_cents=settings.enrichment_cost_cents,
            failure_policy=coerce_policy(settings.balance_failure_policy),
        ),
        cache=EnrichmentCache(
            SqlCacheStore(async_session_maker),
            ttl_seconds=settings.cache_ttl_seconds,
            max_entries=settings.cache_max_entries_per_workspace,
            eviction_slack=settings.cache_eviction_slack,
        ),
        providers=providers,
        breakers=http.breakers,
        metrics_sink=SqlMetricsSink(async_session_maker),
        production=settings.is_production,
        max_url_length=settings.max_url_length,
        max_urls_per_request=settings.max_urls_per_request,
    )


@lru_cache
def get_pipeline() -> EnrichmentPipeline:
    """Process-lifetime pipeline; its breaker registry lives as long as the worker."""
    return build_pipeline()
