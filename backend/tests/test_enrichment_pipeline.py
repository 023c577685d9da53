import pytest

from company_enrichment.services.enrichment.auth import AuthGuard, StaticIdentityVerifier
from company_enrichment.services.enrichment.cache import EnrichmentCache
from company_enrichment.services.enrichment.limits import BalanceLimiter, RateLimiter
from company_enrichment.services.enrichment.observability import drain_background_tasks
from company_enrichment.services.enrichment.pipeline import NOT_CONFIGURED_MESSAGE, EnrichmentPipeline
from company_enrichment.services.enrichment.resilient_http import CircuitBreakerRegistry
from company_enrichment.services.enrichment.stores import (
    InMemoryBalanceStore,
    InMemoryCacheStore,
    InMemoryMembershipStore,
    InMemoryMetricsSink,
    InMemoryRateLimitStore,
)
from company_enrichment.services.enrichment.types import (
    EnrichmentError,
    ErrorCategory,
    ProviderId,
    RawProviderResult,
)

WS = "3f0c2a9e-7f64-4c1b-9a47-2d8f3b1e6c55"
AUTH = "Bearer member-token"

STRIPE_PAYLOAD = {
    "description": "Stripe builds payments infrastructure for the internet.",
    "industry": "Fintech",
    "location": "San Francisco, CA",
    "foundedYear": "2010",
    "socialLinks": {"linkedin": "https://www.linkedin.com/company/stripe"},
    "citationUrls": ["https://stripe.com/about"],
}


class _FakeProvider:
    def __init__(self, provider_id, payload=None, *, error_kind=None, configured=True, explode=False):
        self.provider_id = provider_id
        self.breaker_key = provider_id.value
        self.payload = payload or {}
        self.error_kind = error_kind
        self.configured = configured
        self.explode = explode
        self.calls = []

    def is_configured(self):
        return self.configured

    async def call(self, target, hints=()):
        self.calls.append((target.domain, tuple(hints)))
        if isinstance(self.explode, Exception):
            raise self.explode
        if self.explode:
            raise KeyError("choices")
        if self.error_kind:
            return RawProviderResult(
                provider=self.provider_id.value,
                success=False,
                error=f"{self.provider_id.value} failed",
                error_kind=self.error_kind,
                retry_count=1,
            )
        return RawProviderResult(provider=self.provider_id.value, success=True, payload=dict(self.payload))

    def parse(self, raw):
        return dict(raw.payload)


class _Harness:
    def __init__(self, *providers, balance=100, admin=False, rate_max=30, production=False):
        self.memberships = InMemoryMembershipStore()
        self.memberships.add_member(WS, "user-1")
        if admin:
            self.memberships.set_admin("user-1")
        self.balances = InMemoryBalanceStore({WS: balance})
        self.cache_store = InMemoryCacheStore()
        self.sink = InMemoryMetricsSink()
        self.pipeline = EnrichmentPipeline(
            auth=AuthGuard(StaticIdentityVerifier({"member-token": "user-1"}), self.memberships),
            rate_limiter=RateLimiter(InMemoryRateLimitStore(), max_requests=rate_max),
            balance=BalanceLimiter(self.balances, cost_cents=1),
            cache=EnrichmentCache(self.cache_store),
            providers=list(providers),
            breakers=CircuitBreakerRegistry(),
            metrics_sink=self.sink,
            production=production,
        )

    async def enrich(self, body, authorization=AUTH):
        body = {"workspaceId": WS, **body}
        return await self.pipeline.enrich(body, authorization=authorization, request_id="enr-test-000001")

    async def error(self, body, authorization=AUTH):
        with pytest.raises(EnrichmentError) as info:
            await self.enrich(body, authorization)
        await drain_background_tasks()
        return info.value


def _primary(**kwargs):
    return _FakeProvider(ProviderId.groq_compound, STRIPE_PAYLOAD, **kwargs)


def _fallback(**kwargs):
    payload = {"description": "Stripe is an online payments company.", "industry": "Fintech"}
    return _FakeProvider(ProviderId.youcom, payload, **kwargs)


async def test_primary_success_is_cached_billed_and_recorded():
    primary, fallback = _primary(), _fallback()
    harness = _Harness(primary, fallback)

    outcome = await harness.enrich({"urls": ["https://www.stripe.com/pricing"]})
    await drain_background_tasks()

    assert outcome.success
    assert outcome.provider == "groq-compound"
    assert not outcome.cached
    assert outcome.enrichment.industry == "Fintech"
    assert outcome.enrichment.source == "groq-compound"
    assert outcome.enrichment.citation_urls == ["https://stripe.com/about"]
    assert outcome.confidence == 0.7
    assert fallback.calls == []

    assert await harness.balances.get_balance(WS) == 99
    assert harness.balances.transactions[0]["description"] == "Company enrichment: stripe.com"
    assert (await harness.cache_store.get("stripe.com", WS)).provider == "groq-compound"

    [metrics] = harness.sink.records
    assert metrics.success and not metrics.cached
    assert metrics.provider == "groq-compound"
    assert metrics.domain == "stripe.com"
    assert metrics.request_id == "enr-test-000001"
    assert "industry" in metrics.fields_enriched


async def test_second_request_is_served_from_cache_without_billing():
    primary = _primary()
    harness = _Harness(primary, _fallback())
    await harness.enrich({"urls": ["stripe.com"]})
    outcome = await harness.enrich({"urls": ["STRIPE.com"]})
    await drain_background_tasks()

    assert outcome.cached
    assert outcome.provider == "groq-compound"
    assert outcome.enrichment.industry == "Fintech"
    assert outcome.confidence == 0.7
    assert len(primary.calls) == 1
    assert await harness.balances.get_balance(WS) == 99
    assert (await harness.cache_store.get("stripe.com", WS)).hit_count == 1

    # useCache=false bypasses the read.
    await harness.enrich({"urls": ["stripe.com"], "useCache": False})
    assert len(primary.calls) == 2


async def test_primary_failure_falls_back_to_secondary():
    primary, fallback = _primary(error_kind="circuit_open"), _fallback()
    harness = _Harness(primary, fallback)

    outcome = await harness.enrich({"urls": ["stripe.com", "stripe.dev"]})
    await drain_background_tasks()

    assert outcome.success
    assert outcome.provider == "youcom"
    assert "groq-compound unavailable (circuit_breaker)" in outcome.warnings
    assert fallback.calls == [("stripe.com", ("stripe.dev",))]
    assert harness.sink.records[0].retry_count == 1


async def test_unusable_primary_output_moves_on_to_secondary():
    primary = _FakeProvider(ProviderId.groq_compound, {"description": 12, "industry": ["x"]})
    harness = _Harness(primary, _fallback())
    outcome = await harness.enrich({"urls": ["stripe.com"]})
    await drain_background_tasks()
    assert outcome.provider == "youcom"
    assert "groq-compound returned no usable fields" in outcome.warnings


async def test_all_providers_failing_returns_degraded_placeholder():
    harness = _Harness(_primary(error_kind="timeout"), _fallback(error_kind="http"))
    outcome = await harness.enrich({"urls": ["stripe.com"]})
    await drain_background_tasks()

    assert not outcome.success
    assert outcome.degraded and outcome.is_fallback
    assert outcome.provider == "fallback"
    assert outcome.confidence == 0.0
    assert outcome.enrichment.description == "Visit stripe.com for more information about Stripe."
    assert await harness.balances.get_balance(WS) == 100
    assert await harness.cache_store.get("stripe.com", WS) is None
    assert harness.sink.records[0].degraded


@pytest.mark.parametrize(
    "error_kind,status,category",
    [
        ("circuit_open", 503, ErrorCategory.circuit_breaker),
        ("timeout", 504, ErrorCategory.timeout_error),
        ("http", 502, ErrorCategory.provider_error),
        ("parse", 502, ErrorCategory.provider_error),
    ],
)
async def test_pinned_provider_failure_maps_to_status(error_kind, status, category):
    fallback = _fallback()
    harness = _Harness(_primary(error_kind=error_kind), fallback)
    err = await harness.error({"urls": ["stripe.com"], "provider": "primary"})
    assert err.status_code == status
    assert err.category == category
    assert err.details == {"provider": "groq-compound"}
    assert fallback.calls == []


async def test_pinned_fallback_skips_primary():
    primary, fallback = _primary(), _fallback()
    harness = _Harness(primary, fallback)
    outcome = await harness.enrich({"urls": ["stripe.com"], "provider": "fallback"})
    await drain_background_tasks()
    assert outcome.provider == "youcom"
    assert primary.calls == []


async def test_no_configured_provider_is_service_unavailable():
    harness = _Harness(_primary(configured=False), _fallback(configured=False))
    err = await harness.error({"urls": ["stripe.com"]})
    assert err.status_code == 503
    assert str(err) == NOT_CONFIGURED_MESSAGE


async def test_placeholder_content_from_provider_is_neither_cached_nor_billed():
    primary = _FakeProvider(
        ProviderId.groq_compound,
        {"description": "Visit stripe.com for more information about Stripe.", "industry": "Fintech"},
    )
    harness = _Harness(primary, _fallback())
    outcome = await harness.enrich({"urls": ["stripe.com"]})
    await drain_background_tasks()

    assert outcome.is_fallback
    assert not outcome.degraded
    assert await harness.balances.get_balance(WS) == 100
    assert await harness.cache_store.get("stripe.com", WS) is None


async def test_rate_limit_rejects_with_headers_before_providers():
    primary = _primary()
    harness = _Harness(primary, _fallback(), rate_max=1)
    await harness.enrich({"urls": ["stripe.com"], "useCache": False})
    err = await harness.error({"urls": ["stripe.com"], "useCache": False})

    assert err.status_code == 429
    assert err.category == ErrorCategory.rate_limit
    assert err.headers["X-RateLimit-Limit"] == "1"
    assert err.headers["X-RateLimit-Remaining"] == "0"
    assert int(err.headers["Retry-After"]) >= 1
    assert "resetAt" in err.details
    assert len(primary.calls) == 1


async def test_empty_balance_is_payment_required():
    primary = _primary()
    harness = _Harness(primary, _fallback(), balance=0)
    err = await harness.error({"urls": ["stripe.com"]})
    assert err.status_code == 402
    assert err.details == {"currentBalanceCents": 0, "costPerCallCents": 1}
    assert primary.calls == []


async def test_admin_bypasses_limits_and_billing():
    harness = _Harness(_primary(), _fallback(), balance=0, admin=True, rate_max=1)
    for _ in range(3):
        outcome = await harness.enrich({"urls": ["stripe.com"], "useCache": False})
        assert outcome.success
        assert outcome.rate_limit is None
    await drain_background_tasks()
    assert harness.balances.transactions == []


async def test_invalid_url_is_rejected_before_authentication():
    primary = _primary()
    harness = _Harness(primary, _fallback())
    err = await harness.error({"urls": ["http://169.254.169.254/latest"]}, authorization=None)
    assert err.status_code == 400
    assert err.category == ErrorCategory.validation_error
    assert primary.calls == []

    err = await harness.error({"urls": ["stripe.com"]}, authorization=None)
    assert err.status_code == 401
    assert harness.sink.records[-1].error_type == "auth_error"


async def test_unexpected_failure_becomes_internal_error():
    harness = _Harness(_primary(explode=True), _fallback())
    err = await harness.error({"urls": ["stripe.com"]})
    assert err.status_code == 500
    assert err.category == ErrorCategory.internal_error
    assert "choices" not in str(err)
    assert harness.sink.records[-1].error_type == "internal_error"


@pytest.mark.parametrize(
    "exc,status,category",
    [
        (RuntimeError("upstream read timed out"), 504, ErrorCategory.timeout_error),
        (RuntimeError("cache store unreachable"), 500, ErrorCategory.cache_error),
        (ValueError("invalid literal for int()"), 500, ErrorCategory.internal_error),
    ],
)
async def test_unexpected_failure_is_categorized_from_its_message(exc, status, category):
    harness = _Harness(_primary(explode=exc), _fallback())
    err = await harness.error({"urls": ["stripe.com"]})
    assert err.status_code == status
    assert err.category == category
    assert "invalid literal" not in str(err)
    assert harness.sink.records[-1].error_type == category.value


async def test_untyped_provider_failure_is_categorized_from_its_error_text():
    primary = _FakeProvider(ProviderId.groq_compound, STRIPE_PAYLOAD, error_kind="parse")
    harness = _Harness(primary, _fallback())

    async def timed_out(target, hints=()):
        primary.calls.append((target.domain, tuple(hints)))
        return RawProviderResult(
            provider="groq-compound",
            success=False,
            error="Groq request timed out after 25000ms",
            error_kind=None,
        )

    primary.call = timed_out
    err = await harness.error({"urls": ["stripe.com"], "provider": "primary"})
    assert err.status_code == 504
    assert err.category == ErrorCategory.timeout_error

    outcome = await harness.enrich({"urls": ["stripe.com"]})
    await drain_background_tasks()
    assert "groq-compound unavailable (timeout_error)" in outcome.warnings


async def test_production_metrics_mask_domain():
    harness = _Harness(_primary(), _fallback(), production=True)
    await harness.enrich({"urls": ["app.stripe.com"]})
    await drain_background_tasks()
    assert harness.sink.records[0].domain == "***.stripe.com"


async def test_invalidate_drops_the_workspace_entry():
    primary = _primary()
    harness = _Harness(primary, _fallback())
    await harness.enrich({"urls": ["stripe.com"]})
    await drain_background_tasks()

    assert await harness.pipeline.invalidate("www.stripe.com", authorization=AUTH, workspace_id=WS)
    assert not await harness.pipeline.invalidate("stripe.com", authorization=AUTH, workspace_id=WS)

    await harness.enrich({"urls": ["stripe.com"]})
    await drain_background_tasks()
    assert len(primary.calls) == 2
