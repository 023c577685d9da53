from company_enrichment.config import Settings
from company_enrichment.services.enrichment.stores import InMemoryRateLimitStore, RedisRateLimitStore
from company_enrichment.services.enrichment.types import FailurePolicy, ProviderId
from company_enrichment.services.enrichment.wiring import build_pipeline, build_rate_limit_store


def test_settings_helpers():
    settings = Settings(environment="Production", cors_allow_origins="https://app.example.com, ,http://localhost:3000")
    assert settings.is_production
    assert settings.cors_origins() == ["https://app.example.com", "http://localhost:3000"]
    assert not Settings(environment="development").is_production


def test_rate_limit_backend_selection():
    assert isinstance(build_rate_limit_store(Settings(rate_limit_backend="memory")), InMemoryRateLimitStore)
    assert isinstance(build_rate_limit_store(Settings(rate_limit_backend="redis")), RedisRateLimitStore)


def test_pipeline_routes_only_configured_providers():
    pipeline = build_pipeline(
        Settings(
            groq_api_key="",
            youcom_api_key="  ydc-key  ",
            rate_limit_backend="memory",
            rate_limit_failure_policy="closed",
        )
    )
    routes, pinned = pipeline._routes_for(None)
    assert [adapter.provider_id for adapter in routes] == [ProviderId.youcom]
    assert not pinned

    routes, pinned = pipeline._routes_for("primary")
    assert routes == [] and pinned
    assert pipeline._rate_limiter.failure_policy == FailurePolicy.CLOSED
    assert pipeline.circuit_breaker_status() == {}


def test_settings_read_from_environment(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "production")
    monkeypatch.setenv("RATE_LIMIT_MAX_REQUESTS", "5")
    settings = Settings()
    assert settings.is_production
    assert settings.rate_limit_max_requests == 5


def test_sql_stores_share_the_application_session_factory():
    from company_enrichment.models import base
    from company_enrichment.services.enrichment import wiring

    assert wiring.async_session_maker is base.async_session_maker
