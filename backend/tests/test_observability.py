import asyncio
import io
import json
import re

from company_enrichment.services.enrichment.observability import (
    PiiScrubber,
    categorize_error,
    configure_logging,
    drain_background_tasks,
    fire_and_forget,
    format_user_error,
    generate_request_id,
    get_logger,
    mask_domain,
    record_metrics,
    status_for_category,
)
from company_enrichment.services.enrichment.stores import InMemoryMetricsSink
from company_enrichment.services.enrichment.types import EnrichmentMetrics, ErrorCategory

UUID = "3f0c2a9e-7f64-4c1b-9a47-2d8f3b1e6c55"


class _RecordingLogger:
    def __init__(self):
        self.events = []

    def info(self, event, **kw):
        self.events.append(("info", event, kw))

    def warning(self, event, **kw):
        self.events.append(("warning", event, kw))


def test_scrubber_replaces_sensitive_values_recursively():
    scrubber = PiiScrubber(enabled=True)
    event = scrubber(
        None,
        "info",
        {
            "event": "enrichment.start",
            "domain": "stripe.com",
            "Company_Name": "Stripe",
            "workspace_id": UUID,
            "context": {"urls": ["https://stripe.com", "https://a.b"], "api-key": "sk-123", "count": 2},
            "items": [{"email": "a@b.c"}, "plain"],
        },
    )
    assert event["event"] == "enrichment.start"
    assert event["domain"] == "[SCRUBBED:10chars]"
    assert event["Company_Name"] == "[SCRUBBED:6chars]"
    assert event["workspace_id"] == "***6c55"
    assert event["context"] == {"urls": "[SCRUBBED:2items]", "api-key": "[SCRUBBED:6chars]","count": 2}
    assert event["items"] == [{"email": "[SCRUBBED:5chars]"}, "plain"]


def test_scrubber_is_passthrough_when_disabled():
    payload = {"domain": "stripe.com", "workspace_id": UUID}
    assert PiiScrubber(enabled=False).scrub(payload) == payload


def test_configured_logger_emits_scrubbed_json():
    stream = io.StringIO()
    configure_logging(production=True, service_name="fetch-company-content", stream=stream)
    get_logger("test").info("cache.hit", domain="stripe.com", workspace_id=UUID)
    record = json.loads(stream.getvalue().strip().splitlines()[-1])
    assert record["event"] == "cache.hit"
    assert record["level"] == "info"
    assert record["service"] == "fetch-company-content"
    assert record["domain"] == "[SCRUBBED:10chars]"
    assert record["workspace_id"] == "***6c55"
    assert "timestamp" in record

    # Debug is suppressed in production even when asked for.
    stream.truncate(0)
    stream.seek(0)
    configure_logging(production=True, level="DEBUG", stream=stream)
    get_logger("test").debug("noisy")
    assert stream.getvalue() == ""
    configure_logging(production=False, stream=io.StringIO())


def test_error_categories_follow_first_match():
    assert categorize_error("Unauthorized session") == ErrorCategory.auth_error
    assert categorize_error("HTTP 429 Too Many Requests") == ErrorCategory.rate_limit
    assert categorize_error("Insufficient balance") == ErrorCategory.balance_error
    assert categorize_error("urls array is required") == ErrorCategory.validation_error
    assert categorize_error("groq request timed out after 15000ms") == ErrorCategory.timeout_error
    assert categorize_error("circuit breaker open for youcom") == ErrorCategory.circuit_breaker
    assert categorize_error("youcom error: 500") == ErrorCategory.provider_error
    assert categorize_error("cache write failed") == ErrorCategory.cache_error
    assert categorize_error("KeyError: 'x'") == ErrorCategory.internal_error


def test_user_messages_never_leak_internal_text():
    assert format_user_error("Maximum 3 URLs per request", ErrorCategory.validation_error) == "Maximum 3 URLs per request"
    leaked = format_user_error("groq error: 500 - stack trace with sk-123", ErrorCategory.provider_error)
    assert "sk-123" not in leaked
    assert leaked == "Unable to fetch company information. Please try again later."
    assert format_user_error("x", ErrorCategory.auth_error, 403).startswith("Access denied")
    assert status_for_category(ErrorCategory.circuit_breaker) == 503
    assert status_for_category(ErrorCategory.timeout_error) == 504


def test_request_id_format_and_masking():
    request_id = generate_request_id()
    assert re.match(r"^enr-[0-9a-z]+-[0-9a-z]{6}$", request_id)
    assert generate_request_id() != request_id
    assert mask_domain("app.stripe.com") == "***.stripe.com"
    assert mask_domain("localhost") == "***"


async def test_fire_and_forget_logs_failures_instead_of_raising():
    logger = _RecordingLogger()

    async def boom():
        raise ConnectionError("db down")

    async def fine():
        await asyncio.sleep(0)
        return 1

    fire_and_forget(boom(), logger=logger, event="cache.hit_record_failed")
    fire_and_forget(fine(), logger=logger)
    await drain_background_tasks()
    await asyncio.sleep(0)

    assert logger.events == [
        ("warning", "cache.hit_record_failed", {"error": "db down", "error_class": "ConnectionError"})
    ]


async def test_metrics_are_logged_and_written_to_sink():
    logger = _RecordingLogger()
    sink = InMemoryMetricsSink()
    metrics = EnrichmentMetrics(
        request_id="enr-abc-123456",
        workspace_id=UUID,
        timestamp="2026-03-01T12:00:00+00:00",
        duration_ms=120,
        success=True,
        cached=False,
        provider="youcom",
        error_type=None,
        retry_count=1,
        confidence_score=0.55,
        fields_enriched=["description", "industry"],
    )
    await record_metrics(metrics, sink, logger)
    assert sink.records == [metrics]
    assert logger.events[0][1] == "enrichment.metrics"

    class BrokenSink:
        async def insert(self, metrics):
            raise ConnectionError("db down")

    await record_metrics(metrics, BrokenSink(), logger)
    assert logger.events[-1][1] == "enrichment.metrics_write_failed"
