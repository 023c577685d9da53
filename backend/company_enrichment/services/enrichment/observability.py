"""Structured logging, PII scrubbing, metrics and error categorisation for enrichment."""
from __future__ import annotations

import asyncio
import logging
import random
import re
import string
import sys
import time
from dataclasses import asdict
from typing import Any, Awaitable, Dict, Mapping, MutableMapping, Optional, Set, TextIO

import structlog

from company_enrichment.services.enrichment.types import ErrorCategory, EnrichmentMetrics

SENSITIVE_FIELDS = frozenset(
    {
        "url",
        "urls",
        "origin",
        "domain",
        "companyname",
        "company",
        "description",
        "keypeople",
        "email",
        "linkedin",
        "twitter",
        "github",
        "apikey",
        "token",
        "accesstoken",
        "authorization",
        "password",
    }
)

_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
_BASE36 = string.digits + string.ascii_lowercase

USER_MESSAGES: Dict[ErrorCategory, str] = {
    ErrorCategory.auth_error: "Authentication required. Please sign in and try again.",
    ErrorCategory.rate_limit: "Too many requests. Please wait a moment before trying again.",
    ErrorCategory.balance_error: "Insufficient API balance. Please top up your account.",
    ErrorCategory.timeout_error: "The enrichment service is temporarily slow. Please try again.",
    ErrorCategory.circuit_breaker: "Enrichment service is temporarily unavailable. Please try again later.",
    ErrorCategory.provider_error: "Unable to fetch company information. Please try again later.",
    ErrorCategory.cache_error: "An unexpected error occurred. Please try again.",
    ErrorCategory.internal_error: "An unexpected error occurred. Please try again.",
}

FORBIDDEN_MESSAGE = "Access denied. You are not a member of this workspace."

STATUS_BY_CATEGORY: Dict[ErrorCategory, int] = {
    ErrorCategory.auth_error: 401,
    ErrorCategory.rate_limit: 429,
    ErrorCategory.balance_error: 402,
    ErrorCategory.validation_error: 400,
    ErrorCategory.provider_error: 502,
    ErrorCategory.timeout_error: 504,
    ErrorCategory.circuit_breaker: 503,
    ErrorCategory.cache_error: 500,
    ErrorCategory.internal_error: 500,
}

_BACKGROUND_TASKS: Set[asyncio.Task] = set()


# ============================================================================
# Request IDs
# ============================================================================

def _to_base36(value: int) -> str:
    if value <= 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_request_id() -> str:
    """``enr-<ms timestamp base36>-<6 random chars>``; for tracing, not secrecy."""
    timestamp = _to_base36(int(time.time() * 1000))
    suffix = "".join(random.choices(_BASE36, k=6))
    return f"enr-{timestamp}-{suffix}"


# ============================================================================
# PII scrubbing
# ============================================================================

def _normalize_key(key: Any) -> str:
    return str(key).lower().replace("_", "").replace("-", "")


def mask_id(value: str) -> str:
    if len(value) < 8:
        return value
    return f"***{value[-4:]}"


def mask_domain(domain: str) -> str:
    parts = str(domain or "").split(".")
    if len(parts) >= 2:
        return "***." + ".".join(parts[-2:])
    return "***"


class PiiScrubber:
    """structlog processor replacing sensitive values in production mode.

    Keys in ``SENSITIVE_FIELDS`` (compared case- and separator-insensitively)
    are replaced by a placeholder carrying only the value's length; UUID
    strings anywhere in the event are cut to their last four characters.
    Nested mappings and sequences are walked recursively.
    """

    def __init__(self, enabled: bool = True, sensitive_fields: frozenset = SENSITIVE_FIELDS) -> None:
        self.enabled = enabled
        self.sensitive_fields = sensitive_fields

    def __call__(
        self,
        _: Any,
        __: str,
        event_dict: MutableMapping[str, Any],
    ) -> MutableMapping[str, Any]:
        if not self.enabled:
            return event_dict
        for key, value in list(event_dict.items()):
            if key == "event":
                continue
            event_dict[key] = self._scrub_value(key, value)
        return event_dict

    def scrub(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        if not self.enabled:
            return dict(data)
        return {key: self._scrub_value(key, value) for key, value in data.items()}

    def _scrub_value(self, key: Any, value: Any) -> Any:
        if key is not None and _normalize_key(key) in self.sensitive_fields:
            return self._placeholder(value)
        if isinstance(value, Mapping):
            return {k: self._scrub_value(k, v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._scrub_value(None, item) for item in value]
        if isinstance(value, str) and _UUID_RE.match(value):
            return mask_id(value)
        return value

    @staticmethod
    def _placeholder(value: Any) -> str:
        if isinstance(value, str):
            return f"[SCRUBBED:{len(value)}chars]"
        if isinstance(value, (list, tuple, set)):
            return f"[SCRUBBED:{len(value)}items]"
        return "[SCRUBBED]"


# ============================================================================
# Logging configuration
# ============================================================================

_CONFIGURED = False


def _service_processor_factory(service_name: str, environment: str):
    def _processor(_: Any, __: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
        event_dict.setdefault("service", service_name)
        event_dict.setdefault("environment", environment)
        return event_dict

    return _processor


def configure_logging(
    *,
    production: bool,
    service_name: str = "fetch-company-content",
    level: str = "INFO",
    stream: Optional[TextIO] = None,
) -> None:
    """Configure structlog once for JSON output; scrubbing follows ``production``."""
    global _CONFIGURED

    level_value = getattr(logging, str(level or "INFO").upper(), logging.INFO)
    if production and level_value < logging.INFO:
        level_value = logging.INFO  # debug events never reach production sinks

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", key="timestamp"),
            _service_processor_factory(service_name, "production" if production else "development"),
            PiiScrubber(enabled=production),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level_value),
        logger_factory=structlog.PrintLoggerFactory(stream or sys.stdout),
        cache_logger_on_first_use=False,
    )
    _CONFIGURED = True


def get_logger(name: Optional[str] = None, **initial: Any) -> Any:
    logger = structlog.get_logger(name) if name else structlog.get_logger()
    return logger.bind(**initial) if initial else logger


def create_request_logger(request_id: str, workspace_id: Optional[str] = None, user_id: Optional[str] = None) -> Any:
    context: Dict[str, Any] = {"request_id": request_id}
    if workspace_id:
        context["workspace_id"] = workspace_id
    if user_id:
        context["user_id"] = user_id
    return get_logger("company_enrichment.enrichment", **context)


# ============================================================================
# Error categorisation
# ============================================================================

def categorize_error(error: str) -> ErrorCategory:
    """Classify free-form error text; the first matching bucket wins."""
    text = str(error or "").lower()

    if "auth" in text or "session" in text or "unauthorized" in text:
        return ErrorCategory.auth_error
    if "rate limit" in text or "too many requests" in text or "429" in text:
        return ErrorCategory.rate_limit
    if "balance" in text or "insufficient" in text or "payment" in text:
        return ErrorCategory.balance_error
    if "invalid" in text or "validation" in text or "required" in text:
        return ErrorCategory.validation_error
    if "timeout" in text or "timed out" in text:
        return ErrorCategory.timeout_error
    if "circuit" in text or "breaker" in text:
        return ErrorCategory.circuit_breaker
    if "groq" in text or "youcom" in text or "provider" in text:
        return ErrorCategory.provider_error
    if "cache" in text:
        return ErrorCategory.cache_error
    return ErrorCategory.internal_error


def format_user_error(error: str, category: ErrorCategory, status_code: Optional[int] = None) -> str:
    """User-safe message for a category. Validation text is user-facing as-is."""
    if category == ErrorCategory.validation_error:
        return error
    if category == ErrorCategory.auth_error and status_code == 403:
        return FORBIDDEN_MESSAGE
    return USER_MESSAGES.get(category, USER_MESSAGES[ErrorCategory.internal_error])


def status_for_category(category: ErrorCategory) -> int:
    return STATUS_BY_CATEGORY.get(category, 500)


# ============================================================================
# Background side effects + metrics
# ============================================================================

def fire_and_forget(coro: Awaitable[Any], *, logger: Any = None, event: str = "background_task.failed") -> asyncio.Task:
    """Schedule ``coro`` without awaiting it; failures are logged, never raised."""
    task = asyncio.ensure_future(coro)
    _BACKGROUND_TASKS.add(task)
    log = logger or get_logger(__name__)

    def _done(finished: asyncio.Task) -> None:
        _BACKGROUND_TASKS.discard(finished)
        if finished.cancelled():
            return
        exc = finished.exception()
        if exc is not None:
            log.warning(event, error=str(exc)[:500], error_class=exc.__class__.__name__)

    task.add_done_callback(_done)
    return task


async def drain_background_tasks(timeout: Optional[float] = None) -> None:
    """Wait for outstanding fire-and-forget work (shutdown hooks, tests)."""
    loop = asyncio.get_running_loop()
    pending = [task for task in _BACKGROUND_TASKS if not task.done() and task.get_loop() is loop]
    if not pending:
        return
    await asyncio.wait(pending, timeout=timeout)


async def record_metrics(metrics: EnrichmentMetrics, sink: Any = None, logger: Any = None) -> None:
    """Emit the metrics record as a log event and insert it into ``sink``."""
    log = logger or get_logger(__name__)
    payload = asdict(metrics)
    log.info("enrichment.metrics", **payload)
    if sink is None:
        return
    try:
        await sink.insert(metrics)
    except Exception as exc:
        log.warning("enrichment.metrics_write_failed", error=str(exc)[:500])
