from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class ProviderId(str, Enum):
    groq_compound = "groq-compound"
    youcom = "youcom"
    fallback = "fallback"


class ErrorCategory(str, Enum):
    auth_error = "auth_error"
    rate_limit = "rate_limit"
    balance_error = "balance_error"
    validation_error = "validation_error"
    provider_error = "provider_error"
    timeout_error = "timeout_error"
    circuit_breaker = "circuit_breaker"
    cache_error = "cache_error"
    internal_error = "internal_error"


class FailurePolicy(str, Enum):
    """What a limiter reports when its backing store is unreachable."""

    OPEN = "open"
    CLOSED = "closed"


@dataclass(frozen=True)
class NormalizedTarget:
    origin: str
    domain: str
    company_name: str


@dataclass
class UrlValidationResult:
    target: Optional[NormalizedTarget] = None
    error: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return self.target is not None and self.error is None


@dataclass
class PayloadValidationResult:
    is_valid: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class Principal:
    user_id: str
    workspace_id: str
    is_admin: bool = False


@dataclass
class RateLimitResult:
    allowed: bool
    current_count: int
    remaining: int
    reset_at: datetime
    limit: int
    store_error: bool = False


@dataclass
class BalanceResult:
    has_balance: bool
    current_balance_cents: int
    cost_per_call_cents: int
    store_error: bool = False


@dataclass
class DeductionResult:
    success: bool
    balance_after_cents: Optional[int] = None
    error: Optional[str] = None


@dataclass
class EnrichedCompanyData:
    """Validated company payload. Serialised with camelCase keys."""

    description: Optional[str] = None
    industry: Optional[str] = None
    location: Optional[str] = None
    product_summary: Optional[str] = None
    pricing_info: Optional[str] = None
    company_size: Optional[str] = None
    founded_year: Optional[str] = None
    key_people: List[str] = field(default_factory=list)
    tech_stack: List[str] = field(default_factory=list)
    social_links: Dict[str, str] = field(default_factory=dict)
    # Provenance
    confidence: Optional[float] = None
    source: Optional[str] = None
    ai_generated: bool = True
    citation_urls: List[str] = field(default_factory=list)

    _WIRE_NAMES = {
        "description": "description",
        "industry": "industry",
        "location": "location",
        "product_summary": "productSummary",
        "pricing_info": "pricingInfo",
        "company_size": "companySize",
        "founded_year": "foundedYear",
        "key_people": "keyPeople",
        "tech_stack": "techStack",
        "social_links": "socialLinks",
    }

    def present_fields(self) -> List[str]:
        """Wire names of the content fields that carry a value."""
        names: List[str] = []
        for attr, wire in self._WIRE_NAMES.items():
            value = getattr(self, attr)
            if value:
                names.append(wire)
        return names

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for attr, wire in self._WIRE_NAMES.items():
            value = getattr(self, attr)
            if value:
                out[wire] = dict(value) if isinstance(value, dict) else (list(value) if isinstance(value, list) else value)
        if self.confidence is not None:
            out["confidence"] = self.confidence
        if self.source:
            out["source"] = self.source
        out["aiGenerated"] = bool(self.ai_generated)
        if self.citation_urls:
            out["citationUrls"] = list(self.citation_urls)
        return out

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "EnrichedCompanyData":
        """Rehydrate a payload this class produced (e.g. a cache row)."""
        data = cls()
        for attr, wire in cls._WIRE_NAMES.items():
            if wire in payload and payload[wire] is not None:
                setattr(data, attr, payload[wire])
        confidence = payload.get("confidence")
        data.confidence = float(confidence) if isinstance(confidence, (int, float)) else None
        data.source = payload.get("source")
        data.ai_generated = bool(payload.get("aiGenerated", True))
        data.citation_urls = list(payload.get("citationUrls") or [])
        return data


@dataclass
class ValidationOutcome:
    data: EnrichedCompanyData
    warnings: List[str] = field(default_factory=list)
    fields_dropped: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return bool(self.data.present_fields())


@dataclass
class FetchResult:
    success: bool
    data: Any = None
    error: Optional[str] = None
    status_code: Optional[int] = None
    duration_ms: int = 0
    retry_count: int = 0
    # circuit_open | timeout | network | http | None
    error_kind: Optional[str] = None


@dataclass
class RawProviderResult:
    """Untrusted provider output plus call bookkeeping."""

    provider: str
    success: bool
    payload: Dict[str, Any] = field(default_factory=dict)
    citations: List[str] = field(default_factory=list)
    error: Optional[str] = None
    error_kind: Optional[str] = None
    status_code: Optional[int] = None
    retry_count: int = 0


@dataclass
class CacheEntry:
    domain: str
    workspace_id: str
    enrichment_data: Dict[str, Any]
    provider: str
    fetched_at: datetime
    expires_at: datetime
    hit_count: int = 0
    last_accessed_at: Optional[datetime] = None
    id: Optional[str] = None


@dataclass
class CacheReadResult:
    found: bool
    entry: Optional[CacheEntry] = None
    remaining_ttl_ms: int = 0


@dataclass
class EnrichmentMetrics:
    request_id: str
    workspace_id: Optional[str]
    timestamp: str
    duration_ms: int
    success: bool
    cached: bool
    provider: Optional[str]
    error_type: Optional[str]
    retry_count: int
    confidence_score: Optional[float]
    fields_enriched: List[str] = field(default_factory=list)
    user_id: Optional[str] = None
    domain: Optional[str] = None
    is_fallback: bool = False
    degraded: bool = False


@dataclass
class EnrichmentOutcome:
    enrichment: EnrichedCompanyData
    provider: str
    cached: bool
    duration_ms: int
    confidence: Optional[float]
    is_fallback: bool
    degraded: bool
    request_id: str
    warnings: List[str] = field(default_factory=list)
    rate_limit: Optional[RateLimitResult] = None

    @property
    def success(self) -> bool:
        return not self.degraded


class EnrichmentError(RuntimeError):
    """Categorised pipeline failure, rendered as the route's error envelope."""

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory,
        status_code: int,
        details: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.category = category
        self.status_code = status_code
        self.details = details or {}
        self.headers = headers or {}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_iso() -> str:
    return utcnow().isoformat()
