from __future__ import annotations

import json
import re
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence

from company_enrichment.services.enrichment.types import (
    FetchResult,
    NormalizedTarget,
    ProviderId,
    RawProviderResult,
)

_CITATION_RE = re.compile(r"https?://[^\s\)\]]+")
_FENCE_OPEN_RE = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE_RE = re.compile(r"\s*```$")

# Fields an extraction model is asked for; anything else it returns is ignored.
EXTRACTED_FIELDS = (
    "description",
    "industry",
    "location",
    "foundedYear",
    "companySize",
    "keyPeople",
    "productSummary",
    "pricingInfo",
    "techStack",
)


class ProviderAdapter(Protocol):
    """One external content provider.

    ``call`` performs the network work and returns untrusted output plus
    bookkeeping; ``parse`` is pure and maps that output onto the wire shape
    the sanitizer accepts.
    """

    provider_id: ProviderId
    breaker_key: str

    def is_configured(self) -> bool: ...

    async def call(self, target: NormalizedTarget, hints: Sequence[str] = ()) -> RawProviderResult: ...

    def parse(self, raw: RawProviderResult) -> Dict[str, Any]: ...


def failed_result(provider: ProviderId, fetch: FetchResult) -> RawProviderResult:
    return RawProviderResult(
        provider=provider.value,
        success=False,
        error=fetch.error,
        error_kind=fetch.error_kind,
        status_code=fetch.status_code,
        retry_count=fetch.retry_count,
    )


def chat_content(data: Any) -> str:
    """First choice's message content from an OpenAI-compatible chat completion body."""
    if not isinstance(data, dict):
        return ""
    choices = data.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return ""
    message = choices[0].get("message") or {}
    return str(message.get("content") or "").strip()


def strip_code_fences(text: str) -> str:
    cleaned = str(text or "").strip()
    if cleaned.startswith("```"):
        cleaned = _FENCE_CLOSE_RE.sub("", _FENCE_OPEN_RE.sub("", cleaned))
    return cleaned.strip()


def parse_json_object(text: str) -> Optional[Dict[str, Any]]:
    try:
        parsed = json.loads(strip_code_fences(text))
    except (TypeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


def snippet_list(value: Any) -> List[str]:
    """Search snippets as a list of non-empty strings; a bare string is one snippet."""
    if isinstance(value, str):
        return [value] if value else []
    if not isinstance(value, (list, tuple)):
        return []
    return [str(s) for s in value if s]


def extract_citation_urls(content: str, limit: int = 10) -> List[str]:
    urls: List[str] = []
    for match in _CITATION_RE.findall(content or "")[:limit]:
        url = match.rstrip(".,;:")
        if url:
            urls.append(url)
    return urls


def social_links_from_urls(urls: Iterable[str]) -> Dict[str, str]:
    links: Dict[str, str] = {}
    for url in urls:
        value = str(url or "")
        if "linkedin.com/company/" in value:
            links["linkedin"] = value
        elif "twitter.com/" in value or "x.com/" in value:
            links["twitter"] = value
        elif "github.com/" in value:
            links["github"] = value
    return links


def pick_extracted_fields(parsed: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for name in EXTRACTED_FIELDS:
        value = parsed.get(name)
        if value is None or value == "" or value == []:
            continue
        if name == "foundedYear" and isinstance(value, (int, float)) and not isinstance(value, bool):
            value = str(int(value))
        out[name] = value
    return out
