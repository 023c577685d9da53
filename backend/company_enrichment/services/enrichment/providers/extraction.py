"""Turning research prose or search hits into a candidate enrichment payload."""
from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from company_enrichment.services.enrichment.observability import get_logger
from company_enrichment.services.enrichment.providers.base import (
    chat_content,
    parse_json_object,
    pick_extracted_fields,
    snippet_list,
    social_links_from_urls,
)
from company_enrichment.services.enrichment.resilient_http import ResilientHttpClient

logger = get_logger(__name__)

MAX_CONTEXT_CHARS = 6000
MAX_CONTEXT_HITS = 8

EXTRACTION_SYSTEM_PROMPT = (
    "You are a company research assistant. Extract structured information from the provided research content.\n"
    "Return ONLY valid JSON with no markdown formatting, no code blocks, just the raw JSON object.\n"
    "If information is not found or unclear, omit that field entirely. Be accurate."
)

EXTRACTION_SCHEMA_HINT = """{
  "description": "A clear 1-2 sentence description of what the company does",
  "industry": "Primary industry (e.g., Fintech, SaaS, Healthcare)",
  "location": "Company headquarters only - city and state/country",
  "foundedYear": "Year founded (4-digit year)",
  "companySize": "Employee count range (e.g., '1,000-5,000 employees')",
  "keyPeople": ["Array of key executives - format: 'Name (Title)'"],
  "productSummary": "Brief summary of main products/services",
  "pricingInfo": "Pricing model or plans, if published"
}"""


def build_extraction_prompt(company_name: str, domain: str, context: str) -> str:
    return (
        f'Extract company information for "{company_name}" ({domain}) from this research:\n\n'
        f"{context[:MAX_CONTEXT_CHARS]}\n\n"
        "Return a JSON object with these fields (omit any fields where info is not found):\n"
        f"{EXTRACTION_SCHEMA_HINT}\n\n"
        "Return ONLY the JSON object."
    )


class GroqExtractor:
    """Chat-completion call that converts free text into the enrichment JSON shape."""

    def __init__(
        self,
        http: ResilientHttpClient,
        *,
        api_key: str,
        api_url: str,
        model: str,
        timeout_s: float,
        retries: int = 1,
        breaker_key: str = "groq",
    ) -> None:
        self._http = http
        self._api_key = api_key
        self._api_url = api_url
        self._model = model
        self._timeout_s = timeout_s
        self._retries = retries
        self._breaker_key = breaker_key

    def is_configured(self) -> bool:
        return bool(self._api_key)

    async def extract(self, *, company_name: str, domain: str, context: str) -> Optional[Dict[str, Any]]:
        """Candidate payload, or ``None`` when the call fails or returns unparseable JSON."""
        if not self.is_configured() or not context.strip():
            return None
        result = await self._http.request(
            "POST",
            self._api_url,
            breaker_key=self._breaker_key,
            headers={"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json"},
            json={
                "model": self._model,
                "messages": [
                    {"role": "system", "content": EXTRACTION_SYSTEM_PROMPT},
                    {"role": "user", "content": build_extraction_prompt(company_name, domain, context)},
                ],
                "temperature": 0.1,
                "max_tokens": 1000,
            },
            timeout_s=self._timeout_s,
            retries=self._retries,
        )
        if not result.success:
            logger.info("extraction.call_failed", error_kind=result.error_kind, status_code=result.status_code)
            return None
        parsed = parse_json_object(chat_content(result.data))
        if parsed is None:
            logger.info("extraction.unparseable_response")
            return None
        return pick_extracted_fields(parsed)


# ============================================================================
# Heuristic extraction from search hits (no model available)
# ============================================================================

_INDUSTRY_BUCKETS = (
    (("saas", "software as a service"), "SaaS"),
    (("fintech", "payments", "banking"), "Fintech"),
    (("healthcare", "medical"), "Healthcare"),
    (("e-commerce", "retail"), "E-commerce"),
    (("artificial intelligence", "machine learning"), "AI/ML"),
)

_LOCATION_RE = re.compile(r"(?:headquartered|based|located)\s+in\s+([A-Z][a-zA-Z\s,]+?)(?:\.|,|$)", re.IGNORECASE)
_FOUNDED_RE = re.compile(r"(?:founded|established|since)\s+(?:in\s+)?(\d{4})", re.IGNORECASE)
_EMPLOYEES_RE = re.compile(r"(\d[\d,]*)\+?\s*employees", re.IGNORECASE)
_ABOUT_PREFIX_RE = re.compile(r"^(About|Overview)[:\s]*", re.IGNORECASE)


def hits_to_context(hits: List[Dict[str, Any]]) -> str:
    parts: List[str] = []
    for hit in hits[:MAX_CONTEXT_HITS]:
        lines: List[str] = []
        if hit.get("title"):
            lines.append(f"Title: {hit['title']}")
        if hit.get("description"):
            lines.append(f"Description: {hit['description']}")
        snippets = snippet_list(hit.get("snippets"))
        if snippets:
            lines.append("Snippets: " + " | ".join(snippets))
        if lines:
            parts.append("\n".join(lines))
    return "\n\n---\n\n".join(parts)[:MAX_CONTEXT_CHARS]


def _size_bucket(count: int) -> str:
    if count >= 10_000:
        return "10,000+ employees"
    if count >= 1_000:
        return "1,000-10,000 employees"
    if count >= 200:
        return "200-1,000 employees"
    return "1-200 employees"


def extract_from_search_hits(hits: List[Dict[str, Any]], domain: str) -> Dict[str, Any]:
    """Deterministic keyword/regex extraction over search hits."""
    out: Dict[str, Any] = {}
    if not hits:
        return out

    texts: List[str] = []
    for hit in hits:
        if hit.get("title"):
            texts.append(str(hit["title"]))
        if hit.get("description"):
            texts.append(str(hit["description"]))
        texts.extend(snippet_list(hit.get("snippets")))
    combined = " ".join(texts)
    lowered = combined.lower()

    for hit in hits:
        description = str(hit.get("description") or "")
        if domain and domain in str(hit.get("url") or "") and 50 < len(description) < 500:
            cleaned = _ABOUT_PREFIX_RE.sub("", description)
            if "cookie" not in cleaned.lower():
                out["description"] = cleaned
                break

    for keywords, industry in _INDUSTRY_BUCKETS:
        if any(keyword in lowered for keyword in keywords):
            out["industry"] = industry
            break

    location = _LOCATION_RE.search(combined)
    if location:
        value = location.group(1).strip().rstrip(", ")
        if 2 < len(value) < 50:
            out["location"] = value

    founded = _FOUNDED_RE.search(combined)
    if founded:
        year = int(founded.group(1))
        if 1900 <= year <= datetime.now(timezone.utc).year:
            out["foundedYear"] = founded.group(1)

    size = _EMPLOYEES_RE.search(combined)
    if size:
        out["companySize"] = _size_bucket(int(size.group(1).replace(",", "")))

    links = social_links_from_urls(str(hit.get("url") or "") for hit in hits)
    if links:
        out["socialLinks"] = links
    return out
