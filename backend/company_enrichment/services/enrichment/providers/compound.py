from __future__ import annotations

from typing import Any, Dict, Sequence

from company_enrichment.services.enrichment.providers.base import (
    chat_content,
    extract_citation_urls,
    failed_result,
    social_links_from_urls,
)
from company_enrichment.services.enrichment.providers.extraction import GroqExtractor
from company_enrichment.services.enrichment.resilient_http import ResilientHttpClient
from company_enrichment.services.enrichment.types import NormalizedTarget, ProviderId, RawProviderResult

MAX_KEPT_CITATIONS = 5


def build_research_prompt(company_name: str, domain: str, hints: Sequence[str] = ()) -> str:
    prompt = (
        f"Search for comprehensive information about {company_name} ({domain}).\n"
        "Find: company description, industry, headquarters location, founding year, employee count, "
        "key executives, and main products/services.\n"
        "Focus on their official website and reliable business sources like LinkedIn, Crunchbase, "
        "Bloomberg, or TechCrunch."
    )
    if hints:
        prompt += "\nRelated sites supplied by the user: " + ", ".join(hints)
    return prompt


class GroqCompoundProvider:
    """Primary provider: compound search+generation, then JSON extraction of the prose."""

    provider_id = ProviderId.groq_compound
    breaker_key = "groq"

    def __init__(
        self,
        http: ResilientHttpClient,
        extractor: GroqExtractor,
        *,
        api_key: str,
        api_url: str,
        model: str,
        timeout_s: float,
        retries: int = 1,
    ) -> None:
        self._http = http
        self._extractor = extractor
        self._api_key = api_key
        self._api_url = api_url
        self._model = model
        self._timeout_s = timeout_s
        self._retries = retries

    def is_configured(self) -> bool:
        return bool(self._api_key)

    async def call(self, target: NormalizedTarget, hints: Sequence[str] = ()) -> RawProviderResult:
        fetch = await self._http.request(
            "POST",
            self._api_url,
            breaker_key=self.breaker_key,
            headers={"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json"},
            json={
                "model": self._model,
                "messages": [
                    {"role": "user", "content": build_research_prompt(target.company_name, target.domain, hints)}
                ],
                "temperature": 0.1,
                "max_tokens": 2000,
            },
            timeout_s=self._timeout_s,
            retries=self._retries,
        )
        if not fetch.success:
            return failed_result(self.provider_id, fetch)

        content = chat_content(fetch.data)
        if not content:
            return RawProviderResult(
                provider=self.provider_id.value,
                success=False,
                error="Empty response from groq compound model",
                error_kind="empty",
                status_code=fetch.status_code,
                retry_count=fetch.retry_count,
            )

        citations = extract_citation_urls(content)
        extracted = await self._extractor.extract(
            company_name=target.company_name,
            domain=target.domain,
            context=content,
        )
        if extracted is None:
            return RawProviderResult(
                provider=self.provider_id.value,
                success=False,
                error="groq extraction returned no usable JSON",
                error_kind="parse",
                status_code=fetch.status_code,
                citations=citations,
                retry_count=fetch.retry_count,
            )

        return RawProviderResult(
            provider=self.provider_id.value,
            success=True,
            payload=extracted,
            citations=citations,
            status_code=fetch.status_code,
            retry_count=fetch.retry_count,
        )

    def parse(self, raw: RawProviderResult) -> Dict[str, Any]:
        candidate: Dict[str, Any] = dict(raw.payload or {})
        links = social_links_from_urls(raw.citations)
        if links:
            candidate["socialLinks"] = links
        candidate["citationUrls"] = list(raw.citations[:MAX_KEPT_CITATIONS])
        return candidate
