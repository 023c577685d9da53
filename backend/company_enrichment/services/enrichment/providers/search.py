from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Sequence

from company_enrichment.services.enrichment.providers.base import failed_result, snippet_list, social_links_from_urls
from company_enrichment.services.enrichment.providers.extraction import (
    GroqExtractor,
    extract_from_search_hits,
    hits_to_context,
)
from company_enrichment.services.enrichment.resilient_http import ResilientHttpClient
from company_enrichment.services.enrichment.types import FetchResult, NormalizedTarget, ProviderId, RawProviderResult

MAX_CITATION_HITS = 5


def build_search_queries(company_name: str, domain: str) -> List[str]:
    return [
        f'{company_name} company about "{domain}" headquarters employees founded',
        f"{company_name} {domain} founders leadership products pricing",
    ]


def _hits_from_response(data: Any) -> List[Dict[str, Any]]:
    if not isinstance(data, dict):
        return []
    hits = data.get("hits")
    if hits is None:
        results = data.get("results")
        hits = results.get("web") if isinstance(results, dict) else None
    out: List[Dict[str, Any]] = []
    for item in hits or []:
        if not isinstance(item, dict):
            continue
        out.append(
            {
                "title": item.get("title"),
                "description": item.get("description"),
                "url": item.get("url"),
                "snippets": snippet_list(item.get("snippets")),
            }
        )
    return out


def merge_hits(*batches: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Union of hit lists by URL; the first occurrence of a URL wins."""
    seen = set()
    merged: List[Dict[str, Any]] = []
    for batch in batches:
        for hit in batch:
            url = str(hit.get("url") or "").strip()
            if url:
                if url in seen:
                    continue
                seen.add(url)
            merged.append(hit)
    return merged


class YoucomSearchProvider:
    """Fallback provider: web search, then model or heuristic extraction over the hits."""

    provider_id = ProviderId.youcom
    breaker_key = "youcom"

    def __init__(
        self,
        http: ResilientHttpClient,
        extractor: Optional[GroqExtractor] = None,
        *,
        api_key: str,
        search_url: str,
        timeout_s: float,
        retries: int = 2,
        num_web_results: int = 10,
    ) -> None:
        self._http = http
        self._extractor = extractor
        self._api_key = api_key
        self._search_url = search_url
        self._timeout_s = timeout_s
        self._retries = retries
        self._num_web_results = num_web_results

    def is_configured(self) -> bool:
        return bool(self._api_key)

    async def _search(self, query: str) -> FetchResult:
        return await self._http.request(
            "GET",
            self._search_url,
            breaker_key=self.breaker_key,
            headers={"X-API-Key": self._api_key},
            params={"query": query, "num_web_results": str(self._num_web_results)},
            timeout_s=self._timeout_s,
            retries=self._retries,
        )

    async def call(self, target: NormalizedTarget, hints: Sequence[str] = ()) -> RawProviderResult:
        queries = build_search_queries(target.company_name, target.domain)
        results = await asyncio.gather(*(self._search(query) for query in queries))

        succeeded = [result for result in results if result.success]
        retry_count = sum(result.retry_count for result in results)
        if not succeeded:
            failed = failed_result(self.provider_id, results[0])
            failed.retry_count = retry_count
            return failed

        hits = merge_hits(*(_hits_from_response(result.data) for result in succeeded))
        if not hits:
            return RawProviderResult(
                provider=self.provider_id.value,
                success=False,
                error="youcom search returned no results",
                error_kind="empty",
                retry_count=retry_count,
            )

        extracted = None
        if self._extractor is not None and self._extractor.is_configured():
            extracted = await self._extractor.extract(
                company_name=target.company_name,
                domain=target.domain,
                context=hits_to_context(hits),
            )

        citations = [str(hit["url"]) for hit in hits if hit.get("url")][:MAX_CITATION_HITS]
        return RawProviderResult(
            provider=self.provider_id.value,
            success=True,
            payload={"hits": hits, "extracted": extracted, "domain": target.domain},
            citations=citations,
            status_code=succeeded[0].status_code,
            retry_count=retry_count,
        )

    def parse(self, raw: RawProviderResult) -> Dict[str, Any]:
        payload = raw.payload or {}
        hits: List[Dict[str, Any]] = list(payload.get("hits") or [])
        extracted = payload.get("extracted")
        if isinstance(extracted, dict) and extracted:
            candidate = dict(extracted)
            links = social_links_from_urls(str(hit.get("url") or "") for hit in hits)
            if links:
                candidate["socialLinks"] = links
        else:
            candidate = extract_from_search_hits(hits, str(payload.get("domain") or ""))
        candidate["citationUrls"] = list(raw.citations)
        return candidate
