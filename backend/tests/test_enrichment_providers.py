import json

import httpx

from company_enrichment.services.enrichment.providers.base import (
    extract_citation_urls,
    parse_json_object,
    snippet_list,
    social_links_from_urls,
)
from company_enrichment.services.enrichment.providers.compound import GroqCompoundProvider, build_research_prompt
from company_enrichment.services.enrichment.providers.extraction import (
    GroqExtractor,
    extract_from_search_hits,
    hits_to_context,
)
from company_enrichment.services.enrichment.providers.search import YoucomSearchProvider, merge_hits
from company_enrichment.services.enrichment.resilient_http import ResilientHttpClient
from company_enrichment.services.enrichment.types import NormalizedTarget

GROQ_URL = "https://groq.example.test/v1/chat/completions"
SEARCH_URL = "https://search.example.test/search"
STRIPE = NormalizedTarget(origin="https://stripe.com", domain="stripe.com", company_name="Stripe")

RESEARCH_TEXT = (
    "Stripe is a financial infrastructure platform. Sources: https://stripe.com/about, "
    "https://www.linkedin.com/company/stripe, https://github.com/stripe."
)
EXTRACTED = {
    "description": "Stripe builds payments infrastructure for the internet.",
    "industry": "Fintech",
    "foundedYear": 2010,
    "keyPeople": ["Patrick Collison (CEO)"],
    "unexpected": "ignored",
}


def _chat(content):
    return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": content}}]})


async def _no_sleep(delay):
    return None


def _http(handler):
    return ResilientHttpClient(transport=httpx.MockTransport(handler), sleep=_no_sleep)


def _groq_handler(calls, *, research=RESEARCH_TEXT, extraction=None):
    def handler(request):
        body = json.loads(request.content)
        calls.append(body["model"])
        if body["model"] == "compound":
            return _chat(research)
        return _chat(extraction if extraction is not None else "```json\n" + json.dumps(EXTRACTED) + "\n```")

    return handler


def _compound(http, api_key="gsk-test"):
    extractor = GroqExtractor(http, api_key=api_key, api_url=GROQ_URL, model="extract", timeout_s=5)
    return GroqCompoundProvider(
        http, extractor, api_key=api_key, api_url=GROQ_URL, model="compound", timeout_s=5
    )


async def test_compound_provider_researches_then_extracts():
    calls = []
    http = _http(_groq_handler(calls))
    provider = _compound(http)

    raw = await provider.call(STRIPE, hints=["stripe.dev"])
    assert raw.success
    assert calls == ["compound", "extract"]
    assert raw.citations[0] == "https://stripe.com/about"

    candidate = provider.parse(raw)
    assert candidate["industry"] == "Fintech"
    assert candidate["foundedYear"] == "2010"
    assert "unexpected" not in candidate
    assert candidate["socialLinks"] == {
        "linkedin": "https://www.linkedin.com/company/stripe",
        "github": "https://github.com/stripe",
    }
    assert len(candidate["citationUrls"]) == 3
    await http.aclose()


async def test_compound_provider_reports_empty_and_unparseable_output():
    calls = []
    http = _http(_groq_handler(calls, research=""))
    raw = await _compound(http).call(STRIPE)
    assert not raw.success
    assert raw.error_kind == "empty"
    assert calls == ["compound"]

    http = _http(_groq_handler([], extraction="Sorry, I cannot help with that."))
    raw = await _compound(http).call(STRIPE)
    assert not raw.success
    assert raw.error_kind == "parse"


async def test_compound_provider_passes_http_failure_through():
    http = _http(lambda request: httpx.Response(503, text="over capacity"))
    raw = await _compound(http).call(STRIPE)
    assert not raw.success
    assert raw.error_kind == "http"
    assert raw.status_code == 503
    assert raw.retry_count == 1
    assert not _compound(http, api_key="").is_configured()


def test_research_prompt_mentions_hints():
    prompt = build_research_prompt("Stripe", "stripe.com", ["stripe.dev"])
    assert "Stripe (stripe.com)" in prompt
    assert "stripe.dev" in prompt


def _search_handler(queries):
    def handler(request):
        queries.append(request.url.params["query"])
        assert request.headers["x-api-key"] == "ydc-test"
        if "headquarters" in queries[-1]:
            return httpx.Response(
                200,
                json={
                    "hits": [
                        {
                            "title": "About Stripe",
                            "url": "https://stripe.com/about",
                            "description": (
                                "Stripe is a payments company headquartered in San Francisco, "
                                "founded in 2010 with 8,000 employees."
                            ),
                            "snippets": ["Financial infrastructure for the internet."],
                        },
                        {"title": "Stripe on LinkedIn", "url": "https://www.linkedin.com/company/stripe"},
                    ]
                },
            )
        return httpx.Response(
            200,
            json={"results": {"web": [{"title": "About Stripe (dup)", "url": "https://stripe.com/about"}]}},
        )

    return handler


async def test_search_provider_uses_heuristics_without_extractor():
    queries = []
    http = _http(_search_handler(queries))
    provider = YoucomSearchProvider(http, api_key="ydc-test", search_url=SEARCH_URL, timeout_s=5)

    raw = await provider.call(STRIPE)
    assert raw.success
    assert len(queries) == 2
    assert len(raw.payload["hits"]) == 2
    assert raw.citations == ["https://stripe.com/about", "https://www.linkedin.com/company/stripe"]

    candidate = provider.parse(raw)
    assert candidate["description"].startswith("Stripe is a payments company")
    assert candidate["industry"] == "Fintech"
    assert candidate["location"] == "San Francisco"
    assert candidate["foundedYear"] == "2010"
    assert candidate["companySize"] == "1,000-10,000 employees"
    assert candidate["socialLinks"] == {"linkedin": "https://www.linkedin.com/company/stripe"}
    await http.aclose()


async def test_search_provider_prefers_model_extraction_when_configured():
    def handler(request):
        if request.url.host == "search.example.test":
            return httpx.Response(200, json={"hits": [{"title": "Stripe", "url": "https://stripe.com"}]})
        return _chat(json.dumps({"description": "Stripe builds payments APIs.", "industry": "Fintech"}))

    http = _http(handler)
    extractor = GroqExtractor(http, api_key="gsk-test", api_url=GROQ_URL, model="extract", timeout_s=5)
    provider = YoucomSearchProvider(http, extractor, api_key="ydc-test", search_url=SEARCH_URL, timeout_s=5)
    candidate = provider.parse(await provider.call(STRIPE))
    assert candidate == {
        "description": "Stripe builds payments APIs.",
        "industry": "Fintech",
        "citationUrls": ["https://stripe.com"],
    }
    await http.aclose()


async def test_search_provider_fails_when_every_query_fails_or_nothing_found():
    http = _http(lambda request: httpx.Response(401, text="bad key"))
    provider = YoucomSearchProvider(http, api_key="ydc-test", search_url=SEARCH_URL, timeout_s=5, retries=0)
    raw = await provider.call(STRIPE)
    assert not raw.success
    assert raw.status_code == 401

    http = _http(lambda request: httpx.Response(200, json={"hits": []}))
    provider = YoucomSearchProvider(http, api_key="ydc-test", search_url=SEARCH_URL, timeout_s=5)
    raw = await provider.call(STRIPE)
    assert raw.error_kind == "empty"


def test_helpers():
    assert parse_json_object('```json\n{"a": 1}\n```') == {"a": 1}
    assert parse_json_object("[1, 2]") is None
    assert parse_json_object("not json") is None
    assert extract_citation_urls("see (https://a.com/x), and https://b.com.") == ["https://a.com/x", "https://b.com"]
    assert social_links_from_urls(["https://x.com/stripe", "https://example.com"]) == {"twitter": "https://x.com/stripe"}
    assert merge_hits([{"url": "u1"}, {"url": ""}], [{"url": "u1"}, {"url": "u2"}]) == [
        {"url": "u1"},
        {"url": ""},
        {"url": "u2"},
    ]
    assert extract_from_search_hits([], "stripe.com") == {}


def test_string_snippets_are_kept_whole():
    assert snippet_list("Founded in 2010 in San Francisco") == ["Founded in 2010 in San Francisco"]
    assert snippet_list(["a", "", None, 3]) == ["a", "3"]
    assert snippet_list("") == []
    assert snippet_list({"text": "x"}) == []

    hits = [{"title": "Stripe", "url": "https://stripe.com", "snippets": "Stripe was founded in 2010."}]
    assert hits_to_context(hits) == "Title: Stripe\nSnippets: Stripe was founded in 2010."
    assert extract_from_search_hits(hits, "stripe.com")["foundedYear"] == "2010"
