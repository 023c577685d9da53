"""Schema validation and sanitisation of untrusted provider output.

``sanitize_enrichment`` never raises: every field that fails its rule is
dropped (and named in ``fields_dropped``) while the rest of the payload
survives. Confidence scoring and fallback detection operate on the
sanitised result only.
"""
from __future__ import annotations

import math
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Pattern
from urllib.parse import urlsplit

from company_enrichment.services.enrichment.types import EnrichedCompanyData, ValidationOutcome

MAX_DESCRIPTION_LENGTH = 2000
MAX_INDUSTRY_LENGTH = 100
MAX_LOCATION_LENGTH = 200
MAX_PRODUCT_SUMMARY_LENGTH = 2000
MAX_PRICING_INFO_LENGTH = 500
MAX_COMPANY_SIZE_LENGTH = 100
MAX_KEY_PEOPLE_COUNT = 10
MAX_KEY_PERSON_LENGTH = 200
MAX_TECH_STACK_COUNT = 20
MAX_TECH_ITEM_LENGTH = 100
MAX_SOCIAL_URL_LENGTH = 500
MAX_CITATION_URLS = 5
MIN_FOUNDED_YEAR = 1800

LINKEDIN_PATTERN = re.compile(r"^https?://(www\.)?linkedin\.com/company/[\w-]+/?$", re.IGNORECASE)
TWITTER_PATTERN = re.compile(r"^https?://(www\.)?(twitter\.com|x\.com)/[\w-]+/?$", re.IGNORECASE)
GITHUB_PATTERN = re.compile(r"^https?://(www\.)?github\.com/[\w-]+/?$", re.IGNORECASE)

_SOCIAL_RULES = (
    ("linkedin", LINKEDIN_PATTERN, "Invalid LinkedIn URL format"),
    ("twitter", TWITTER_PATTERN, "Invalid Twitter/X URL format"),
    ("github", GITHUB_PATTERN, "Invalid GitHub URL format"),
)

# (wire name, attribute, cap)
_TEXT_FIELDS = (
    ("description", "description", MAX_DESCRIPTION_LENGTH),
    ("industry", "industry", MAX_INDUSTRY_LENGTH),
    ("location", "location", MAX_LOCATION_LENGTH),
    ("productSummary", "product_summary", MAX_PRODUCT_SUMMARY_LENGTH),
    ("pricingInfo", "pricing_info", MAX_PRICING_INFO_LENGTH),
    ("companySize", "company_size", MAX_COMPANY_SIZE_LENGTH),
)

CONFIDENCE_WEIGHTS: Dict[str, float] = {
    "description": 0.25,
    "industry": 0.15,
    "location": 0.15,
    "companySize": 0.10,
    "foundedYear": 0.10,
    "keyPeople": 0.10,
    "productSummary": 0.05,
    "pricingInfo": 0.03,
    "techStack": 0.02,
    "socialLinks": 0.05,
}

PLACEHOLDER_PHRASES = (
    "visit the website",
    "for more information",
    "no information available",
    "could not find",
    "unable to retrieve",
)

# Newline (\n), tab (\t) and carriage return (\r) survive.
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_YEAR_RE = re.compile(r"\b(\d{4})\b")


def sanitize_text(value: Any, max_length: int) -> Optional[str]:
    """Strip control characters, trim and cap a free-text value.

    Returns ``None`` for non-strings and for values that are empty after trimming.
    """
    if not isinstance(value, str):
        return None
    cleaned = _CONTROL_CHARS_RE.sub("", value).strip()
    if not cleaned:
        return None
    if len(cleaned) > max_length:
        cleaned = cleaned[: max_length - 3] + "..."
    return cleaned


def _is_http_url(url: str) -> bool:
    try:
        parsed = urlsplit(url)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def sanitize_social_url(value: Any, pattern: Pattern[str], max_length: int = MAX_SOCIAL_URL_LENGTH) -> Optional[str]:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    if not trimmed or len(trimmed) > max_length:
        return None
    if not _is_http_url(trimmed):
        return None
    if not pattern.match(trimmed):
        return None
    return trimmed


def sanitize_founded_year(value: Any, current_year: Optional[int] = None) -> Optional[str]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return None
        text = str(int(math.floor(value)))
    elif isinstance(value, str):
        text = value.strip()
    else:
        return None

    match = _YEAR_RE.search(text)
    if not match:
        return None
    year = int(match.group(1))
    ceiling = current_year if current_year is not None else datetime.now(timezone.utc).year
    if year < MIN_FOUNDED_YEAR or year > ceiling:
        return None
    return match.group(1)


def sanitize_string_list(value: Any, max_count: int, max_item_length: int) -> Optional[List[str]]:
    if not isinstance(value, (list, tuple)):
        return None
    result: List[str] = []
    for item in value:
        if len(result) >= max_count:
            break
        cleaned = sanitize_text(item, max_item_length)
        if cleaned:
            result.append(cleaned)
    return result or None


def sanitize_citation_urls(urls: Iterable[Any], max_count: int = MAX_CITATION_URLS) -> List[str]:
    out: List[str] = []
    seen = set()
    for raw in urls or []:
        if len(out) >= max_count:
            break
        if not isinstance(raw, str):
            continue
        url = raw.strip()
        if not url or len(url) > MAX_SOCIAL_URL_LENGTH or url in seen:
            continue
        if not _is_http_url(url):
            continue
        seen.add(url)
        out.append(url)
    return out


def sanitize_enrichment(raw: Any, *, current_year: Optional[int] = None) -> ValidationOutcome:
    data = EnrichedCompanyData()
    warnings: List[str] = []
    dropped: List[str] = []

    if not isinstance(raw, dict):
        if raw is not None:
            warnings.append("Provider response was not an object")
        return ValidationOutcome(data=data, warnings=warnings, fields_dropped=dropped)

    for wire, attr, cap in _TEXT_FIELDS:
        original = raw.get(wire)
        cleaned = sanitize_text(original, cap)
        if cleaned:
            setattr(data, attr, cleaned)
            stripped_length = len(_CONTROL_CHARS_RE.sub("", original).strip())
            if stripped_length > cap:
                label = wire[0].upper() + wire[1:]
                warnings.append(f"{label} truncated from {stripped_length} to {cap} chars")
        elif original is not None:
            dropped.append(wire)

    if raw.get("foundedYear") is not None:
        year = sanitize_founded_year(raw.get("foundedYear"), current_year=current_year)
        if year:
            data.founded_year = year
        else:
            dropped.append("foundedYear")
            warnings.append("Invalid or out-of-range founded year")

    for wire, attr, max_count, max_len in (
        ("keyPeople", "key_people", MAX_KEY_PEOPLE_COUNT, MAX_KEY_PERSON_LENGTH),
        ("techStack", "tech_stack", MAX_TECH_STACK_COUNT, MAX_TECH_ITEM_LENGTH),
    ):
        original = raw.get(wire)
        items = sanitize_string_list(original, max_count, max_len)
        if items:
            setattr(data, attr, items)
            if isinstance(original, (list, tuple)) and len(original) > max_count:
                warnings.append(f"{wire} capped at {max_count} entries (received {len(original)})")
        elif original is not None:
            dropped.append(wire)

    social = raw.get("socialLinks")
    if isinstance(social, dict):
        links: Dict[str, str] = {}
        for key, pattern, message in _SOCIAL_RULES:
            candidate = social.get(key)
            url = sanitize_social_url(candidate, pattern)
            if url:
                links[key] = url
            elif candidate is not None:
                warnings.append(message)
        if links:
            data.social_links = links
    elif social is not None:
        dropped.append("socialLinks")

    return ValidationOutcome(data=data, warnings=warnings, fields_dropped=dropped)


def calculate_confidence(data: EnrichedCompanyData) -> float:
    present = set(data.present_fields())
    score = sum(weight for name, weight in CONFIDENCE_WEIGHTS.items() if name in present)
    return round(score, 2)


def is_fallback_content(data: EnrichedCompanyData, domain: str) -> bool:
    """True when the description is missing or reads like placeholder boilerplate."""
    if not data.description:
        return True
    text = data.description.lower()
    phrases = PLACEHOLDER_PHRASES
    if domain:
        phrases = (f"visit {domain.lower()}",) + phrases
    return any(phrase in text for phrase in phrases)
