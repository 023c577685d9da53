from company_enrichment.services.enrichment.types import EnrichedCompanyData
from company_enrichment.services.enrichment.validation import (
    calculate_confidence,
    is_fallback_content,
    sanitize_citation_urls,
    sanitize_enrichment,
    sanitize_founded_year,
    sanitize_text,
)


def test_long_description_is_truncated_with_warning():
    outcome = sanitize_enrichment({"description": "x" * 10000})
    assert len(outcome.data.description) == 2000
    assert outcome.data.description.endswith("...")
    assert "Description truncated from 10000 to 2000 chars" in outcome.warnings


def test_truncation_warning_uses_length_after_control_characters_are_removed():
    outcome = sanitize_enrichment({"description": "x" * 1990 + "\x00" * 50})
    assert outcome.data.description == "x" * 1990
    assert not any("truncated" in warning for warning in outcome.warnings)

    outcome = sanitize_enrichment({"description": "\x07" * 10 + "x" * 2500})
    assert "Description truncated from 2500 to 2000 chars" in outcome.warnings


def test_control_characters_are_stripped_but_newlines_survive():
    assert sanitize_text("  Acme\x00 builds\x07 rockets\n\tfast  ", 100) == "Acme builds rockets\n\tfast"
    assert sanitize_text("\x01\x02   ", 100) is None
    assert sanitize_text(42, 100) is None


def test_out_of_range_founded_year_is_dropped_with_warning():
    outcome = sanitize_enrichment({"description": "Acme makes widgets.", "foundedYear": "1492"}, current_year=2026)
    assert outcome.data.founded_year is None
    assert "foundedYear" in outcome.fields_dropped
    assert "Invalid or out-of-range founded year" in outcome.warnings
    assert outcome.data.description == "Acme makes widgets."


def test_founded_year_accepts_numbers_and_embedded_years():
    assert sanitize_founded_year(2010, current_year=2026) == "2010"
    assert sanitize_founded_year(1999.7, current_year=2026) == "1999"
    assert sanitize_founded_year("Founded in 2004 in Paris", current_year=2026) == "2004"
    assert sanitize_founded_year("2031", current_year=2026) is None
    assert sanitize_founded_year(True, current_year=2026) is None
    assert sanitize_founded_year(float("nan"), current_year=2026) is None


def test_key_people_are_capped_at_ten_entries():
    people = [f"Person {i}" for i in range(50)]
    outcome = sanitize_enrichment({"keyPeople": people, "techStack": ["python", "", 7, "go"]})
    assert outcome.data.key_people == people[:10]
    assert "keyPeople capped at 10 entries (received 50)" in outcome.warnings
    assert outcome.data.tech_stack == ["python", "go"]


def test_social_links_are_checked_per_network():
    outcome = sanitize_enrichment(
        {
            "description": "Payments infrastructure.",
            "socialLinks": {
                "linkedin": "https://www.linkedin.com/company/stripe/",
                "twitter": "https://evil.example.com/stripe",
                "github": "javascript:alert(1)",
            },
        }
    )
    assert outcome.data.social_links == {"linkedin": "https://www.linkedin.com/company/stripe/"}
    assert "Invalid Twitter/X URL format" in outcome.warnings
    assert "Invalid GitHub URL format" in outcome.warnings


def test_wrong_types_are_dropped_not_raised():
    outcome = sanitize_enrichment(
        {"description": ["not", "text"], "industry": 12, "keyPeople": "Jane", "socialLinks": "https://x.com/a"}
    )
    assert outcome.data.present_fields() == []
    assert set(outcome.fields_dropped) == {"description", "industry", "keyPeople", "socialLinks"}
    assert not outcome.is_valid

    assert sanitize_enrichment("garbage").warnings == ["Provider response was not an object"]
    assert sanitize_enrichment(None).warnings == []


def test_confidence_is_weighted_sum_of_present_fields():
    description_only = EnrichedCompanyData(description="Acme builds rockets.")
    assert calculate_confidence(description_only) == 0.25
    assert calculate_confidence(description_only) == calculate_confidence(description_only)

    full = EnrichedCompanyData(
        description="d",
        industry="i",
        location="l",
        company_size="s",
        founded_year="2000",
        key_people=["p"],
        product_summary="ps",
        pricing_info="pi",
        tech_stack=["t"],
        social_links={"github": "https://github.com/acme"},
    )
    assert calculate_confidence(full) == 1.0
    assert calculate_confidence(EnrichedCompanyData()) == 0.0


def test_fallback_detection_matches_placeholder_text():
    assert is_fallback_content(EnrichedCompanyData(), "acme.com")
    assert is_fallback_content(
        EnrichedCompanyData(description="Visit acme.com for details about Acme."), "acme.com"
    )
    assert is_fallback_content(EnrichedCompanyData(description="We could not find anything."), "acme.com")
    assert not is_fallback_content(EnrichedCompanyData(description="Acme builds reusable rockets."), "acme.com")
    # Without a domain only the generic phrases apply.
    assert not is_fallback_content(EnrichedCompanyData(description="Please visit our booth."), "")


def test_citation_urls_are_deduplicated_and_capped():
    urls = ["https://a.com", "https://a.com", "ftp://b.com", 5, "https://c.com", "https://d.com", "https://e.com",
            "https://f.com", "https://g.com"]
    assert sanitize_citation_urls(urls) == [
        "https://a.com",
        "https://c.com",
        "https://d.com",
        "https://e.com",
        "https://f.com",
    ]
