"""Company enrichment API routes."""
import json
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from company_enrichment.config import get_settings
from company_enrichment.services.enrichment.limits import rate_limit_headers
from company_enrichment.services.enrichment.observability import (
    categorize_error,
    format_user_error,
    generate_request_id,
    get_logger,
    status_for_category,
)
from company_enrichment.services.enrichment.pipeline import EnrichmentPipeline
from company_enrichment.services.enrichment.types import EnrichmentError, EnrichmentOutcome, ErrorCategory
from company_enrichment.services.enrichment.url_validation import check_payload_size
from company_enrichment.services.enrichment.wiring import get_pipeline

router = APIRouter()
logger = get_logger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type, x-workspace-id",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
}


# ============================================================================
# Pydantic Schemas
# ============================================================================

class SocialLinks(BaseModel):
    linkedin: Optional[str] = None
    twitter: Optional[str] = None
    github: Optional[str] = None


class EnrichedCompany(BaseModel):
    description: Optional[str] = None
    industry: Optional[str] = None
    location: Optional[str] = None
    product_summary: Optional[str] = Field(default=None, alias="productSummary")
    pricing_info: Optional[str] = Field(default=None, alias="pricingInfo")
    company_size: Optional[str] = Field(default=None, alias="companySize")
    founded_year: Optional[str] = Field(default=None, alias="foundedYear")
    key_people: Optional[List[str]] = Field(default=None, alias="keyPeople")
    tech_stack: Optional[List[str]] = Field(default=None, alias="techStack")
    social_links: Optional[SocialLinks] = Field(default=None, alias="socialLinks")
    # Provenance
    confidence: Optional[float] = None
    source: Optional[str] = None
    ai_generated: bool = Field(default=True, alias="aiGenerated")
    citation_urls: Optional[List[str]] = Field(default=None, alias="citationUrls")

    class Config:
        populate_by_name = True


class EnrichmentResponse(BaseModel):
    success: bool
    enrichment: EnrichedCompany
    provider: str
    cached: bool
    duration_ms: int = Field(alias="durationMs")
    confidence: Optional[float] = None
    is_fallback: bool = Field(alias="isFallback")
    degraded: bool = False
    request_id: str = Field(alias="requestId")
    warnings: Optional[List[str]] = None

    class Config:
        populate_by_name = True


class ErrorBody(BaseModel):
    message: str
    code: str
    details: Optional[Dict[str, Any]] = None


class ErrorEnvelope(BaseModel):
    error: ErrorBody


class CacheInvalidationResponse(BaseModel):
    domain: str
    invalidated: bool


# ============================================================================
# Helpers
# ============================================================================

def _error_response(exc: EnrichmentError, request_id: str) -> JSONResponse:
    envelope = ErrorEnvelope(
        error=ErrorBody(
            message=str(exc),
            code=exc.category.value,
            details=exc.details or None,
        )
    )
    headers = {**CORS_HEADERS, **exc.headers, "X-Request-Id": request_id}
    return JSONResponse(
        status_code=exc.status_code,
        content=envelope.model_dump(exclude_none=True),
        headers=headers,
    )


def _success_response(outcome: EnrichmentOutcome) -> JSONResponse:
    body = EnrichmentResponse(
        success=outcome.success,
        enrichment=EnrichedCompany.model_validate(outcome.enrichment.to_dict()),
        provider=outcome.provider,
        cached=outcome.cached,
        duration_ms=outcome.duration_ms,
        confidence=outcome.confidence,
        is_fallback=outcome.is_fallback,
        degraded=outcome.degraded,
        request_id=outcome.request_id,
        warnings=outcome.warnings or None,
    )
    headers = {**CORS_HEADERS, "X-Request-Id": outcome.request_id}
    if outcome.rate_limit is not None:
        headers.update(rate_limit_headers(outcome.rate_limit))
    return JSONResponse(
        status_code=200,
        content=body.model_dump(by_alias=True, exclude_none=True),
        headers=headers,
    )


def _validation_error(message: str) -> EnrichmentError:
    return EnrichmentError(message, category=ErrorCategory.validation_error, status_code=400)


# ============================================================================
# Routes
# ============================================================================

@router.options("")
async def enrichment_preflight():
    return PlainTextResponse("ok", headers=CORS_HEADERS)


@router.post(
    "",
    response_model=EnrichmentResponse,
    responses={400: {"model": ErrorEnvelope}, 401: {"model": ErrorEnvelope}, 403: {"model": ErrorEnvelope},
               429: {"model": ErrorEnvelope}, 502: {"model": ErrorEnvelope}, 503: {"model": ErrorEnvelope},
               504: {"model": ErrorEnvelope}},
)
async def enrich_company(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    x_workspace_id: Optional[str] = Header(default=None),
    pipeline: EnrichmentPipeline = Depends(get_pipeline),
):
    """Enrich the first URL of the request body for the caller's workspace."""
    request_id = generate_request_id()
    settings = get_settings()

    size_check = check_payload_size(request.headers.get("content-length"), settings.max_payload_bytes)
    if not size_check.is_valid:
        return _error_response(_validation_error(size_check.error or "Invalid request body"), request_id)

    raw = await request.body()
    if len(raw) > settings.max_payload_bytes:
        return _error_response(
            _validation_error(f"Request body exceeds maximum size of {settings.max_payload_bytes} bytes"),
            request_id,
        )
    try:
        body = json.loads(raw or b"null")
    except ValueError:
        return _error_response(_validation_error("Invalid JSON request body"), request_id)

    try:
        outcome = await pipeline.enrich(
            body,
            authorization=authorization,
            header_workspace_id=x_workspace_id,
            request_id=request_id,
        )
    except EnrichmentError as exc:
        return _error_response(exc, request_id)
    return _success_response(outcome)


@router.delete("/cache", response_model=CacheInvalidationResponse)
async def invalidate_cached_enrichment(
    domain: str = Query(..., min_length=1),
    workspace_id: Optional[str] = Query(default=None, alias="workspaceId"),
    authorization: Optional[str] = Header(default=None),
    x_workspace_id: Optional[str] = Header(default=None),
    pipeline: EnrichmentPipeline = Depends(get_pipeline),
):
    """Drop the caller's cached enrichment for a domain so the next request refetches."""
    request_id = generate_request_id()
    try:
        invalidated = await pipeline.invalidate(
            domain,
            authorization=authorization,
            workspace_id=workspace_id or x_workspace_id,
        )
    except EnrichmentError as exc:
        return _error_response(exc, request_id)
    except Exception as exc:
        category = categorize_error(str(exc))
        if category in (ErrorCategory.internal_error, ErrorCategory.validation_error):
            category = ErrorCategory.cache_error
        logger.error(
            "enrichment.cache_invalidate_failed",
            request_id=request_id,
            error=str(exc)[:500],
            category=category.value,
        )
        return _error_response(
            EnrichmentError(
                format_user_error(str(exc), category),
                category=category,
                status_code=status_for_category(category),
            ),
            request_id,
        )
    body = CacheInvalidationResponse(domain=domain, invalidated=invalidated)
    return JSONResponse(content=body.model_dump(), headers={**CORS_HEADERS, "X-Request-Id": request_id})


@router.get("/circuit-breakers")
async def circuit_breaker_status(pipeline: EnrichmentPipeline = Depends(get_pipeline)):
    """Process-local breaker state per provider."""
    return pipeline.circuit_breaker_status()
