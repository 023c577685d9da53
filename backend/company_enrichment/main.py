from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from company_enrichment.config import get_settings
from company_enrichment.api import enrichment
from company_enrichment.services.enrichment.observability import configure_logging, drain_background_tasks, get_logger

settings = get_settings()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(
        production=settings.is_production,
        service_name=settings.service_name,
        level=settings.log_level,
    )
    if settings.init_db_on_startup:
        from company_enrichment.models.base import init_db

        await init_db()
    logger.info("app.startup", environment=settings.environment)
    yield
    # Let pending metrics/cache bookkeeping finish before the loop closes.
    await drain_background_tasks(timeout=5.0)


app = FastAPI(
    title="Company Enrichment API",
    description="Tenant-scoped company enrichment with SSRF protection, quotas and provider failover",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins(),
    allow_credentials=True,
    allow_methods=["POST", "OPTIONS", "GET", "DELETE"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type", "x-workspace-id"],
    expose_headers=["X-Request-Id", "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset", "Retry-After"],
)

app.include_router(enrichment.router, prefix="/enrichment", tags=["enrichment"])


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
