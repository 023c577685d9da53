from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import create_engine, delete
from sqlalchemy.orm import Session, sessionmaker

from company_enrichment.workers.celery_app import celery_app
from company_enrichment.config import get_settings
from company_enrichment.models.enrichment import EnrichmentCacheEntry, EnrichmentMetric
from company_enrichment.services.enrichment.observability import get_logger

logger = get_logger(__name__)

# Sync engine for Celery workers (Celery doesn't support async)
settings = get_settings()
sync_engine = create_engine(settings.database_url_sync, echo=settings.debug)
SessionLocal = sessionmaker(bind=sync_engine)


def purge_expired_cache(db: Session, now: Optional[datetime] = None) -> int:
    """Delete cache rows past their expiry across all workspaces."""
    cutoff = now or datetime.now(timezone.utc)
    result = db.execute(delete(EnrichmentCacheEntry).where(EnrichmentCacheEntry.expires_at <= cutoff))
    db.commit()
    return int(result.rowcount or 0)


def purge_metrics_before(db: Session, cutoff: datetime) -> int:
    result = db.execute(delete(EnrichmentMetric).where(EnrichmentMetric.created_at < cutoff))
    db.commit()
    return int(result.rowcount or 0)


@celery_app.task(name="company_enrichment.workers.maintenance_tasks.purge_expired_cache_entries")
def purge_expired_cache_entries():
    db = SessionLocal()
    try:
        removed = purge_expired_cache(db)
        logger.info("maintenance.cache_purged", removed=removed)
        return {"removed": removed}
    finally:
        db.close()


@celery_app.task(name="company_enrichment.workers.maintenance_tasks.purge_old_metrics")
def purge_old_metrics(retention_days: Optional[int] = None):
    days = int(retention_days or settings.metrics_retention_days)
    cutoff = datetime.now(timezone.utc) - timedelta(days=max(1, days))
    db = SessionLocal()
    try:
        removed = purge_metrics_before(db, cutoff)
        logger.info("maintenance.metrics_purged", removed=removed, retention_days=days)
        return {"removed": removed, "retention_days": days}
    finally:
        db.close()
