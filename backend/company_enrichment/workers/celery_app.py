from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_process_init

from company_enrichment.config import get_settings
from company_enrichment.services.enrichment.observability import configure_logging

settings = get_settings()

celery_app = Celery(
    "company_enrichment",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["company_enrichment.workers.maintenance_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,
    task_soft_time_limit=240,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "company_enrichment.workers.maintenance_tasks.*": {"queue": "enrichment.maintenance"},
    },
    beat_schedule={
        "purge-expired-enrichment-cache": {
            "task": "company_enrichment.workers.maintenance_tasks.purge_expired_cache_entries",
            "schedule": crontab(minute=0),
        },
        "purge-old-enrichment-metrics": {
            "task": "company_enrichment.workers.maintenance_tasks.purge_old_metrics",
            "schedule": crontab(minute=30, hour=3),
        },
    },
)


@worker_process_init.connect
def _configure_worker_logging(**_kwargs):
    configure_logging(
        production=settings.is_production,
        service_name=f"{settings.service_name}-worker",
        level=settings.log_level,
    )
