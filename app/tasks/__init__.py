"""Celery app configuration and task registry"""

from celery import Celery
from app.config import get_settings

settings = get_settings()

# Celery app
celery_app = Celery(
    "avito_crm",
    broker=settings.CELERY_BROKER_URL or settings.REDIS_URL,
    backend=settings.CELERY_RESULT_BACKEND or settings.REDIS_URL,
    include=["app.tasks.maintenance"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task settings
    task_soft_time_limit=120,  # 2 minutes soft limit
    task_time_limit=180,       # 3 minutes hard limit
    task_acks_late=True,       # Acknowledge after task completion
    worker_prefetch_multiplier=1,  # One task at a time per worker

    # Retry settings
    task_default_retry_delay=30,
    task_max_retries=3,

    # Beat schedule (periodic tasks)
    beat_schedule={
        "reconcile-unread-counts-every-5min": {
            "task": "app.tasks.maintenance.reconcile_unread_counts",
            "schedule": 300.0,  # Every 5 minutes
        },
        "prune-webhook-events-daily": {
            "task": "app.tasks.maintenance.prune_webhook_events",
            "schedule": 86400.0,  # Every 24 hours
        },
    },
)
