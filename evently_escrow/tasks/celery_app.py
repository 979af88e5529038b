"""
Celery application configuration for background tasks.
"""

from celery import Celery
from ..config import get_settings

settings = get_settings()

# Create Celery app
celery_app = Celery(
    "evently_escrow",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "evently_escrow.tasks.settlement_tasks",
    ]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=30 * 60,  # 30 minutes
    task_soft_time_limit=25 * 60,  # 25 minutes
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,
)

# Periodic tasks configuration
celery_app.conf.beat_schedule = {
    "retry-pending-refunds": {
        "task": "retry_pending_refunds_task",
        "schedule": settings.refund_retry_interval_seconds,
    },
    "retry-pending-finalizations": {
        "task": "retry_pending_finalizations_task",
        "schedule": settings.refund_retry_interval_seconds,
    },
}
