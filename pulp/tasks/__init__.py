"""Celery tasks for the PULP economy.

This module configures Celery and registers the periodic window and
settlement tasks. The beat schedule is empty while the PULP economy
feature flag is off.
"""

from celery import Celery
from celery.schedules import crontab

from pulp.config import get_settings

settings = get_settings()

# Create Celery application
celery_app = Celery(
    "pulp",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "pulp.tasks.windows",
        "pulp.tasks.settlement",
    ],
)

# Celery configuration
celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    # Timezone
    timezone="UTC",
    enable_utc=True,
    # Task behavior
    task_track_started=True,
    task_time_limit=300,  # 5 minute hard limit
    task_soft_time_limit=270,
    # Result expiration
    result_expires=3600,  # 1 hour
    # Worker settings
    worker_prefetch_multiplier=1,
    worker_concurrency=2,
)

PULP_BEAT_SCHEDULE = {
    # Open scheduled windows - every minute
    "open-due-windows": {
        "task": "pulp.tasks.windows.open_due_windows_task",
        "schedule": 60.0,
        "options": {"expires": 55},
    },
    # Lock windows whose countdown ran out - every 30 seconds
    "lock-expired-windows": {
        "task": "pulp.tasks.windows.lock_expired_windows_task",
        "schedule": 30.0,
        "options": {"expires": 25},
    },
    # Refund locked windows nobody settled - every hour at :15
    "expire-stale-windows": {
        "task": "pulp.tasks.windows.expire_stale_windows_task",
        "schedule": crontab(minute=15),
        "options": {"expires": 3540},
    },
    # Settle finalized rounds - every 5 minutes
    "settle-finalized-rounds": {
        "task": "pulp.tasks.settlement.settle_finalized_rounds_task",
        "schedule": 300.0,
        "options": {"expires": 280},
    },
}

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = PULP_BEAT_SCHEDULE if settings.pulp_economy_enabled else {}
