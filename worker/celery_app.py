from celery import Celery
from app.core.config import settings

celery = Celery(
    "portal-sync-worker",
    broker=settings.rabbitmq_url,
    backend=settings.redis_url,
    include=["worker.tasks"],
)

celery.conf.update(
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_default_queue="default",
    task_routes={
        "worker.tasks.drain_portal_jobs": {"queue": "portal-jobs"},
    },
    # the drain is re-entrant, overlapping beats only split the queue
    beat_schedule={
        "drain-portal-jobs": {
            "task": "worker.tasks.drain_portal_jobs",
            "schedule": float(settings.drain_interval_seconds),
        },
    },
)
