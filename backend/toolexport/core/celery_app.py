"""Celery application configuration.

- A maintenance queue for scheduled retention work
- Import-safe defaults (memory broker) for unit tests
"""

from __future__ import annotations

from celery import Celery
from celery.schedules import crontab
from kombu import Queue

from toolexport.core.config import settings


def _default_broker() -> str:
    # Keep imports safe in dev/tests even without Redis.
    return settings.CELERY_BROKER_URL or "memory://"


def _default_backend() -> str:
    # Cache-like in-memory backend for tests.
    return settings.CELERY_RESULT_BACKEND or "cache+memory://"


celery_app = Celery(
    "toolexport",
    broker=_default_broker(),
    backend=_default_backend(),
    include=[
        "toolexport.tasks.maintenance",
    ],
)


celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_default_queue="q.maintenance",
    task_queues=(
        Queue("q.maintenance"),
    ),
    task_routes={
        "toolexport.tasks.maintenance.cleanup_expired_packages_task": {"queue": "q.maintenance"},
    },
    beat_schedule={
        # Default schedule: 02:35 UTC daily
        "cleanup-expired-export-packages": {
            "task": "toolexport.tasks.maintenance.cleanup_expired_packages_task",
            "schedule": crontab(minute=35, hour=2),
            "args": (),
        },
    },
)
