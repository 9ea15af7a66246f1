"""Celery app configuration.

The automation engine only produces tasks (survey dispatch); the consumers
live in the survey worker, so no task modules are included here.
"""

from celery import Celery
from deskflow.config import get_settings

settings = get_settings()

celery_app = Celery(
    "deskflow",
    broker=settings.CELERY_BROKER_URL or settings.REDIS_URL,
    backend=settings.CELERY_RESULT_BACKEND or settings.REDIS_URL,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Producer settings
    task_ignore_result=True,
    broker_connection_timeout=3,
    broker_connection_retry_on_startup=False,
    task_publish_retry=False,

    task_acks_late=True,
    worker_prefetch_multiplier=1,
)
