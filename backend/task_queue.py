"""Celery app for work that must not hold up a request (account emails)."""

from celery import Celery

import config

EMAIL_TASK_MAX_RETRIES = max(0, config.EMAIL_TASK_MAX_RETRIES)

# Email tasks are fire-and-forget, so no result backend is configured.
celery_app = Celery("fined_mentor", broker=config.CELERY_BROKER_URL, include=["tasks.email_delivery"])

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    broker_connection_retry_on_startup=True,
    task_acks_late=True,
    task_ignore_result=True,
    task_default_queue=config.CELERY_EMAIL_QUEUE,
    task_routes={"tasks.email_delivery.*": {"queue": config.CELERY_EMAIL_QUEUE}},
)
