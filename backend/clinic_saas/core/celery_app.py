"""Celery application for the scheduled billing sweeps.

The broker and result backend default to ``REDIS_URL``. Sweeps are
idempotent, so a task lost with its worker is simply re-delivered.
"""

from celery import Celery

from clinic_saas.core.config import settings

celery_app = Celery(
    "clinic_saas",
    broker=settings.CELERY_BROKER_URL or settings.REDIS_URL,
    backend=settings.CELERY_RESULT_BACKEND or settings.REDIS_URL,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_routes={"billing.*": {"queue": "billing"}},
    task_soft_time_limit=540,
    task_time_limit=600,
    result_expires=86400,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

celery_app.autodiscover_tasks(["clinic_saas.modules.billing"])
