from celery import Celery

from commission_core.core.config import settings

celery_app = Celery(
    "commission_core",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["commission_core.tasks.async_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
)
