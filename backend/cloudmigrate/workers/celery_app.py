from celery import Celery

from cloudmigrate.core.config import settings

celery_app = Celery("cloudmigrate", broker=settings.redis_dsn, backend=settings.redis_dsn, include=["cloudmigrate.workers.tasks"])
celery_app.conf.update(
    task_track_started=True,
    task_serializer="json",
    result_serializer="json",
    task_acks_late=True,
    worker_prefetch_multiplier=1,
)
