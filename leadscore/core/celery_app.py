import logging

from celery import Celery
from celery.signals import setup_logging
from leadscore.core.config import settings


def get_celery_app() -> Celery:
    app = Celery(
        "leadscore_tasks",
        broker=settings.REDIS_URL,
        backend=settings.REDIS_URL,
        include=["leadscore.tasks"],
    )

    app.conf.update(
        result_expires=86400, # 24 hours
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        timezone="UTC",
        enable_utc=True,
        # Don't ack until the task returns. A worker that dies mid-job gets
        # its message redelivered, and the pipeline's idempotent steps absorb it.
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        broker_transport_options={"visibility_timeout": settings.TASK_VISIBILITY_TIMEOUT_SEC},
        worker_prefetch_multiplier=1,
    )
    return app


@setup_logging.connect
def configure_worker_logging(**kwargs):
    """Give worker processes the same log format and level as the API."""
    logging.basicConfig(level=settings.LOG_LEVEL, format=settings.LOG_FORMAT, force=True)


celery_app = get_celery_app()
