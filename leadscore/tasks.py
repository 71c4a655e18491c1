import asyncio
import logging

from leadscore.core.celery_app import celery_app
from leadscore.core.config import settings
from leadscore.services.factory import worker_services

logger = logging.getLogger(__name__)


async def _run_analysis(job_id: str):
    async with worker_services() as services:
        return await services.pipeline.run(job_id)


@celery_app.task(bind=True, name="leadscore.tasks.run_analysis", max_retries=settings.TASK_MAX_RETRIES)
def run_analysis(self, job_id: str):
    """
    Run the analysis pipeline for one job.

    The pipeline records job-level failures itself and returns normally;
    anything raised here is infrastructure (database or Redis unreachable)
    and the task is retried with backoff.
    """
    try:
        status = asyncio.run(_run_analysis(job_id))
    except Exception as e:
        delay = 2 ** self.request.retries * 5
        logger.error(f"[{job_id}] Worker error ({e}), retry {self.request.retries + 1} in {delay}s")
        raise self.retry(exc=e, countdown=delay)

    logger.info(f"[{job_id}] Task finished with status {status.value if status else 'missing'}.")
    return status.value if status else None
