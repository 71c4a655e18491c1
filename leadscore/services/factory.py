"""
Wiring: builds stores, backends and the pipeline from ``settings``.

The API process holds one ``Services`` container for its lifetime. Celery
workers build a fresh container per task because ``asyncio.run`` gives each
task its own event loop, and Redis/httpx connections are bound to the loop
that opened them.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Optional

import httpx
import redis.asyncio as aioredis

from leadscore.core.config import settings
from leadscore.services.credit_ledger import CreditLedger
from leadscore.services.generation import ScoreGenerator
from leadscore.services.job_service import Dispatcher, JobService
from leadscore.services.job_store import JobStore
from leadscore.services.lead_store import BusinessStore, LeadStore
from leadscore.services.metrics import MetricsRecorder
from leadscore.services.pipeline import AnalysisPipeline
from leadscore.services.profile_cache import MemoryCacheBackend, ProfileCache, RedisCacheBackend
from leadscore.services.progress import MemoryProgressBackend, ProgressHub, RedisProgressBackend
from leadscore.services.providers import ApifyClient, ProviderChain

logger = logging.getLogger(__name__)


@dataclass
class Services:
    jobs: JobStore
    ledger: CreditLedger
    businesses: BusinessStore
    progress: ProgressHub
    pipeline: AnalysisPipeline
    job_service: Optional[JobService] = None
    redis_client: Optional[aioredis.Redis] = None
    http_client: Optional[httpx.AsyncClient] = None
    _tasks: set = field(default_factory=set)

    async def aclose(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self.http_client is not None:
            await self.http_client.aclose()
        if self.redis_client is not None:
            await self.redis_client.aclose()


def build_services(
    redis_client: Optional[aioredis.Redis] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    generator: Optional[ScoreGenerator] = None,
    providers: Optional[ProviderChain] = None,
) -> Services:
    """Assemble every component. Tests pass fakes for the external edges."""
    if settings.STATE_BACKEND == "redis" and redis_client is None:
        redis_client = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
    if http_client is None:
        http_client = httpx.AsyncClient()

    if settings.STATE_BACKEND == "redis":
        cache = ProfileCache(RedisCacheBackend(redis_client))
        progress = ProgressHub(RedisProgressBackend(redis_client))
    else:
        cache = ProfileCache(MemoryCacheBackend())
        progress = ProgressHub(MemoryProgressBackend())

    jobs = JobStore()
    ledger = CreditLedger()
    businesses = BusinessStore()
    pipeline = AnalysisPipeline(
        jobs=jobs,
        ledger=ledger,
        businesses=businesses,
        leads=LeadStore(),
        cache=cache,
        providers=providers or ProviderChain(ApifyClient(http_client, settings.APIFY_API_TOKEN or "")),
        generator=generator or ScoreGenerator(),
        progress=progress,
        metrics=MetricsRecorder(),
    )
    services = Services(
        jobs=jobs,
        ledger=ledger,
        businesses=businesses,
        progress=progress,
        pipeline=pipeline,
        redis_client=redis_client if settings.STATE_BACKEND == "redis" else None,
        http_client=http_client,
    )
    services.job_service = JobService(jobs, ledger, businesses, progress, _dispatcher_for(services))
    return services


def _dispatcher_for(services: Services) -> Dispatcher:
    if settings.TASK_BACKEND == "inline":
        async def dispatch_inline(job_id: str) -> None:
            # Held until done; the loop only keeps weak references to tasks
            task = asyncio.create_task(services.pipeline.run(job_id))
            services._tasks.add(task)
            task.add_done_callback(services._tasks.discard)
        return dispatch_inline

    async def dispatch_celery(job_id: str) -> None:
        from leadscore.tasks import run_analysis
        await asyncio.to_thread(run_analysis.delay, job_id)
        logger.info(f"[{job_id}] Enqueued on Celery.")
    return dispatch_celery


@asynccontextmanager
async def worker_services():
    """Short-lived container for one Celery task."""
    services = build_services()
    try:
        yield services
    finally:
        await services.aclose()
