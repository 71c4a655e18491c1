"""
pipeline.py
~~~~~~~~~~~
The job orchestrator: one sequential coroutine per job driven by ``STEPS``.

Each step reports ``(progress, label)`` to the job's progress actor before it
runs. A failure after credits were reserved is compensated by a refund, and
the job is marked failed. Cancellation is observed between steps: the
orchestrator stops advancing and refunds whatever it reserved. Completed
steps are never reverted.

Running a job that is already terminal is a no-op, and the reservation is
idempotent per job id, so queue redelivery never double-charges.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from leadscore.core.config import settings
from leadscore.core.errors import (
    AlreadyInitializedError,
    ConflictError,
    JobCancelledError,
    NotFoundError,
    PipelineError,
)
from leadscore.services.credit_ledger import CreditLedger
from leadscore.services.generation import ScoreGenerator, ScoreResult
from leadscore.services.job_store import Job, JobStatus, JobStore
from leadscore.services.job_types import JobTypeProfile
from leadscore.services.lead_store import BusinessStore, LeadStore
from leadscore.services.metrics import JobMetrics, MetricsRecorder
from leadscore.services.profile_cache import ProfileCache
from leadscore.services.progress import ProgressActor, ProgressHub
from leadscore.services.providers import ProviderChain

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Step:
    name: str
    progress: int
    label: str
    compensate: bool
    retries: int = 0


STEPS: tuple[Step, ...] = (
    Step("check_duplicate",   5,   "Checking for duplicate analysis", compensate=False),
    Step("reserve_credits",   10,  "Reserving credits",               compensate=False),
    Step("load_context",      15,  "Loading business profile",        compensate=True),
    Step("check_cache",       20,  "Checking profile cache",          compensate=True),
    Step("fetch_profile",     30,  "Fetching profile data",           compensate=True, retries=1),
    Step("generate_score",    50,  "Scoring profile",                 compensate=True),
    Step("upsert_lead",       80,  "Saving lead",                     compensate=True),
    Step("save_result",       90,  "Saving results",                  compensate=True),
    Step("complete_progress", 100, "Complete",                        compensate=False),
)


@dataclass
class JobContext:
    """State accumulated while one job moves through the steps."""
    job: Job
    config: JobTypeProfile
    started: float = field(default_factory=time.perf_counter)
    reserved: bool = False
    saved: bool = False
    business: Optional[dict[str, Any]] = None
    profile: Optional[dict[str, Any]] = None
    provider: Optional[str] = None
    cache_hit: bool = False
    fetch_ms: float = 0.0
    score: Optional[ScoreResult] = None
    lead_id: Optional[str] = None
    result: Optional[dict[str, Any]] = None


class AnalysisPipeline:

    def __init__(
        self,
        jobs: JobStore,
        ledger: CreditLedger,
        businesses: BusinessStore,
        leads: LeadStore,
        cache: ProfileCache,
        providers: ProviderChain,
        generator: ScoreGenerator,
        progress: ProgressHub,
        metrics: MetricsRecorder,
        refund_attempts: int = settings.REFUND_MAX_ATTEMPTS,
        refund_base_delay: float = settings.REFUND_BASE_DELAY_SEC,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.jobs = jobs
        self.ledger = ledger
        self.businesses = businesses
        self.leads = leads
        self.cache = cache
        self.providers = providers
        self.generator = generator
        self.progress = progress
        self.metrics = metrics
        self.refund_attempts = refund_attempts
        self.refund_base_delay = refund_base_delay
        self.sleep = sleep

        self._handlers: dict[str, Callable[[JobContext, ProgressActor], Awaitable[None]]] = {
            "check_duplicate": self._check_duplicate,
            "reserve_credits": self._reserve_credits,
            "load_context": self._load_context,
            "check_cache": self._check_cache,
            "fetch_profile": self._fetch_profile,
            "generate_score": self._generate_score,
            "upsert_lead": self._upsert_lead,
            "save_result": self._save_result,
            "complete_progress": self._complete_progress,
        }

    async def run(self, job_id: str) -> Optional[JobStatus]:
        """
        Execute every step for ``job_id`` and return the final status.
        Never raises for job-level failures; those end in a terminal status.
        """
        job = await self.jobs.get_job_async(job_id)
        if job is None:
            logger.error(f"[{job_id}] Job not found, nothing to run.")
            return None
        if job.status.is_terminal:
            logger.info(f"[{job_id}] Already {job.status.value}, skipping redelivery.")
            return job.status

        actor = self.progress.actor(job_id)
        if await actor.read() is None:
            try:
                await actor.initialize(job.account_id, job.subject_id, job.job_type)
            except AlreadyInitializedError:
                pass

        await self.jobs.mark_processing(job_id)
        ctx = JobContext(job=job, config=JobTypeProfile.for_type(job.job_type))
        logger.info(f"[{job_id}] Pipeline started ({job.job_type} @{job.subject_id}).")

        for step in STEPS:
            try:
                await actor.update(step.progress, step.label)
                await self._run_step(step, ctx, actor)
            except Exception as e:
                if ctx.saved:
                    # Job record is complete; progress pushes past this point are best-effort
                    logger.error(f"[{job_id}] Result saved but {step.name} failed: {e}")
                    break
                if isinstance(e, JobCancelledError):
                    return await self._handle_cancel(ctx, step)
                return await self._handle_failure(ctx, step, e, actor)

        await self._record_metrics(ctx)
        logger.info(f"[{job_id}] Pipeline complete in {(time.perf_counter() - ctx.started) * 1000:.0f}ms.")
        return JobStatus.COMPLETE

    async def _run_step(self, step: Step, ctx: JobContext, actor: ProgressActor) -> None:
        handler = self._handlers[step.name]
        for attempt in range(step.retries + 1):
            try:
                await handler(ctx, actor)
                return
            except PipelineError as e:
                if e.retryable and attempt < step.retries:
                    logger.warning(f"[{ctx.job.job_id}] {step.name} failed ({e.message}), retrying.")
                    continue
                raise

    # ─── Steps ───────────────────────────────────────────────────────────────

    async def _check_duplicate(self, ctx: JobContext, actor: ProgressActor) -> None:
        job = ctx.job
        existing = await self.jobs.find_in_flight(job.account_id, job.subject_id, exclude_job_id=job.job_id)
        if existing:
            raise ConflictError(existing_job_id=existing.job_id)

    async def _reserve_credits(self, ctx: JobContext, actor: ProgressActor) -> None:
        job = ctx.job
        await self.ledger.reserve(
            job.account_id, ctx.config.credit_cost, job.job_id,
            description=f"{job.job_type} analysis of @{job.subject_id}",
        )
        ctx.reserved = True
        await self.jobs.set_credits_reserved(job.job_id, ctx.config.credit_cost)

    async def _load_context(self, ctx: JobContext, actor: ProgressActor) -> None:
        job = ctx.job
        ctx.business = await self.businesses.get_profile(job.business_profile_id, job.account_id)
        if ctx.business is None:
            raise NotFoundError(f"Business profile {job.business_profile_id} not found")

    async def _check_cache(self, ctx: JobContext, actor: ProgressActor) -> None:
        cached = await self.cache.get(ctx.job.subject_id, ctx.config.freshness_tier)
        if cached:
            ctx.profile = cached.profile
            ctx.provider = cached.provider
            ctx.cache_hit = True

    async def _fetch_profile(self, ctx: JobContext, actor: ProgressActor) -> None:
        if ctx.cache_hit:
            return
        fetched = await self.providers.fetch(ctx.job.subject_id, ctx.job.job_type)
        ctx.profile = fetched.profile
        ctx.provider = fetched.provider
        ctx.fetch_ms = fetched.elapsed_ms
        await self.cache.set(ctx.job.subject_id, fetched.profile, fetched.provider)

    async def _generate_score(self, ctx: JobContext, actor: ProgressActor) -> None:
        ctx.score = await self.generator.generate(ctx.business, ctx.profile, ctx.job.job_type)

    async def _upsert_lead(self, ctx: JobContext, actor: ProgressActor) -> None:
        ctx.lead_id = await self.leads.upsert_lead(ctx.job.account_id, ctx.job.business_profile_id, ctx.profile)

    async def _save_result(self, ctx: JobContext, actor: ProgressActor) -> None:
        job, profile, score = ctx.job, ctx.profile, ctx.score
        ctx.result = {
            "job_id": job.job_id,
            "subject_id": job.subject_id,
            "job_type": job.job_type,
            "lead_id": ctx.lead_id,
            "score": score.score,
            "summary": score.summary,
            "model_used": score.model_used,
            "provider": ctx.provider,
            "cache_hit": ctx.cache_hit,
            "data_quality": profile.get("data_quality"),
            "credits_used": ctx.config.credit_cost,
            "profile": {
                "username": profile["username"],
                "display_name": profile.get("display_name"),
                "follower_count": profile.get("follower_count", 0),
                "is_verified": profile.get("is_verified", False),
                "profile_pic_url": profile.get("profile_pic_url"),
            },
        }
        if not await self.jobs.complete_job(job.job_id, ctx.result):
            current = await self.jobs.get_job_async(job.job_id)
            if current and current.status == JobStatus.CANCELLED:
                raise JobCancelledError(f"Job {job.job_id} was cancelled")
            raise PipelineError(f"Job {job.job_id} could not be completed from status "
                                f"{current.status.value if current else 'missing'}")
        ctx.saved = True

    async def _complete_progress(self, ctx: JobContext, actor: ProgressActor) -> None:
        await actor.complete(ctx.result)

    # ─── Outcomes ────────────────────────────────────────────────────────────

    async def _handle_failure(self, ctx: JobContext, step: Step, error: Exception, actor: ProgressActor) -> JobStatus:
        job_id = ctx.job.job_id
        if isinstance(error, PipelineError):
            message = error.message
            logger.error(f"[{job_id}] Step {step.name} failed: {error.code} {message}")
        else:
            message = str(error) or type(error).__name__
            logger.exception(f"[{job_id}] Step {step.name} raised unexpectedly")

        if (step.compensate or ctx.reserved) and not ctx.saved:
            await self._refund(ctx, reason=f"Refund: {step.name} failed")

        await self.jobs.fail_job(job_id, message)
        try:
            await actor.fail(message)
        except Exception as e:
            logger.error(f"[{job_id}] Could not push failure to progress: {e}")
        return JobStatus.FAILED

    async def _handle_cancel(self, ctx: JobContext, step: Step) -> JobStatus:
        job_id = ctx.job.job_id
        logger.info(f"[{job_id}] Cancelled before {step.name}, stopping.")
        if ctx.reserved and not ctx.saved:
            await self._refund(ctx, reason="Refund: job cancelled")
        await self.jobs.cancel_job(job_id)
        return JobStatus.CANCELLED

    async def _refund(self, ctx: JobContext, reason: str) -> bool:
        """Refund with exponential backoff. A final failure is logged for reconciliation."""
        job = ctx.job
        for attempt in range(1, self.refund_attempts + 1):
            try:
                await self.ledger.refund(job.account_id, job.job_id, description=reason)
                return True
            except Exception as e:
                if attempt == self.refund_attempts:
                    logger.critical(
                        f"[{job.job_id}] Refund failed after {attempt} attempts, "
                        f"manual reconciliation required for {job.account_id}: {e}"
                    )
                    return False
                delay = self.refund_base_delay * (2 ** (attempt - 1))
                logger.warning(f"[{job.job_id}] Refund attempt {attempt} failed ({e}), retrying in {delay:.1f}s")
                await self.sleep(delay)
        return False

    async def _record_metrics(self, ctx: JobContext) -> None:
        score = ctx.score
        metrics = JobMetrics(
            job_id=ctx.job.job_id,
            provider=ctx.provider,
            cache_hit=ctx.cache_hit,
            fetch_ms=ctx.fetch_ms,
            generation_ms=score.response_time_ms if score else 0.0,
            total_ms=(time.perf_counter() - ctx.started) * 1000,
            prompt_tokens=score.prompt_tokens if score else 0,
            completion_tokens=score.completion_tokens if score else 0,
            ai_cost_usd=score.cost_usd if score else 0.0,
            scraping_cost_usd=0.0 if ctx.cache_hit else ctx.config.scraping_cost_usd,
        )
        try:
            await self.metrics.record(metrics)
        except Exception as e:
            logger.error(f"[{ctx.job.job_id}] Metrics not recorded: {e}")
