"""
Job Service — the entry points clients use: submit, observe, cancel, fetch result.

Submission does the cheap checks synchronously (balance, business profile,
duplicate guard) so the caller gets 402/404/409 immediately, then hands the
job id to the dispatcher. Everything else happens in the pipeline.
"""
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from leadscore.core.errors import (
    InternalError,
    InvalidRequestError,
    NotFoundError,
    NotInitializedError,
    PaymentRequiredError,
    ResultNotReadyError,
)
from leadscore.services.credit_ledger import CreditLedger
from leadscore.services.job_store import Job, JobStatus, JobStore, normalize_subject
from leadscore.services.job_types import JobType, JobTypeProfile
from leadscore.services.lead_store import BusinessStore
from leadscore.services.progress import ProgressHub, ProgressSnapshot

logger = logging.getLogger(__name__)

Dispatcher = Callable[[str], Awaitable[None]]


class JobService:

    def __init__(
        self,
        jobs: JobStore,
        ledger: CreditLedger,
        businesses: BusinessStore,
        progress: ProgressHub,
        dispatch: Dispatcher,
    ):
        self.jobs = jobs
        self.ledger = ledger
        self.businesses = businesses
        self.progress = progress
        self.dispatch = dispatch

    async def submit(self, account_id: str, subject_id: str, job_type: str, business_profile_id: str) -> Job:
        """
        Create and enqueue a job.

        Raises:
            InvalidRequestError: empty subject or unknown job type.
            PaymentRequiredError: balance below the job type's cost.
            NotFoundError: business profile does not exist for this account.
            ConflictError: a job for this (account, subject) is already in flight.
        """
        subject = normalize_subject(subject_id or "")
        if not subject:
            raise InvalidRequestError("subject_id is required")
        try:
            job_type = JobType(job_type).value
        except ValueError:
            raise InvalidRequestError(f"Unknown job type: {job_type}")

        cost = JobTypeProfile.for_type(job_type).credit_cost
        if not await self.ledger.has_sufficient_credits(account_id, cost):
            raise PaymentRequiredError(f"Insufficient credits: {cost} required")

        if await self.businesses.get_profile(business_profile_id, account_id) is None:
            raise NotFoundError(f"Business profile {business_profile_id} not found")

        job = await self.jobs.create_job_async(account_id, subject, business_profile_id, job_type)
        actor = self.progress.actor(job.job_id)
        await actor.initialize(account_id, subject, job_type)

        try:
            await self.dispatch(job.job_id)
        except Exception as e:
            logger.error(f"[{job.job_id}] Dispatch failed: {e}")
            await self.jobs.fail_job(job.job_id, "Could not enqueue job")
            await actor.fail("Could not enqueue job")
            raise InternalError("Could not enqueue job") from e

        logger.info(f"[{job.job_id}] Submitted {job_type} analysis of @{subject} for {account_id}.")
        return job

    async def _owned_job(self, job_id: str, account_id: Optional[str]) -> Job:
        job = await self.jobs.get_job_async(job_id)
        if job is None or (account_id is not None and job.account_id != account_id):
            raise NotFoundError(f"Job {job_id} not found")
        return job

    async def get_progress(self, job_id: str, account_id: Optional[str] = None) -> ProgressSnapshot:
        snapshot = await self.progress.actor(job_id).read()
        if snapshot is None or (account_id is not None and snapshot.account_id != account_id):
            raise NotFoundError(f"No progress for job {job_id}")
        return snapshot

    async def subscribe_progress(self, job_id: str, account_id: Optional[str] = None) -> AsyncIterator[Dict[str, Any]]:
        await self.get_progress(job_id, account_id)
        return self.progress.actor(job_id).subscribe()

    async def cancel(self, job_id: str, account_id: Optional[str] = None) -> JobStatus:
        """
        Cancel an in-flight job. The store transition decides the race with
        completion; the actor is only told once that transition succeeded.
        """
        job = await self._owned_job(job_id, account_id)
        if job.status.is_terminal:
            logger.info(f"[{job_id}] Cancel ignored, job already {job.status.value}.")
            return job.status

        if not await self.jobs.cancel_job(job_id):
            return (await self._owned_job(job_id, account_id)).status

        try:
            await self.progress.actor(job_id).cancel()
        except NotInitializedError:
            logger.warning(f"[{job_id}] Cancelled without live progress state.")
        return JobStatus.CANCELLED

    async def get_result(self, job_id: str, account_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Raises:
            ResultNotReadyError: job is still pending or processing.
            NotFoundError: unknown job, or it ended without a result.
        """
        job = await self._owned_job(job_id, account_id)
        if not job.status.is_terminal:
            raise ResultNotReadyError(f"Job {job_id} is still {job.status.value}")
        if job.status != JobStatus.COMPLETE or job.result is None:
            reason = job.error_message or job.status.value
            raise NotFoundError(f"Job {job_id} has no result ({reason})")
        return job.result
