"""
test_pipeline.py
~~~~~~~~~~~~~~~~
End-to-end runs of the orchestrator against SQLite, in-memory state and
faked providers/model. Focus: no double charge, compensation on failure,
cancellation, and redelivery.
"""
import pytest

from leadscore.core.errors import (
    ConflictError,
    NotFoundError,
    PaymentRequiredError,
    ProviderPermanentError,
    ProviderTransientError,
    ResultNotReadyError,
)
from leadscore.services.credit_ledger import REFUND, RESERVATION
from leadscore.services.job_store import JobStatus
from leadscore.services.lead_store import LeadStore
from leadscore.services.metrics import MetricsRecorder
from leadscore.services.pipeline import STEPS
from leadscore.services.progress import ProgressActor

from conftest import ACCOUNT, FakeProviders, score_json


async def submit(job_service, ledger, business_profile_id, subject="nike", job_type="light", credits=10):
    if credits:
        await ledger.grant(ACCOUNT, credits)
    job = await job_service.submit(ACCOUNT, subject, job_type, business_profile_id)
    return job.job_id


class TestSuccess:

    async def test_nike_light_analysis(self, job_service, ledger, pipeline, hub, providers, business_profile_id, dispatched):
        job_id = await submit(job_service, ledger, business_profile_id, subject="@Nike")
        assert dispatched == [job_id]

        status = await pipeline.run(job_id)

        assert status == JobStatus.COMPLETE
        result = await job_service.get_result(job_id, ACCOUNT)
        assert result["score"] == 82
        assert result["subject_id"] == "nike"
        assert result["provider"] == "profile_basic"
        assert result["cache_hit"] is False
        assert result["credits_used"] == 1

        snapshot = await hub.actor(job_id).read()
        assert snapshot.status == JobStatus.COMPLETE
        assert snapshot.progress == 100
        assert snapshot.result == result

        assert await ledger.get_balance(ACCOUNT) == 9
        assert providers.calls == [("nike", "light")]

        lead = await LeadStore().get_lead(ACCOUNT, business_profile_id, "nike")
        assert lead["lead_id"] == result["lead_id"]
        assert lead["follower_count"] == 300_000_000

        metrics = await MetricsRecorder().get(job_id)
        assert metrics["provider"] == "profile_basic"
        assert metrics["prompt_tokens"] == 400
        assert metrics["scraping_cost_usd"] > 0

    async def test_progress_failure_after_save_keeps_job_complete(self, job_service, ledger, pipeline, hub, business_profile_id, monkeypatch):
        job_id = await submit(job_service, ledger, business_profile_id)

        async def broken_complete(self, result):
            raise ConnectionError("redis down")

        monkeypatch.setattr(ProgressActor, "complete", broken_complete)

        assert await pipeline.run(job_id) == JobStatus.COMPLETE

        job = await job_service.jobs.get_job_async(job_id)
        assert job.status == JobStatus.COMPLETE
        assert job.error_message is None
        assert (await job_service.get_result(job_id, ACCOUNT))["score"] == 82
        assert await ledger.get_balance(ACCOUNT) == 9
        assert [t.transaction_type for t in await ledger.transactions_for_job(job_id)] == [RESERVATION]
        assert await MetricsRecorder().get(job_id) is not None
        assert (await hub.actor(job_id).read()).status != JobStatus.FAILED

    async def test_second_job_uses_cache(self, job_service, ledger, pipeline, providers, business_profile_id):
        first = await submit(job_service, ledger, business_profile_id)
        await pipeline.run(first)
        second = await submit(job_service, ledger, business_profile_id, credits=0)

        await pipeline.run(second)

        result = await job_service.get_result(second, ACCOUNT)
        assert result["cache_hit"] is True
        assert len(providers.calls) == 1
        assert (await MetricsRecorder().get(second))["scraping_cost_usd"] == 0

    async def test_deep_job_costs_more(self, job_service, ledger, pipeline, business_profile_id):
        job_id = await submit(job_service, ledger, business_profile_id, job_type="deep")

        await pipeline.run(job_id)

        assert await ledger.get_balance(ACCOUNT) == 8
        assert (await job_service.get_result(job_id, ACCOUNT))["model_used"] == "gpt-4o"

    async def test_transient_fetch_failure_is_retried_once(self, job_service, ledger, pipeline, providers, business_profile_id):
        providers.outcomes = [ProviderTransientError("all providers busy")]
        job_id = await submit(job_service, ledger, business_profile_id)

        assert await pipeline.run(job_id) == JobStatus.COMPLETE
        assert len(providers.calls) == 2

    async def test_step_progress_is_reported_in_order(self, job_service, ledger, pipeline, business_profile_id, monkeypatch):
        job_id = await submit(job_service, ledger, business_profile_id)
        seen = []
        actor_update = ProgressActor.update

        async def spy(self, progress, label, *args, **kwargs):
            seen.append(progress)
            return await actor_update(self, progress, label, *args, **kwargs)

        monkeypatch.setattr(ProgressActor, "update", spy)
        await pipeline.run(job_id)

        assert seen == [step.progress for step in STEPS]


class TestFailure:

    async def test_malformed_model_output_refunds(self, job_service, ledger, pipeline, hub, openai_client, business_profile_id):
        openai_client.responses = ["{not json"]
        job_id = await submit(job_service, ledger, business_profile_id)

        status = await pipeline.run(job_id)

        assert status == JobStatus.FAILED
        transactions = await ledger.transactions_for_job(job_id)
        assert [t.transaction_type for t in transactions] == [RESERVATION, REFUND]
        assert sum(t.amount for t in transactions) == 0
        assert await ledger.get_balance(ACCOUNT) == 10
        assert len(openai_client.calls) == 3

        snapshot = await hub.actor(job_id).read()
        assert snapshot.status == JobStatus.FAILED
        assert snapshot.progress == 50
        assert "validation" in snapshot.error_message

        with pytest.raises(NotFoundError):
            await job_service.get_result(job_id, ACCOUNT)
        job = await job_service.jobs.get_job_async(job_id)
        assert job.status == JobStatus.FAILED
        assert job.error_message == snapshot.error_message

    async def test_private_profile_refunds_without_fallback(self, job_service, ledger, pipeline, providers, business_profile_id):
        providers.outcomes = [ProviderPermanentError("Profile @nike is private")]
        job_id = await submit(job_service, ledger, business_profile_id)

        assert await pipeline.run(job_id) == JobStatus.FAILED
        assert len(providers.calls) == 1
        assert await ledger.get_balance(ACCOUNT) == 10
        assert (await job_service.jobs.get_job_async(job_id)).error_message == "Profile @nike is private"

    async def test_insufficient_credits_at_reservation(self, jobs, ledger, pipeline, hub, business_profile_id):
        job = await jobs.create_job_async(ACCOUNT, "nike", business_profile_id, "light")
        await hub.actor(job.job_id).initialize(ACCOUNT, "nike", "light")

        assert await pipeline.run(job.job_id) == JobStatus.FAILED
        assert await ledger.transactions_for_job(job.job_id) == []
        assert "Insufficient" in (await jobs.get_job_async(job.job_id)).error_message

    async def test_missing_business_profile_refunds(self, jobs, ledger, pipeline, hub):
        await ledger.grant(ACCOUNT, 5)
        job = await jobs.create_job_async(ACCOUNT, "nike", "biz_deleted", "light")
        await hub.actor(job.job_id).initialize(ACCOUNT, "nike", "light")

        assert await pipeline.run(job.job_id) == JobStatus.FAILED
        assert await ledger.get_balance(ACCOUNT) == 5
        assert (await hub.actor(job.job_id).read()).status == JobStatus.FAILED

    async def test_refund_failure_is_logged_not_raised(self, job_service, ledger, pipeline, openai_client, business_profile_id, caplog):
        openai_client.responses = ["{not json"]
        job_id = await submit(job_service, ledger, business_profile_id)
        delays = []

        async def broken_refund(*args, **kwargs):
            raise ConnectionError("database unavailable")

        async def record_sleep(seconds):
            delays.append(seconds)

        pipeline.ledger.refund = broken_refund
        pipeline.sleep = record_sleep

        assert await pipeline.run(job_id) == JobStatus.FAILED
        assert delays == [0.5, 1.0]
        assert "manual reconciliation" in caplog.text
        assert await ledger.get_balance(ACCOUNT) == 9


class TestCancellation:

    async def test_cancel_before_run(self, job_service, ledger, pipeline, business_profile_id):
        job_id = await submit(job_service, ledger, business_profile_id)

        assert await job_service.cancel(job_id, ACCOUNT) == JobStatus.CANCELLED
        assert await pipeline.run(job_id) == JobStatus.CANCELLED
        assert await ledger.transactions_for_job(job_id) == []
        assert await ledger.get_balance(ACCOUNT) == 10

    async def test_cancel_mid_run_stops_and_refunds(self, job_service, ledger, pipeline, hub, openai_client, business_profile_id):
        job_ids = []

        async def cancel_during_fetch(subject_id):
            await job_service.cancel(job_ids[0], ACCOUNT)

        pipeline.providers = FakeProviders(on_fetch=cancel_during_fetch)
        job_ids.append(await submit(job_service, ledger, business_profile_id))

        assert await pipeline.run(job_ids[0]) == JobStatus.CANCELLED
        assert openai_client.calls == []
        assert await ledger.get_balance(ACCOUNT) == 10
        snapshot = await hub.actor(job_ids[0]).read()
        assert snapshot.status == JobStatus.CANCELLED
        assert snapshot.progress == 30

    async def test_cancel_after_complete_keeps_result(self, job_service, ledger, pipeline, business_profile_id):
        job_id = await submit(job_service, ledger, business_profile_id)
        await pipeline.run(job_id)

        assert await job_service.cancel(job_id, ACCOUNT) == JobStatus.COMPLETE
        assert (await job_service.get_result(job_id, ACCOUNT))["score"] == 82
        assert await ledger.get_balance(ACCOUNT) == 9


class TestRedelivery:

    async def test_second_delivery_is_noop(self, job_service, ledger, pipeline, providers, business_profile_id):
        job_id = await submit(job_service, ledger, business_profile_id)

        assert await pipeline.run(job_id) == JobStatus.COMPLETE
        assert await pipeline.run(job_id) == JobStatus.COMPLETE

        assert len(await ledger.transactions_for_job(job_id)) == 1
        assert len(providers.calls) == 1

    async def test_redelivery_of_interrupted_job_does_not_double_charge(self, job_service, ledger, pipeline, business_profile_id):
        job_id = await submit(job_service, ledger, business_profile_id)
        # Worker died after reserving
        await ledger.reserve(ACCOUNT, 1, job_id)
        await job_service.jobs.mark_processing(job_id)

        assert await pipeline.run(job_id) == JobStatus.COMPLETE
        assert await ledger.get_balance(ACCOUNT) == 9

    async def test_redelivery_after_refund_fails_without_running(self, job_service, ledger, pipeline, providers, openai_client, business_profile_id):
        openai_client.responses = ["{not json"]
        job_id = await submit(job_service, ledger, business_profile_id)
        store_fail_job = pipeline.jobs.fail_job

        async def broken_fail_job(*args, **kwargs):
            raise ConnectionError("database unavailable")

        # Refund lands, then the worker loses the database before the job is marked failed
        pipeline.jobs.fail_job = broken_fail_job
        with pytest.raises(ConnectionError):
            await pipeline.run(job_id)
        pipeline.jobs.fail_job = store_fail_job
        assert (await job_service.jobs.get_job_async(job_id)).status == JobStatus.PROCESSING

        openai_client.responses = [score_json()]
        assert await pipeline.run(job_id) == JobStatus.FAILED

        transactions = await ledger.transactions_for_job(job_id)
        assert [t.transaction_type for t in transactions] == [RESERVATION, REFUND]
        assert await ledger.get_balance(ACCOUNT) == 10
        assert len(providers.calls) == 1
        job = await job_service.jobs.get_job_async(job_id)
        assert job.status == JobStatus.FAILED
        assert "refunded" in job.error_message
        with pytest.raises(NotFoundError):
            await job_service.get_result(job_id, ACCOUNT)

    async def test_unknown_job(self, pipeline):
        assert await pipeline.run("job_missing") is None


class TestSubmission:

    async def test_duplicate_submission_conflicts(self, job_service, ledger, business_profile_id, dispatched):
        first = await submit(job_service, ledger, business_profile_id)

        with pytest.raises(ConflictError) as exc_info:
            await job_service.submit(ACCOUNT, "NIKE", "light", business_profile_id)

        assert exc_info.value.existing_job_id == first
        assert dispatched == [first]

    async def test_requires_balance(self, job_service, business_profile_id):
        with pytest.raises(PaymentRequiredError):
            await job_service.submit(ACCOUNT, "nike", "light", business_profile_id)

    async def test_requires_business_profile(self, job_service, ledger):
        await ledger.grant(ACCOUNT, 1)
        with pytest.raises(NotFoundError):
            await job_service.submit(ACCOUNT, "nike", "light", "biz_unknown")

    async def test_result_not_ready(self, job_service, ledger, business_profile_id):
        job_id = await submit(job_service, ledger, business_profile_id)

        with pytest.raises(ResultNotReadyError):
            await job_service.get_result(job_id, ACCOUNT)

    async def test_other_accounts_cannot_see_job(self, job_service, ledger, business_profile_id):
        job_id = await submit(job_service, ledger, business_profile_id)

        with pytest.raises(NotFoundError):
            await job_service.get_progress(job_id, "acct_other")
        with pytest.raises(NotFoundError):
            await job_service.cancel(job_id, "acct_other")

    async def test_failed_dispatch_fails_the_job(self, jobs, ledger, businesses, hub, business_profile_id):
        from leadscore.core.errors import InternalError
        from leadscore.services.job_service import JobService

        async def broken_dispatch(job_id):
            raise ConnectionError("broker down")

        service = JobService(jobs, ledger, businesses, hub, broken_dispatch)
        await ledger.grant(ACCOUNT, 1)

        with pytest.raises(InternalError):
            await service.submit(ACCOUNT, "nike", "light", business_profile_id)

        assert await jobs.find_in_flight(ACCOUNT, "nike") is None
