"""Job reconciler tests.

Tests cover the job lifecycle against a scripted provider gateway:
- Admission: credits are held when the job is created
- Submission: success, permanent rejection, transient retry up to the bound
- Observation: success settles once, failure and expiry refund once
- Replays and concurrent observations apply the ledger effect exactly once
"""

import asyncio
import json
from datetime import timedelta

import pytest

from genledger.core.timezone import utcnow
from genledger.models.generation_job import GenerationRequest, JobState
from genledger.models.ledger import LedgerOperation
from genledger.models.processed_event import EventSource
from genledger.repositories.ledger import LedgerBalance
from genledger.services.exceptions import (
    InsufficientCreditError,
    InvalidRequestError,
    JobNotFoundError,
    ProviderUnavailableError,
    RateLimitedError,
)
from genledger.services.image_generation.provider import (
    NormalizedStatus,
    ProviderState,
    normalize_kie_record,
)
from genledger.services.jobs.job_service import JobService
from genledger.services.jobs.reconciler import JobReconciler
from genledger.services.usage import ACTION_GENERATE_IMAGE
from genledger.workers.job_reconciliation_worker import recover_orphaned_jobs

OWNER = "user-1"
SUCCESS = NormalizedStatus(state=ProviderState.SUCCESS, result_ref="https://x/y.png")


@pytest.fixture
def job_service(uow_factory, settings):
    return JobService(uow_factory, settings)


@pytest.fixture
def reconciler(uow_factory, gateway, settings):
    return JobReconciler(uow_factory, gateway, settings)


async def _balance(uow_factory, owner_id: str = OWNER) -> LedgerBalance:
    async with await uow_factory() as uow:
        return await uow.ledger.get_balance(owner_id)


async def _job_operations(uow_factory, job_id) -> list[LedgerOperation]:
    async with await uow_factory() as uow:
        entries = await uow.ledger.list_entries(job_id=job_id)
    return [entry.operation for entry in entries]


async def _submitted_job(job_service, reconciler, fund, prompt: str = "A red fox in snow"):
    """Fund the owner with 100 credits and drive one job to 'waiting'."""
    await fund(OWNER, 100)
    job = await job_service.submit_job(OWNER, GenerationRequest(prompt=prompt))
    return await reconciler.submit(job.id)


# Admission


@pytest.mark.asyncio
async def test_submit_job_holds_cost(uow_factory, job_service, fund):
    """A new job is persisted as 'created' with its cost held."""
    await fund(OWNER, 100)

    job = await job_service.submit_job(OWNER, GenerationRequest(prompt="A red fox in snow"))

    assert job.state == JobState.CREATED
    assert job.cost_estimate == 18
    assert await _balance(uow_factory) == LedgerBalance(available=82, held=18)
    assert await _job_operations(uow_factory, job.id) == [LedgerOperation.HOLD]


@pytest.mark.asyncio
async def test_submit_job_with_insufficient_credit_persists_nothing(
    uow_factory, job_service, fund
):
    await fund(OWNER, 10)

    with pytest.raises(InsufficientCreditError):
        await job_service.submit_job(OWNER, GenerationRequest(prompt="A red fox in snow"))

    assert await job_service.list_jobs(OWNER) == []
    assert await _balance(uow_factory) == LedgerBalance(available=10, held=0)


@pytest.mark.asyncio
async def test_concurrent_submissions_admit_only_what_balance_covers(
    uow_factory, settings, fund
):
    """Balance 100 and cost 100: of two concurrent submissions exactly one is admitted."""
    service = JobService(uow_factory, settings.model_copy(update={"credits_per_image": 100}))
    await fund(OWNER, 100)

    results = await asyncio.gather(
        service.submit_job(OWNER, GenerationRequest(prompt="First prompt")),
        service.submit_job(OWNER, GenerationRequest(prompt="Second prompt")),
        return_exceptions=True,
    )

    admitted = [r for r in results if not isinstance(r, BaseException)]
    rejected = [r for r in results if isinstance(r, InsufficientCreditError)]
    assert len(admitted) == 1
    assert len(rejected) == 1
    assert len(await service.list_jobs(OWNER)) == 1
    assert await _balance(uow_factory) == LedgerBalance(available=0, held=100)


@pytest.mark.asyncio
async def test_get_job_hides_other_owners_jobs(job_service, fund):
    await fund(OWNER, 100)
    job = await job_service.submit_job(OWNER, GenerationRequest(prompt="A red fox in snow"))

    assert (await job_service.get_job(OWNER, job.id)).id == job.id
    with pytest.raises(JobNotFoundError):
        await job_service.get_job("someone-else", job.id)


# Submission


@pytest.mark.asyncio
async def test_submit_moves_job_to_waiting(uow_factory, job_service, reconciler, gateway, fund):
    job = await _submitted_job(job_service, reconciler, fund)

    assert job.state == JobState.WAITING
    assert job.provider_task_id == "task-1"
    assert [r.prompt for r in gateway.submitted] == ["A red fox in snow"]
    # Submission does not touch the ledger
    assert await _balance(uow_factory) == LedgerBalance(available=82, held=18)


@pytest.mark.asyncio
async def test_submit_is_noop_for_already_submitted_job(job_service, reconciler, gateway, fund):
    job = await _submitted_job(job_service, reconciler, fund)

    again = await reconciler.submit(job.id)

    assert again.state == JobState.WAITING
    assert len(gateway.submitted) == 1


@pytest.mark.asyncio
async def test_permanent_rejection_fails_job_and_refunds(
    uow_factory, job_service, reconciler, gateway, fund
):
    await fund(OWNER, 100)
    gateway.submit_results = [InvalidRequestError("Prompt rejected")]
    job = await job_service.submit_job(OWNER, GenerationRequest(prompt="A red fox in snow"))

    result = await reconciler.submit(job.id)

    assert result.state == JobState.FAILED
    assert result.failure_reason == "Prompt rejected"
    assert result.terminal_at is not None
    assert await _balance(uow_factory) == LedgerBalance(available=100, held=0)
    assert await _job_operations(uow_factory, job.id) == [
        LedgerOperation.HOLD,
        LedgerOperation.RELEASE,
    ]


@pytest.mark.asyncio
async def test_transient_error_requeues_job(uow_factory, job_service, reconciler, gateway, fund):
    await fund(OWNER, 100)
    gateway.submit_results = [RateLimitedError("Too many requests")]
    job = await job_service.submit_job(OWNER, GenerationRequest(prompt="A red fox in snow"))

    result = await reconciler.submit(job.id)

    assert result.state == JobState.CREATED
    assert result.attempts == 1
    assert await _balance(uow_factory) == LedgerBalance(available=82, held=18)

    # Next attempt succeeds
    result = await reconciler.submit(job.id)
    assert result.state == JobState.WAITING
    assert result.attempts == 1


@pytest.mark.asyncio
async def test_transient_errors_expire_job_at_attempt_bound(
    uow_factory, job_service, reconciler, gateway, fund
):
    """MAX_PROVIDER_ATTEMPTS=3: the third consecutive transient failure expires the job."""
    await fund(OWNER, 100)
    gateway.submit_results = [ProviderUnavailableError("Service unavailable")] * 3
    job = await job_service.submit_job(OWNER, GenerationRequest(prompt="A red fox in snow"))

    first = await reconciler.submit(job.id)
    second = await reconciler.submit(job.id)
    third = await reconciler.submit(job.id)

    assert [first.state, second.state] == [JobState.CREATED, JobState.CREATED]
    assert third.state == JobState.EXPIRED
    assert third.attempts == 3
    assert "Service unavailable" in (third.failure_reason or "")
    assert await _balance(uow_factory) == LedgerBalance(available=100, held=0)


@pytest.mark.asyncio
async def test_unexpected_submit_error_releases_claim(job_service, reconciler, gateway, fund):
    await fund(OWNER, 100)
    gateway.submit_results = [RuntimeError("boom")]
    job = await job_service.submit_job(OWNER, GenerationRequest(prompt="A red fox in snow"))

    with pytest.raises(RuntimeError):
        await reconciler.submit(job.id)

    assert (await reconciler.get(job.id)).state == JobState.CREATED


# Observation


@pytest.mark.asyncio
async def test_success_settles_hold(uow_factory, job_service, reconciler, gateway, fund):
    job = await _submitted_job(job_service, reconciler, fund)
    gateway.statuses["task-1"] = [SUCCESS]

    result = await reconciler.poll(job.id)

    assert result.state == JobState.SUCCEEDED
    assert result.result_ref == "https://x/y.png"
    assert await _balance(uow_factory) == LedgerBalance(available=82, held=0)
    assert await _job_operations(uow_factory, job.id) == [
        LedgerOperation.HOLD,
        LedgerOperation.SETTLE,
    ]


@pytest.mark.asyncio
async def test_provider_failure_refunds_hold(uow_factory, job_service, reconciler, fund):
    job = await _submitted_job(job_service, reconciler, fund)

    result = await reconciler.observe(
        job.id, NormalizedStatus(state=ProviderState.FAILED, error_detail="Content policy")
    )

    assert result.state == JobState.FAILED
    assert result.failure_reason == "Content policy"
    assert result.result_ref is None
    assert await _balance(uow_factory) == LedgerBalance(available=100, held=0)


@pytest.mark.asyncio
async def test_processing_status_advances_waiting_job(uow_factory, job_service, reconciler, fund):
    job = await _submitted_job(job_service, reconciler, fund)

    result = await reconciler.observe(job.id, NormalizedStatus(state=ProviderState.PROCESSING))

    assert result.state == JobState.PROCESSING
    assert await _balance(uow_factory) == LedgerBalance(available=82, held=18)

    # Still pending, so a later success is applied normally
    result = await reconciler.observe(job.id, SUCCESS)
    assert result.state == JobState.SUCCEEDED


@pytest.mark.asyncio
async def test_waiting_status_changes_nothing(job_service, reconciler, fund):
    job = await _submitted_job(job_service, reconciler, fund)

    result = await reconciler.observe(job.id, NormalizedStatus(state=ProviderState.WAITING))

    assert result.state == JobState.WAITING


@pytest.mark.asyncio
async def test_replayed_success_settles_exactly_once(uow_factory, job_service, reconciler, fund):
    """The same terminal observation delivered five times debits once."""
    job = await _submitted_job(job_service, reconciler, fund)

    for _ in range(5):
        result = await reconciler.observe(job.id, SUCCESS)
        assert result.state == JobState.SUCCEEDED

    assert await _balance(uow_factory) == LedgerBalance(available=82, held=0)
    operations = await _job_operations(uow_factory, job.id)
    assert operations.count(LedgerOperation.SETTLE) == 1


@pytest.mark.asyncio
async def test_failure_after_success_is_ignored(uow_factory, job_service, reconciler, fund):
    """Terminal states are absorbing: a late contradictory observation changes nothing."""
    job = await _submitted_job(job_service, reconciler, fund)
    await reconciler.observe(job.id, SUCCESS)

    result = await reconciler.observe(
        job.id, NormalizedStatus(state=ProviderState.FAILED, error_detail="late")
    )

    assert result.state == JobState.SUCCEEDED
    assert await _job_operations(uow_factory, job.id) == [
        LedgerOperation.HOLD,
        LedgerOperation.SETTLE,
    ]


@pytest.mark.asyncio
async def test_concurrent_observations_apply_once(uow_factory, job_service, reconciler, fund):
    """Poller and callback racing on one job settle the hold exactly once."""
    job = await _submitted_job(job_service, reconciler, fund)

    results = await asyncio.gather(*(reconciler.observe(job.id, SUCCESS) for _ in range(4)))

    assert {r.state for r in results} == {JobState.SUCCEEDED}
    assert await _balance(uow_factory) == LedgerBalance(available=82, held=0)
    assert (await _job_operations(uow_factory, job.id)).count(LedgerOperation.SETTLE) == 1


@pytest.mark.asyncio
async def test_guarded_duplicate_returns_current_job(uow_factory, job_service, reconciler, fund):
    """An observation whose guard key is already recorded leaves job and ledger untouched.

    This is the losing side of a poller/callback race: the job still looks
    pending to it, but the winner has already recorded the terminal event.
    """
    # Arrange
    job = await _submitted_job(job_service, reconciler, fund)
    async with await uow_factory() as uow:
        await uow.processed_events.record(EventSource.PROVIDER, f"kie:{job.provider_task_id}")

    # Act
    result = await reconciler.observe(job.id, SUCCESS)

    # Assert
    assert result.id == job.id
    assert result.state == JobState.WAITING
    assert await _job_operations(uow_factory, job.id) == [LedgerOperation.HOLD]
    assert await _balance(uow_factory) == LedgerBalance(available=82, held=18)


@pytest.mark.asyncio
async def test_kie_record_with_result_json_settles_once(uow_factory, job_service, reconciler, fund):
    """A callback and a poll both carrying the KIE success record yield one debit."""
    job = await _submitted_job(job_service, reconciler, fund)
    record = {
        "taskId": "task-1",
        "state": "success",
        "resultJson": json.dumps({"resultUrls": ["https://x/y.png"]}),
    }

    first = await reconciler.observe_task("kie", "task-1", normalize_kie_record(record))
    second = await reconciler.observe_task("kie", "task-1", normalize_kie_record(record))

    assert first.result_ref == "https://x/y.png"
    assert second.state == JobState.SUCCEEDED
    assert await _balance(uow_factory) == LedgerBalance(available=82, held=0)
    assert (await _job_operations(uow_factory, job.id)).count(LedgerOperation.SETTLE) == 1


@pytest.mark.asyncio
async def test_observe_task_unknown_task_raises(reconciler):
    with pytest.raises(JobNotFoundError):
        await reconciler.observe_task("kie", "no-such-task", SUCCESS)


@pytest.mark.asyncio
async def test_observation_before_submission_is_deferred(
    uow_factory, job_service, reconciler, fund
):
    await fund(OWNER, 100)
    job = await job_service.submit_job(OWNER, GenerationRequest(prompt="A red fox in snow"))

    result = await reconciler.observe(job.id, SUCCESS)

    assert result.state == JobState.CREATED
    assert await _balance(uow_factory) == LedgerBalance(available=82, held=18)


@pytest.mark.asyncio
async def test_poll_transient_error_keeps_job_pending(job_service, reconciler, gateway, fund):
    job = await _submitted_job(job_service, reconciler, fund)
    gateway.statuses["task-1"] = [ProviderUnavailableError("timeout")]

    result = await reconciler.poll(job.id)

    assert result.state == JobState.WAITING
    assert result.attempts == 1


@pytest.mark.asyncio
async def test_poll_permanent_error_fails_job(uow_factory, job_service, reconciler, gateway, fund):
    job = await _submitted_job(job_service, reconciler, fund)
    gateway.statuses["task-1"] = [InvalidRequestError("Unknown taskId")]

    result = await reconciler.poll(job.id)

    assert result.state == JobState.FAILED
    assert await _balance(uow_factory) == LedgerBalance(available=100, held=0)


# Expiry


@pytest.mark.asyncio
async def test_expire_stale_refunds_overdue_jobs(uow_factory, job_service, reconciler, fund):
    job = await _submitted_job(job_service, reconciler, fund)

    assert await reconciler.expire_stale() == []

    expired = await reconciler.expire_stale(now=utcnow() + timedelta(seconds=1201))

    assert [j.id for j in expired] == [job.id]
    assert expired[0].state == JobState.EXPIRED
    assert expired[0].failure_reason == "No terminal status after 1200s"
    assert await _balance(uow_factory) == LedgerBalance(available=100, held=0)

    # A success arriving after expiry is ignored
    late = await reconciler.observe(job.id, SUCCESS)
    assert late.state == JobState.EXPIRED
    assert await _balance(uow_factory) == LedgerBalance(available=100, held=0)


@pytest.mark.asyncio
async def test_expiry_during_inflight_submit_refunds_once(
    uow_factory, job_service, reconciler, gateway, fund
):
    """A job expired while the provider call is outstanding stays expired and refunded."""
    # Arrange
    await fund(OWNER, 100)
    job = await job_service.submit_job(OWNER, GenerationRequest(prompt="A red fox in snow"))
    submit_started = asyncio.Event()
    release_submit = asyncio.Event()

    async def blocking_submit(request):
        gateway.submitted.append(request)
        submit_started.set()
        await release_submit.wait()
        return "task-late"

    gateway.submit = blocking_submit

    # Act
    submitting = asyncio.create_task(reconciler.submit(job.id))
    await submit_started.wait()
    expired = await reconciler.expire_stale(now=utcnow() + timedelta(seconds=1201))
    release_submit.set()
    result = await submitting

    # Assert
    assert [j.id for j in expired] == [job.id]
    assert result.state == JobState.EXPIRED
    assert result.provider_task_id is None
    assert await _balance(uow_factory) == LedgerBalance(available=100, held=0)
    assert await _job_operations(uow_factory, job.id) == [
        LedgerOperation.HOLD,
        LedgerOperation.RELEASE,
    ]


# Passes and recovery


@pytest.mark.asyncio
async def test_run_once_submits_then_polls(uow_factory, job_service, reconciler, gateway, fund):
    await fund(OWNER, 100)
    first = await job_service.submit_job(OWNER, GenerationRequest(prompt="First prompt"))
    second = await job_service.submit_job(OWNER, GenerationRequest(prompt="Second prompt"))

    summary = await reconciler.run_once()

    assert summary.submitted == 2
    assert summary.polled == 0
    assert summary.errors == 0

    first = await reconciler.get(first.id)
    second = await reconciler.get(second.id)
    gateway.statuses[first.provider_task_id] = [SUCCESS]
    gateway.statuses[second.provider_task_id] = [
        NormalizedStatus(state=ProviderState.FAILED, error_detail="Content policy")
    ]

    summary = await reconciler.run_once()

    assert summary.polled == 2
    assert summary.succeeded == 1
    assert summary.failed == 1
    assert (await reconciler.get(first.id)).state == JobState.SUCCEEDED
    assert (await reconciler.get(second.id)).state == JobState.FAILED
    # 18 debited, 18 refunded
    assert await _balance(uow_factory) == LedgerBalance(available=82, held=0)


@pytest.mark.asyncio
async def test_terminal_outcomes_are_logged_as_usage(uow_factory, job_service, reconciler, fund):
    job = await _submitted_job(job_service, reconciler, fund)
    await reconciler.observe(job.id, SUCCESS)

    async with await uow_factory() as uow:
        logs = await uow.usage_logs.list_by_owner(OWNER, action=ACTION_GENERATE_IMAGE)

    assert len(logs) == 1
    assert logs[0].success is True
    assert logs[0].credits_used == 18
    assert logs[0].details["job_id"] == str(job.id)


@pytest.mark.asyncio
async def test_recover_orphaned_jobs_resets_submitting(uow_factory, job_service, reconciler, fund):
    await fund(OWNER, 100)
    job = await job_service.submit_job(OWNER, GenerationRequest(prompt="A red fox in snow"))
    async with await uow_factory() as uow:
        await uow.jobs.transition(job.id, JobState.CREATED, JobState.SUBMITTING)

    recovered = await recover_orphaned_jobs(uow_factory)

    assert recovered == 1
    assert (await reconciler.get(job.id)).state == JobState.CREATED
