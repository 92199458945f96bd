"""Job reconciler: drives generation jobs from submission to a terminal state.

Status observations arrive from two triggers, the polling loop and the
provider callback webhook. Both end up in observe(), so the lifecycle and its
ledger effects do not depend on which trigger fires first or how often.

Provider calls are always made outside a database transaction. Every write
is a short Unit of Work whose state change is a compare-and-swap, so any
number of reconcilers may run against the same jobs.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional
from uuid import UUID

import structlog

from genledger.core.config import Settings
from genledger.core.timezone import utcnow
from genledger.models.generation_job import PENDING_STATES, GenerationJob, JobState
from genledger.models.processed_event import EventSource
from genledger.services.exceptions import (
    JobNotFoundError,
    PermanentError,
    StaleTransitionError,
    TransientError,
)
from genledger.services.image_generation.provider import (
    NormalizedStatus,
    ProviderGateway,
    ProviderState,
)
from genledger.services.usage import ACTION_GENERATE_IMAGE, record_usage

logger = structlog.get_logger()


@dataclass
class ReconcileSummary:
    """Counts from one reconciliation pass."""

    submitted: int = 0
    polled: int = 0
    succeeded: int = 0
    failed: int = 0
    expired: int = 0
    errors: int = 0

    def tally(self, job: GenerationJob) -> None:
        if job.state == JobState.SUCCEEDED:
            self.succeeded += 1
        elif job.state == JobState.FAILED:
            self.failed += 1
        elif job.state == JobState.EXPIRED:
            self.expired += 1


class JobReconciler:
    """Applies provider outcomes to jobs and the credit ledger.

    Ledger effects per job:
        - succeeded: settle the hold (the job's one and only debit)
        - failed/expired: release the hold (full refund)
    """

    def __init__(self, uow_factory: Callable, gateway: ProviderGateway, settings: Settings):
        """Initialize reconciler.

        Args:
            uow_factory: Factory producing UnitOfWork instances
            gateway: Provider gateway used for submission and polling
            settings: Application settings (attempt bound, expiry, batch size)
        """
        self.uow_factory = uow_factory
        self.gateway = gateway
        self.settings = settings

    async def get(self, job_id: UUID) -> GenerationJob:
        async with await self.uow_factory() as uow:
            return await self._load(uow, job_id)

    @staticmethod
    async def _load(uow, job_id: UUID) -> GenerationJob:
        job = await uow.jobs.get_by_id(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    async def submit(self, job_id: UUID) -> GenerationJob:
        """Submit a created job to the provider.

        Workflow:
        1. created → submitting (claims the job; a lost race returns the fresh job)
        2. Call the provider outside any transaction
        3. Success: submitting → waiting with provider_task_id
           PermanentError: submitting → failed, hold released
           TransientError: attempts + 1, back to created (or expired at the bound)

        Returns:
            The job as persisted after this call
        """
        try:
            async with await self.uow_factory() as uow:
                job = await uow.jobs.get_by_id(job_id)
                if job is None:
                    raise JobNotFoundError(f"Job {job_id} not found")
                if job.state != JobState.CREATED:
                    return job
                job = await uow.jobs.transition(job_id, JobState.CREATED, JobState.SUBMITTING)
        except StaleTransitionError:
            logger.info("job.submit_race_lost", job_id=str(job_id))
            return await self.get(job_id)

        try:
            task_id = await self.gateway.submit(job.generation_request)
        except (PermanentError, ValueError) as e:
            # ValueError covers a stored request that no longer validates
            logger.error(
                "job.submit_rejected",
                job_id=str(job_id),
                error_type=type(e).__name__,
                error_message=str(e),
            )
            return await self._finalize(
                job, JobState.SUBMITTING, JobState.FAILED, failure_reason=str(e)
            )
        except TransientError as e:
            return await self._record_transient_failure(job, JobState.SUBMITTING, e)
        except Exception:
            await self._unclaim(job)
            raise

        try:
            async with await self.uow_factory() as uow:
                job = await uow.jobs.transition(
                    job_id, JobState.SUBMITTING, JobState.WAITING, provider_task_id=task_id
                )
        except StaleTransitionError:
            # Expired while the provider call was in flight; the hold is already released
            logger.warning("job.submit_orphaned_task", job_id=str(job_id), provider_task_id=task_id)
            return await self.get(job_id)

        logger.info(
            "job.submitted",
            job_id=str(job_id),
            provider=job.provider,
            provider_task_id=task_id,
        )
        return job

    async def observe(self, job_id: UUID, status: NormalizedStatus) -> GenerationJob:
        """Apply one provider status observation to a job.

        Safe to call any number of times with the same observation: terminal
        outcomes are recorded in the idempotency guard under
        (provider, "{provider}:{task_id}") in the same transaction as the
        ledger effect, and replays return the current job untouched.
        """
        job = await self.get(job_id)

        if job.is_terminal:
            logger.debug("job.observation_ignored", job_id=str(job_id), state=job.state.value)
            return job

        if job.state not in PENDING_STATES:
            # Callback raced ahead of submitting → waiting; polling picks it up later
            logger.info("job.observation_early", job_id=str(job_id), state=job.state.value)
            return job

        if not status.is_terminal:
            if status.state == ProviderState.PROCESSING and job.state == JobState.WAITING:
                try:
                    async with await self.uow_factory() as uow:
                        job = await uow.jobs.transition(
                            job_id, JobState.WAITING, JobState.PROCESSING
                        )
                except StaleTransitionError:
                    return await self.get(job_id)
                logger.info("job.processing", job_id=str(job_id))
            return job

        if status.state == ProviderState.SUCCESS:
            to_state = JobState.SUCCEEDED
            fields: dict[str, Any] = {"result_ref": status.result_ref}
        else:
            to_state = JobState.FAILED
            fields = {"failure_reason": (status.error_detail or "Generation failed")[:1000]}

        event_key = f"{job.provider}:{job.provider_task_id}"
        try:
            async with await self.uow_factory() as uow:
                first_seen = await uow.processed_events.record(EventSource.PROVIDER, event_key)
                if not first_seen:
                    logger.info(
                        "job.duplicate_observation", job_id=str(job_id), event_key=event_key
                    )
                    return await self._load(uow, job_id)
                job = await self._apply_terminal(uow, job, job.state, to_state, **fields)
        except StaleTransitionError:
            logger.info("job.transition_race_lost", job_id=str(job_id), target=to_state.value)
            return await self.get(job_id)

        await self._after_terminal(job)
        return job

    async def observe_task(
        self, provider: str, task_id: str, status: NormalizedStatus
    ) -> GenerationJob:
        """Apply an observation addressed by provider task id (callback path).

        Raises:
            JobNotFoundError: If no job carries this provider task id
        """
        async with await self.uow_factory() as uow:
            job = await uow.jobs.get_by_provider_task(provider, task_id)
        if job is None:
            raise JobNotFoundError(f"No job for {provider} task {task_id}")
        return await self.observe(job.id, status)

    async def poll(self, job_id: UUID) -> GenerationJob:
        """Fetch the provider status of a waiting/processing job and apply it."""
        job = await self.get(job_id)
        if job.state not in PENDING_STATES or not job.provider_task_id:
            return job

        try:
            status = await self.gateway.fetch_status(job.provider_task_id)
        except PermanentError as e:
            logger.error(
                "job.poll_rejected",
                job_id=str(job_id),
                error_type=type(e).__name__,
                error_message=str(e),
            )
            return await self._finalize(job, job.state, JobState.FAILED, failure_reason=str(e))
        except TransientError as e:
            return await self._record_transient_failure(job, job.state, e)

        return await self.observe(job_id, status)

    async def expire_stale(self, now: Optional[datetime] = None) -> list[GenerationJob]:
        """Expire every non-terminal job older than JOB_EXPIRY_SECONDS.

        Expiry is treated like failure for the ledger: the hold is released.

        Returns:
            Jobs expired by this call
        """
        now = now or utcnow()
        cutoff = now - timedelta(seconds=self.settings.job_expiry_seconds)

        async with await self.uow_factory() as uow:
            stale = await uow.jobs.list_stale(cutoff)

        expired = []
        for job in stale:
            result = await self._finalize(
                job,
                job.state,
                JobState.EXPIRED,
                failure_reason=f"No terminal status after {self.settings.job_expiry_seconds}s",
            )
            if result.state == JobState.EXPIRED:
                expired.append(result)
        return expired

    async def run_once(self) -> ReconcileSummary:
        """Run one reconciliation pass: submit, poll, expire.

        Jobs in a batch are processed concurrently; one job's error never
        affects the others.
        """
        summary = ReconcileSummary()
        batch_size = self.settings.worker_batch_size

        async with await self.uow_factory() as uow:
            created = await uow.jobs.list_created(limit=batch_size)
            pending = await uow.jobs.list_pending(limit=batch_size)

        results = await asyncio.gather(
            *(self.submit(job.id) for job in created), return_exceptions=True
        )
        for job, result in zip(created, results):
            if isinstance(result, BaseException):
                summary.errors += 1
                logger.error(
                    "job.submit_error",
                    job_id=str(job.id),
                    error_type=type(result).__name__,
                    error_message=str(result),
                )
                continue
            if result.state == JobState.WAITING:
                summary.submitted += 1
            summary.tally(result)

        results = await asyncio.gather(
            *(self.poll(job.id) for job in pending), return_exceptions=True
        )
        for job, result in zip(pending, results):
            if isinstance(result, BaseException):
                summary.errors += 1
                logger.error(
                    "job.poll_error",
                    job_id=str(job.id),
                    error_type=type(result).__name__,
                    error_message=str(result),
                )
                continue
            summary.polled += 1
            summary.tally(result)

        summary.expired += len(await self.expire_stale())
        return summary

    async def _record_transient_failure(
        self, job: GenerationJob, from_state: JobState, error: Exception
    ) -> GenerationJob:
        """Count a transient provider failure; expire the job once the bound is reached."""
        expired = False
        try:
            async with await self.uow_factory() as uow:
                attempts = await uow.jobs.increment_attempts(job.id, str(error))
                if attempts >= self.settings.max_provider_attempts:
                    job = await self._apply_terminal(
                        uow,
                        job,
                        from_state,
                        JobState.EXPIRED,
                        failure_reason=f"Gave up after {attempts} attempts: {error}"[:1000],
                    )
                    expired = True
                elif from_state == JobState.SUBMITTING:
                    job = await uow.jobs.transition(job.id, JobState.SUBMITTING, JobState.CREATED)
                else:
                    job = await self._load(uow, job.id)
        except StaleTransitionError:
            return await self.get(job.id)

        logger.warning(
            "job.provider_retry",
            job_id=str(job.id),
            error_type=type(error).__name__,
            error_message=str(error),
            attempt_number=job.attempts,
        )
        if expired:
            await self._after_terminal(job)
        return job

    async def _finalize(
        self, job: GenerationJob, from_state: JobState, to_state: JobState, **fields: Any
    ) -> GenerationJob:
        """Apply a terminal transition in its own transaction."""
        try:
            async with await self.uow_factory() as uow:
                job = await self._apply_terminal(uow, job, from_state, to_state, **fields)
        except StaleTransitionError:
            logger.info("job.transition_race_lost", job_id=str(job.id), target=to_state.value)
            return await self.get(job.id)

        await self._after_terminal(job)
        return job

    async def _apply_terminal(
        self, uow, job: GenerationJob, from_state: JobState, to_state: JobState, **fields: Any
    ) -> GenerationJob:
        """CAS the job into a terminal state and apply its single ledger effect.

        Must run inside the caller's Unit of Work; only the winner of the CAS
        reaches the ledger call.
        """
        updated = await uow.jobs.transition(job.id, from_state, to_state, **fields)
        if to_state == JobState.SUCCEEDED:
            await uow.ledger.settle_hold(updated.owner_id, updated.cost_estimate, job_id=updated.id)
        else:
            await uow.ledger.release_hold(
                updated.owner_id, updated.cost_estimate, job_id=updated.id
            )
        return updated

    async def _unclaim(self, job: GenerationJob) -> None:
        try:
            async with await self.uow_factory() as uow:
                await uow.jobs.transition(job.id, JobState.SUBMITTING, JobState.CREATED)
        except StaleTransitionError:
            logger.debug("job.unclaim_skipped", job_id=str(job.id))

    async def _after_terminal(self, job: GenerationJob) -> None:
        succeeded = job.state == JobState.SUCCEEDED
        if succeeded:
            logger.info(
                "job.succeeded",
                job_id=str(job.id),
                owner_id=job.owner_id,
                credits_debited=job.cost_estimate,
                result_ref=job.result_ref,
            )
        else:
            logger.warning(
                f"job.{job.state.value}",
                job_id=str(job.id),
                owner_id=job.owner_id,
                credits_refunded=job.cost_estimate,
                failure_reason=job.failure_reason,
            )

        await record_usage(
            self.uow_factory,
            owner_id=job.owner_id,
            action=ACTION_GENERATE_IMAGE,
            credits_used=job.cost_estimate if succeeded else 0,
            success=succeeded,
            details={
                "job_id": str(job.id),
                "state": job.state.value,
                "provider": job.provider,
                "provider_task_id": job.provider_task_id,
            },
        )
