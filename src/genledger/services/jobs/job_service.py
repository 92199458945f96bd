"""Job creation and lookup for API callers."""

from typing import Callable
from uuid import UUID

import structlog

from genledger.core.config import Settings
from genledger.models.generation_job import GenerationJob, GenerationRequest
from genledger.services.exceptions import JobNotFoundError

logger = structlog.get_logger()


class JobService:
    """Admits generation jobs against the owner's credit balance."""

    def __init__(self, uow_factory: Callable, settings: Settings, provider: str = "kie"):
        self.uow_factory = uow_factory
        self.settings = settings
        self.provider = provider

    async def submit_job(self, owner_id: str, request: GenerationRequest) -> GenerationJob:
        """Hold the job's cost and persist it in state 'created'.

        Both writes share one transaction: if the hold fails nothing is
        persisted. Concurrent submissions for one owner serialize on the
        account row, so no more jobs are admitted than the balance covers.

        Raises:
            InsufficientCreditError: If the available balance is below the job cost
        """
        job = GenerationJob(
            owner_id=owner_id,
            provider=self.provider,
            cost_estimate=self.settings.credits_per_image,
            request=request.model_dump(),
        )

        async with await self.uow_factory() as uow:
            await uow.ledger.hold(owner_id, job.cost_estimate, job_id=job.id)
            await uow.jobs.add(job)

        logger.info(
            "job.created",
            job_id=str(job.id),
            owner_id=owner_id,
            cost_estimate=job.cost_estimate,
        )
        return job

    async def get_job(self, owner_id: str, job_id: UUID) -> GenerationJob:
        """Return one of the owner's jobs.

        Raises:
            JobNotFoundError: If the job does not exist or belongs to someone else
        """
        async with await self.uow_factory() as uow:
            job = await uow.jobs.get_by_id(job_id)

        if job is None or job.owner_id != owner_id:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    async def list_jobs(
        self, owner_id: str, limit: int = 50, offset: int = 0
    ) -> list[GenerationJob]:
        async with await self.uow_factory() as uow:
            return await uow.jobs.list_by_owner(owner_id, limit=limit, offset=offset)
