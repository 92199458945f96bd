"""GenerationJob repository for genledger.

Provides data access methods for GenerationJob entities, including the
compare-and-swap state transition that keeps concurrent reconcilers from
applying a terminal outcome twice.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from genledger.core.timezone import utcnow
from genledger.models.generation_job import (
    PENDING_STATES,
    TERMINAL_STATES,
    GenerationJob,
    JobState,
    ensure_transition,
)
from genledger.services.exceptions import JobNotFoundError, StaleTransitionError


class GenerationJobRepository:
    """Repository for GenerationJob entities.

    Jobs are never deleted; they only move forward through the lifecycle
    via transition().
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, job: GenerationJob) -> GenerationJob:
        """Persist new generation job to database.

        Args:
            job: GenerationJob entity to persist

        Returns:
            Persisted job with generated ID
        """
        self.session.add(job)
        await self.session.flush()
        return job

    async def get_by_id(self, job_id: UUID) -> GenerationJob | None:
        """Retrieve generation job by UUID.

        Always reads the persisted row, even if an older copy of the job is
        already loaded in this session.
        """
        result = await self.session.execute(
            select(GenerationJob)
            .where(GenerationJob.id == job_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_provider_task(self, provider: str, task_id: str) -> GenerationJob | None:
        """Retrieve generation job by the provider's task identifier."""
        result = await self.session.execute(
            select(GenerationJob)
            .where(
                GenerationJob.provider == provider,  # type: ignore[arg-type]
                GenerationJob.provider_task_id == task_id,  # type: ignore[arg-type]
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_pending(self, limit: int = 10) -> list[GenerationJob]:
        """Retrieve jobs waiting on the provider (waiting/processing), oldest first.

        No row locks are taken: two pollers may pick the same job, and the
        compare-and-swap in transition() decides which one applies its result.
        """
        result = await self.session.execute(
            select(GenerationJob)
            .where(GenerationJob.state.in_(list(PENDING_STATES)))  # type: ignore[attr-defined]
            .order_by(GenerationJob.created_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_created(self, limit: int = 10) -> list[GenerationJob]:
        """Retrieve jobs that have not been submitted to the provider yet."""
        result = await self.session.execute(
            select(GenerationJob)
            .where(GenerationJob.state == JobState.CREATED)  # type: ignore[arg-type]
            .order_by(GenerationJob.created_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_stale(self, cutoff: datetime, limit: int = 100) -> list[GenerationJob]:
        """Retrieve non-terminal jobs created before `cutoff`.

        Args:
            cutoff: Jobs created strictly before this instant are stale
            limit: Maximum number of jobs to return
        """
        result = await self.session.execute(
            select(GenerationJob)
            .where(
                GenerationJob.state.not_in(list(TERMINAL_STATES)),  # type: ignore[attr-defined]
                GenerationJob.created_at < cutoff,  # type: ignore[arg-type]
            )
            .order_by(GenerationJob.created_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_by_owner(
        self, owner_id: str, limit: int = 50, offset: int = 0
    ) -> list[GenerationJob]:
        """Retrieve an owner's jobs, newest first."""
        result = await self.session.execute(
            select(GenerationJob)
            .where(GenerationJob.owner_id == owner_id)  # type: ignore[arg-type]
            .order_by(GenerationJob.created_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def transition(
        self,
        job_id: UUID,
        from_state: JobState,
        to_state: JobState,
        **fields: Any,
    ) -> GenerationJob:
        """Move a job from `from_state` to `to_state` (compare-and-swap).

        Query explanation:
        - UPDATE generation_jobs SET state = :to_state, ...
        - WHERE id = :job_id AND state = :from_state
        - Zero rows updated means another worker moved the job first

        Terminal target states also stamp terminal_at.

        Args:
            job_id: Job to transition
            from_state: State the caller observed
            to_state: Desired state
            **fields: Additional columns to update (provider_task_id, result_ref, ...)

        Returns:
            The job as persisted after the update

        Raises:
            InvalidStateTransition: If the edge is not part of the lifecycle
            StaleTransitionError: If the persisted state is not `from_state`
        """
        ensure_transition(from_state, to_state)

        now = utcnow()
        values = dict(fields, state=to_state, updated_at=now)
        if to_state in TERMINAL_STATES:
            values.setdefault("terminal_at", now)

        result = await self.session.execute(
            update(GenerationJob)
            .where(
                GenerationJob.id == job_id,  # type: ignore[arg-type]
                GenerationJob.state == from_state,  # type: ignore[arg-type]
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:  # type: ignore[attr-defined]
            raise StaleTransitionError(job_id, from_state.value)

        job = await self.get_by_id(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    async def increment_attempts(self, job_id: UUID, error: str | None = None) -> int:
        """Increment the transient-failure counter and return the new value.

        Args:
            job_id: Job whose provider call failed
            error: Last error message, kept in failure_reason for operators
        """
        values: dict[str, Any] = {"attempts": GenerationJob.attempts + 1, "updated_at": utcnow()}
        if error is not None:
            values["failure_reason"] = error[:1000]
        await self.session.execute(
            update(GenerationJob)
            .where(GenerationJob.id == job_id)  # type: ignore[arg-type]
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        job = await self.get_by_id(job_id)
        return job.attempts if job else 0

    async def reset_orphaned_submissions(self) -> int:
        """Put jobs stuck in 'submitting' back to 'created'.

        A crash between the provider call and the follow-up transition leaves
        jobs in 'submitting'. Only safe while no reconciler is running.

        Query:
            UPDATE generation_jobs
            SET state = 'created'
            WHERE state = 'submitting'

        Returns:
            Number of jobs reset
        """
        result = await self.session.execute(
            update(GenerationJob)
            .where(GenerationJob.state == JobState.SUBMITTING)  # type: ignore[arg-type]
            .values(state=JobState.CREATED, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount  # type: ignore[attr-defined]
