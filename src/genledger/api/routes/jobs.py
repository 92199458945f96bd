"""Generation job API endpoints.

This module implements:
- POST /api/jobs - Admit a generation job (holds its cost) and submit it in the background
- GET /api/jobs - List the caller's jobs
- GET /api/jobs/{job_id} - Job status

Provider error text never leaves the service: failed and expired jobs only
report that the credit was refunded.
"""

from datetime import datetime
from uuid import UUID

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from genledger.api.dependencies import get_job_reconciler, get_job_service, get_owner_id
from genledger.models.generation_job import GenerationJob, GenerationRequest, JobState
from genledger.services.exceptions import InsufficientCreditError, JobNotFoundError
from genledger.services.jobs.job_service import JobService
from genledger.services.jobs.reconciler import JobReconciler

logger = structlog.get_logger()
router = APIRouter(prefix="/api/jobs", tags=["jobs"])

INSUFFICIENT_BALANCE_MESSAGE = "insufficient balance"
GENERATION_FAILED_MESSAGE = "generation failed — credit refunded"


# Request/Response Models


class JobCreatedResponse(BaseModel):
    """Response model for an admitted job."""

    job_id: UUID = Field(..., description="Job identifier for status polling")
    state: JobState = Field(..., description="Job lifecycle state (always 'created' here)")
    cost: int = Field(..., description="Credits held for this job")


class JobResponse(BaseModel):
    """Caller-facing view of a generation job."""

    job_id: UUID
    state: JobState
    cost: int
    result_ref: str | None = Field(default=None, description="Result image URL once succeeded")
    message: str | None = Field(default=None, description="User-facing outcome message")
    created_at: datetime
    updated_at: datetime
    terminal_at: datetime | None = None

    @classmethod
    def from_job(cls, job: GenerationJob) -> "JobResponse":
        message = None
        if job.state in (JobState.FAILED, JobState.EXPIRED):
            message = GENERATION_FAILED_MESSAGE
        return cls(
            job_id=job.id,
            state=job.state,
            cost=job.cost_estimate,
            result_ref=job.result_ref if job.state == JobState.SUCCEEDED else None,
            message=message,
            created_at=job.created_at,
            updated_at=job.updated_at,
            terminal_at=job.terminal_at,
        )


async def submit_in_background(reconciler: JobReconciler, job_id: UUID) -> None:
    """Submit a freshly created job; failures are left to the reconciliation worker."""
    try:
        await reconciler.submit(job_id)
    except Exception as e:
        logger.error(
            "job.background_submit_failed",
            job_id=str(job_id),
            error_type=type(e).__name__,
            error_message=str(e),
        )


# API Endpoints


@router.post("", response_model=JobCreatedResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_job(
    request: GenerationRequest,
    background_tasks: BackgroundTasks,
    owner_id: str = Depends(get_owner_id),
    job_service: JobService = Depends(get_job_service),
    reconciler: JobReconciler = Depends(get_job_reconciler),
) -> JobCreatedResponse:
    """Admit a generation job.

    The job's cost is held on the caller's ledger account in the same
    transaction that creates the job. Submission to the provider happens
    after the response is sent.

    Raises:
        HTTPException 402: Available balance below the job cost
    """
    try:
        job = await job_service.submit_job(owner_id, request)
    except InsufficientCreditError:
        logger.info("job.rejected_insufficient_credit", owner_id=owner_id)
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=INSUFFICIENT_BALANCE_MESSAGE
        )

    background_tasks.add_task(submit_in_background, reconciler, job.id)

    return JobCreatedResponse(job_id=job.id, state=job.state, cost=job.cost_estimate)


@router.get("", response_model=list[JobResponse], status_code=status.HTTP_200_OK)
async def list_jobs(
    owner_id: str = Depends(get_owner_id),
    job_service: JobService = Depends(get_job_service),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> list[JobResponse]:
    """List the caller's jobs, newest first."""
    jobs = await job_service.list_jobs(owner_id, limit=limit, offset=offset)
    return [JobResponse.from_job(job) for job in jobs]


@router.get("/{job_id}", response_model=JobResponse, status_code=status.HTTP_200_OK)
async def get_job(
    job_id: UUID,
    owner_id: str = Depends(get_owner_id),
    job_service: JobService = Depends(get_job_service),
) -> JobResponse:
    """Return the status of one of the caller's jobs.

    Raises:
        HTTPException 404: Unknown job or job owned by someone else
    """
    try:
        job = await job_service.get_job(owner_id, job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")

    return JobResponse.from_job(job)
