"""Job reconciliation worker.

Drives generation jobs through the provider lifecycle: submits created jobs,
polls waiting/processing jobs and expires jobs that never reach a terminal
state. Provider callbacks (POST /webhooks/kie) feed the same reconciler, so
this loop is the fallback trigger rather than the only one.

Several instances may run at once: every state change is a compare-and-swap
on the job row, so only one instance applies a given outcome.
"""

import asyncio
from typing import Callable

import structlog

from genledger.core.config import Settings
from genledger.services.jobs.reconciler import JobReconciler

logger = structlog.get_logger(__name__)


async def recover_orphaned_jobs(uow_factory: Callable) -> int:
    """Reset jobs stuck in 'submitting' on startup.

    A crash between the provider call and the follow-up transition leaves
    jobs in 'submitting'. They are resubmitted on the next pass; the
    provider may occasionally see the same request twice, but only the task
    id recorded on the job is ever reconciled.

    Returns:
        Number of jobs reset
    """
    async with await uow_factory() as uow:
        recovered_count = await uow.jobs.reset_orphaned_submissions()

    if recovered_count > 0:
        logger.info("worker.recovery", orphaned_jobs_reset=recovered_count)
    return recovered_count


async def run_job_reconciliation_worker(reconciler: JobReconciler, settings: Settings) -> None:
    """Main worker loop for job reconciliation.

    Workflow:
    1. Run startup recovery (reset orphaned submissions)
    2. Every POLL_INTERVAL_SECONDS run one reconciliation pass
    3. Handle CancelledError for graceful shutdown

    Args:
        reconciler: Job reconciler bound to the provider gateway
        settings: Application settings (poll interval, batch size)
    """
    await recover_orphaned_jobs(reconciler.uow_factory)

    logger.info(
        "worker.started",
        worker="job_reconciliation",
        poll_interval=settings.poll_interval_seconds,
        batch_size=settings.worker_batch_size,
    )

    try:
        while True:
            try:
                summary = await reconciler.run_once()

                if summary.submitted or summary.polled or summary.expired or summary.errors:
                    logger.info(
                        "worker.pass_completed",
                        worker="job_reconciliation",
                        submitted=summary.submitted,
                        polled=summary.polled,
                        succeeded=summary.succeeded,
                        failed=summary.failed,
                        expired=summary.expired,
                        errors=summary.errors,
                    )

                await asyncio.sleep(settings.poll_interval_seconds)

            except asyncio.CancelledError:
                raise

            except Exception as e:
                logger.error(
                    "worker.error",
                    worker="job_reconciliation",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                # Back off 5 seconds before retrying
                await asyncio.sleep(5)

    except asyncio.CancelledError:
        logger.info("worker.stopped", worker="job_reconciliation")
        raise
