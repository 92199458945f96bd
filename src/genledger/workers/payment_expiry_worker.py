"""Payment expiry worker.

Marks pending payment intents as expired once their deadline has passed, so
late transfers are reported as expired instead of being credited.
"""

import asyncio

import structlog

from genledger.core.config import Settings
from genledger.services.billing.payment_reconciler import PaymentReconciler

logger = structlog.get_logger(__name__)


async def run_payment_expiry_worker(reconciler: PaymentReconciler, settings: Settings) -> None:
    """Sweep overdue payment intents every PAYMENT_SWEEP_INTERVAL_SECONDS."""
    logger.info(
        "worker.started",
        worker="payment_expiry",
        poll_interval=settings.payment_sweep_interval_seconds,
    )

    try:
        while True:
            try:
                await reconciler.expire_intents()
                await asyncio.sleep(settings.payment_sweep_interval_seconds)

            except asyncio.CancelledError:
                raise

            except Exception as e:
                logger.error(
                    "worker.error",
                    worker="payment_expiry",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                await asyncio.sleep(5)

    except asyncio.CancelledError:
        logger.info("worker.stopped", worker="payment_expiry")
        raise
