"""Background workers for async processing tasks."""

from genledger.workers.job_reconciliation_worker import run_job_reconciliation_worker
from genledger.workers.payment_expiry_worker import run_payment_expiry_worker

__all__ = [
    "run_job_reconciliation_worker",
    "run_payment_expiry_worker",
]
