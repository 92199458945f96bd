"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from genledger.models.generation_job import (
    GenerationJob,
    GenerationRequest,
    InvalidStateTransition,
    JobState,
)
from genledger.models.ledger import LedgerAccount, LedgerEntry, LedgerOperation
from genledger.models.payment_intent import PaymentIntent, PaymentState
from genledger.models.processed_event import EventSource, ProcessedEvent
from genledger.models.usage_log import UsageLog

__all__ = [
    "GenerationJob",
    "GenerationRequest",
    "JobState",
    "InvalidStateTransition",
    "LedgerAccount",
    "LedgerEntry",
    "LedgerOperation",
    "PaymentIntent",
    "PaymentState",
    "ProcessedEvent",
    "EventSource",
    "UsageLog",
]
