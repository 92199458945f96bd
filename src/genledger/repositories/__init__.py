"""Repository layer for genledger.

Provides data access abstractions for all domain entities.
No base classes - each repository is self-contained.
"""

from genledger.repositories.generation_job import GenerationJobRepository
from genledger.repositories.ledger import LedgerAccountRepository, LedgerBalance
from genledger.repositories.payment_intent import PaymentIntentRepository
from genledger.repositories.processed_event import ProcessedEventRepository
from genledger.repositories.usage_log import UsageLogRepository

__all__ = [
    "GenerationJobRepository",
    "LedgerAccountRepository",
    "LedgerBalance",
    "PaymentIntentRepository",
    "ProcessedEventRepository",
    "UsageLogRepository",
]
