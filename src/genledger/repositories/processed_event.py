"""ProcessedEvent repository for genledger.

The idempotency guard shared by the job reconciler and the payment reconciler.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from genledger.core.database import dialect_insert
from genledger.core.timezone import utcnow
from genledger.models.processed_event import EventSource, ProcessedEvent


class ProcessedEventRepository:
    """Repository for ProcessedEvent records.

    The record is written in the same transaction as the side effects it
    guards: if that transaction rolls back, the event is forgotten too and a
    later redelivery is processed normally.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def record(self, source: EventSource, external_event_id: str) -> bool:
        """Atomically check-and-insert an external event.

        Query explanation:
        - INSERT INTO processed_events (source_system, external_event_id, first_seen_at)
        - ON CONFLICT (source_system, external_event_id) DO NOTHING
        - One inserted row means first delivery; zero rows means replay

        A concurrent insert of the same key waits for the other transaction
        and then takes the DO NOTHING branch, so exactly one caller sees True.

        Args:
            source: System that delivered the event
            external_event_id: Event identifier assigned by that system

        Returns:
            True if this is the first time the event is seen, False for a replay
        """
        if not external_event_id:
            raise ValueError("external_event_id is required")

        stmt = (
            dialect_insert(self.session, ProcessedEvent)
            .values(
                source_system=source,
                external_event_id=external_event_id,
                first_seen_at=utcnow(),
            )
            .on_conflict_do_nothing(index_elements=["source_system", "external_event_id"])
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def exists(self, source: EventSource, external_event_id: str) -> bool:
        """Check whether an event has already been processed (read-only)."""
        result = await self.session.execute(
            select(ProcessedEvent).where(
                ProcessedEvent.source_system == source,  # type: ignore[arg-type]
                ProcessedEvent.external_event_id == external_event_id,  # type: ignore[arg-type]
            )
        )
        return result.scalar_one_or_none() is not None
