"""ProcessedEvent entity - Deduplication of provider and payment deliveries."""

from datetime import datetime
from enum import Enum

from sqlmodel import Field, SQLModel

from genledger.core.timezone import DateTimeUTC, utcnow


class EventSource(str, Enum):
    """External system that delivered the event."""

    PROVIDER = "provider"
    PAYMENT_GATEWAY = "payment_gateway"


class ProcessedEvent(SQLModel, table=True):
    """ProcessedEvent marks an external event whose side effects were applied."""

    __tablename__ = "processed_events"  # type: ignore[assignment]

    source_system: EventSource = Field(primary_key=True)
    external_event_id: str = Field(primary_key=True, max_length=255)
    first_seen_at: datetime = Field(default_factory=utcnow, sa_type=DateTimeUTC)
