"""PaymentIntent entity - Expected bank transfer correlated by a memo token."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint
from sqlmodel import Field, SQLModel

from genledger.core.timezone import DateTimeUTC, utcnow


class PaymentState(str, Enum):
    """Payment intent lifecycle status."""

    PENDING = "pending"
    MATCHED = "matched"
    COMPLETED = "completed"
    EXPIRED = "expired"
    MISMATCHED = "mismatched"


class PaymentIntent(SQLModel, table=True):
    """PaymentIntent waits for a bank transfer whose memo carries `match_token`."""

    __tablename__ = "payment_intents"  # type: ignore[assignment]
    __table_args__ = (
        CheckConstraint("expected_amount > 0", name="ck_payment_intents_amount"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    owner_id: str = Field(max_length=255, index=True)
    expected_amount: int
    match_token: str = Field(max_length=64, unique=True, index=True)
    description: str = Field(default="", max_length=255)
    state: PaymentState = Field(default=PaymentState.PENDING, index=True)
    external_event_id: Optional[str] = Field(default=None, max_length=255)
    transfer_amount: Optional[int] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTimeUTC)
    expires_at: datetime = Field(sa_type=DateTimeUTC)
    completed_at: Optional[datetime] = Field(default=None, sa_type=DateTimeUTC)

    def is_overdue(self, now: datetime) -> bool:
        """True when a pending intent has passed its deadline."""
        return self.state == PaymentState.PENDING and self.expires_at <= now
