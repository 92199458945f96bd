"""LedgerAccount and LedgerEntry entities - Spendable credit balance and its audit trail."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint
from sqlmodel import Field, SQLModel

from genledger.core.timezone import DateTimeUTC, utcnow


class LedgerOperation(str, Enum):
    """Kind of balance mutation recorded in the ledger."""

    HOLD = "hold"
    RELEASE = "release"
    SETTLE = "settle"
    CREDIT = "credit"


class LedgerAccount(SQLModel, table=True):
    """LedgerAccount is the single source of truth for a user's spendable credits.

    `balance` is what the user can spend right now. Credits reserved for
    in-flight jobs move from `balance` to `held_amount` at hold time.
    """

    __tablename__ = "ledger_accounts"  # type: ignore[assignment]
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_ledger_accounts_balance"),
        CheckConstraint("held_amount >= 0", name="ck_ledger_accounts_held"),
    )

    owner_id: str = Field(primary_key=True, max_length=255)
    balance: int = Field(default=0, ge=0)
    held_amount: int = Field(default=0, ge=0)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTimeUTC)


class LedgerEntry(SQLModel, table=True):
    """LedgerEntry records one ledger mutation for auditing and refund accounting."""

    __tablename__ = "ledger_entries"  # type: ignore[assignment]
    __table_args__ = (CheckConstraint("amount > 0", name="ck_ledger_entries_amount"),)

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    owner_id: str = Field(max_length=255, index=True)
    operation: LedgerOperation
    amount: int
    job_id: Optional[UUID] = Field(default=None, index=True)
    payment_intent_id: Optional[UUID] = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTimeUTC)
