"""Credit ledger repository for genledger.

Every balance mutation is a single conditional UPDATE on the account row.
PostgreSQL takes a row lock for the duration of the transaction, so
operations on one account serialize while other accounts proceed
independently; the WHERE clause re-checks the guard after any wait.
"""

from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from genledger.core.database import dialect_insert
from genledger.core.timezone import utcnow
from genledger.models.ledger import LedgerAccount, LedgerEntry, LedgerOperation
from genledger.services.exceptions import InsufficientCreditError, LedgerInvariantError


@dataclass(frozen=True)
class LedgerBalance:
    """Snapshot of an account: spendable credits and credits reserved for jobs."""

    available: int
    held: int


class LedgerAccountRepository:
    """Repository for LedgerAccount balances and their LedgerEntry audit rows."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get(self, owner_id: str) -> LedgerAccount | None:
        """Retrieve an owner's account, bypassing any stale copy in the session."""
        result = await self.session.execute(
            select(LedgerAccount)
            .where(LedgerAccount.owner_id == owner_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_balance(self, owner_id: str) -> LedgerBalance:
        """Return available and held credits (zero for owners without an account)."""
        account = await self.get(owner_id)
        if account is None:
            return LedgerBalance(available=0, held=0)
        return LedgerBalance(available=account.balance, held=account.held_amount)

    async def ensure_account(self, owner_id: str) -> None:
        """Create an empty account if the owner has none (INSERT ... ON CONFLICT DO NOTHING)."""
        stmt = (
            dialect_insert(self.session, LedgerAccount)
            .values(owner_id=owner_id, balance=0, held_amount=0, updated_at=utcnow())
            .on_conflict_do_nothing(index_elements=["owner_id"])
        )
        await self.session.execute(stmt)

    async def hold(self, owner_id: str, amount: int, job_id: UUID | None = None) -> None:
        """Reserve `amount` credits for an in-flight job.

        Query explanation:
        - UPDATE ledger_accounts
        - SET balance = balance - :amount, held_amount = held_amount + :amount
        - WHERE owner_id = :owner_id AND balance >= :amount

        Raises:
            InsufficientCreditError: If the available balance is below `amount`
        """
        _check_amount(amount)
        result = await self.session.execute(
            update(LedgerAccount)
            .where(
                LedgerAccount.owner_id == owner_id,  # type: ignore[arg-type]
                LedgerAccount.balance >= amount,  # type: ignore[arg-type]
            )
            .values(
                balance=LedgerAccount.balance - amount,
                held_amount=LedgerAccount.held_amount + amount,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:  # type: ignore[attr-defined]
            raise InsufficientCreditError(owner_id, amount)
        await self._record(owner_id, LedgerOperation.HOLD, amount, job_id=job_id)

    async def release_hold(self, owner_id: str, amount: int, job_id: UUID | None = None) -> None:
        """Return held credits to the available balance (full refund).

        Raises:
            LedgerInvariantError: If less than `amount` is held for the owner
        """
        _check_amount(amount)
        result = await self.session.execute(
            update(LedgerAccount)
            .where(
                LedgerAccount.owner_id == owner_id,  # type: ignore[arg-type]
                LedgerAccount.held_amount >= amount,  # type: ignore[arg-type]
            )
            .values(
                balance=LedgerAccount.balance + amount,
                held_amount=LedgerAccount.held_amount - amount,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:  # type: ignore[attr-defined]
            raise LedgerInvariantError(
                f"Cannot release {amount} credits for {owner_id}: hold is smaller than the release"
            )
        await self._record(owner_id, LedgerOperation.RELEASE, amount, job_id=job_id)

    async def settle_hold(self, owner_id: str, amount: int, job_id: UUID | None = None) -> None:
        """Convert held credits into a permanent debit.

        The balance was already reduced at hold time, so only held_amount changes.

        Raises:
            LedgerInvariantError: If less than `amount` is held for the owner
        """
        _check_amount(amount)
        result = await self.session.execute(
            update(LedgerAccount)
            .where(
                LedgerAccount.owner_id == owner_id,  # type: ignore[arg-type]
                LedgerAccount.held_amount >= amount,  # type: ignore[arg-type]
            )
            .values(held_amount=LedgerAccount.held_amount - amount, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:  # type: ignore[attr-defined]
            raise LedgerInvariantError(
                f"Cannot settle {amount} credits for {owner_id}: hold is smaller than the debit"
            )
        await self._record(owner_id, LedgerOperation.SETTLE, amount, job_id=job_id)

    async def credit(
        self, owner_id: str, amount: int, payment_intent_id: UUID | None = None
    ) -> None:
        """Add purchased credits to the available balance, creating the account if needed."""
        _check_amount(amount)
        await self.ensure_account(owner_id)
        await self.session.execute(
            update(LedgerAccount)
            .where(LedgerAccount.owner_id == owner_id)  # type: ignore[arg-type]
            .values(balance=LedgerAccount.balance + amount, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self._record(
            owner_id, LedgerOperation.CREDIT, amount, payment_intent_id=payment_intent_id
        )

    async def list_entries(
        self, owner_id: str | None = None, job_id: UUID | None = None
    ) -> list[LedgerEntry]:
        """Retrieve audit entries filtered by owner and/or job, oldest first."""
        stmt = select(LedgerEntry)
        if owner_id is not None:
            stmt = stmt.where(LedgerEntry.owner_id == owner_id)  # type: ignore[arg-type]
        if job_id is not None:
            stmt = stmt.where(LedgerEntry.job_id == job_id)  # type: ignore[arg-type]
        result = await self.session.execute(
            stmt.order_by(LedgerEntry.created_at.asc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def _record(
        self,
        owner_id: str,
        operation: LedgerOperation,
        amount: int,
        job_id: UUID | None = None,
        payment_intent_id: UUID | None = None,
    ) -> None:
        self.session.add(
            LedgerEntry(
                owner_id=owner_id,
                operation=operation,
                amount=amount,
                job_id=job_id,
                payment_intent_id=payment_intent_id,
            )
        )
        await self.session.flush()


def _check_amount(amount: int) -> None:
    if amount <= 0:
        raise ValueError(f"Ledger amounts must be positive (got {amount})")
