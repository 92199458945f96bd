"""PaymentIntent repository for genledger.

Provides data access methods for PaymentIntent entities.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from genledger.models.payment_intent import PaymentIntent, PaymentState


class PaymentIntentRepository:
    """Repository for PaymentIntent entities.

    State changes go through transition() so two webhook deliveries racing
    on one intent cannot both complete it.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, intent: PaymentIntent) -> PaymentIntent:
        """Persist new payment intent to database."""
        self.session.add(intent)
        await self.session.flush()
        return intent

    async def get_by_id(self, intent_id: UUID) -> PaymentIntent | None:
        """Retrieve payment intent by UUID."""
        result = await self.session.execute(
            select(PaymentIntent)
            .where(PaymentIntent.id == intent_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_match_token(self, match_token: str) -> PaymentIntent | None:
        """Retrieve payment intent by the token embedded in the bank memo."""
        result = await self.session.execute(
            select(PaymentIntent)
            .where(PaymentIntent.match_token == match_token)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_by_owner(self, owner_id: str, limit: int = 50) -> list[PaymentIntent]:
        """Retrieve an owner's payment intents, newest first."""
        result = await self.session.execute(
            select(PaymentIntent)
            .where(PaymentIntent.owner_id == owner_id)  # type: ignore[arg-type]
            .order_by(PaymentIntent.created_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def transition(
        self,
        intent_id: UUID,
        from_state: PaymentState,
        to_state: PaymentState,
        **fields: Any,
    ) -> bool:
        """Compare-and-swap the intent state.

        Returns:
            True if the intent was in `from_state` and has been updated
        """
        result = await self.session.execute(
            update(PaymentIntent)
            .where(
                PaymentIntent.id == intent_id,  # type: ignore[arg-type]
                PaymentIntent.state == from_state,  # type: ignore[arg-type]
            )
            .values(state=to_state, **fields)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def expire_overdue(self, now: datetime, owner_id: str | None = None) -> int:
        """Mark pending intents past their deadline as expired.

        Query explanation:
        - UPDATE payment_intents SET state = 'expired'
        - WHERE state = 'pending' AND expires_at <= :now [AND owner_id = :owner_id]

        Returns:
            Number of intents expired
        """
        stmt = update(PaymentIntent).where(
            PaymentIntent.state == PaymentState.PENDING,  # type: ignore[arg-type]
            PaymentIntent.expires_at <= now,  # type: ignore[arg-type]
        )
        if owner_id is not None:
            stmt = stmt.where(PaymentIntent.owner_id == owner_id)  # type: ignore[arg-type]
        result = await self.session.execute(
            stmt.values(state=PaymentState.EXPIRED).execution_options(synchronize_session=False)
        )
        return result.rowcount  # type: ignore[attr-defined]
