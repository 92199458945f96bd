"""Payment reconciler for SePay bank-transfer top-ups.

A user creates a PaymentIntent and pays by bank transfer with the intent's
match token in the memo. SePay reports the incoming transfer by webhook, at
least once and in no particular order; this module correlates the transfer
with its intent and credits the ledger exactly once.

Credit policy: the ledger is always credited `expected_amount`. A larger
transfer is recorded in `transfer_amount` and logged, never credited.
"""

import re
import secrets
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

import structlog

from genledger.core.config import Settings
from genledger.core.timezone import utcnow
from genledger.models.payment_intent import PaymentIntent, PaymentState
from genledger.models.processed_event import EventSource
from genledger.services.usage import ACTION_PAYMENT, record_usage

logger = structlog.get_logger()

TOKEN_HEX_LENGTH = 10


class WebhookOutcome(str, Enum):
    """Result of one webhook delivery. All outcomes are acknowledged to the sender."""

    OK = "ok"
    MISMATCHED = "mismatched"
    ALREADY_PROCESSED = "already_processed"
    EXPIRED = "expired"


class PaymentReconciler:
    """Matches bank transfers to payment intents and credits the ledger."""

    def __init__(self, uow_factory: Callable, settings: Settings):
        """Initialize reconciler.

        Args:
            uow_factory: Factory producing UnitOfWork instances
            settings: Application settings (token prefix, intent TTL)
        """
        self.uow_factory = uow_factory
        self.settings = settings
        self.prefix = settings.match_token_prefix.upper()
        # Banks often drop the hyphen or change case in the memo
        body = rf"([0-9A-F]{{{TOKEN_HEX_LENGTH}}})"
        self._token_pattern = re.compile(
            rf"(?<![A-Z0-9]){re.escape(self.prefix)}-?{body}(?![A-Z0-9])",
            re.IGNORECASE,
        )

    def new_match_token(self) -> str:
        return f"{self.prefix}-{secrets.token_hex(TOKEN_HEX_LENGTH // 2).upper()}"

    def extract_match_tokens(self, content: Optional[str]) -> list[str]:
        """Find every well-formed match token in a free-text bank memo, in order.

        Returns:
            Normalized tokens ("PAY-7F3A9C21D4"), without duplicates
        """
        if not content:
            return []
        tokens: list[str] = []
        for match in self._token_pattern.finditer(content):
            token = f"{self.prefix}-{match.group(1).upper()}"
            if token not in tokens:
                tokens.append(token)
        return tokens

    def extract_match_token(self, content: Optional[str]) -> Optional[str]:
        """Return the first match token in a memo, or None if it has none."""
        tokens = self.extract_match_tokens(content)
        return tokens[0] if tokens else None

    async def create_intent(
        self, owner_id: str, amount: int, description: str = ""
    ) -> PaymentIntent:
        """Create a pending intent expiring after PAYMENT_INTENT_TTL_MINUTES.

        Raises:
            ValueError: If amount is not positive
        """
        if amount <= 0:
            raise ValueError(f"Payment amount must be positive (got {amount})")

        now = utcnow()
        intent = PaymentIntent(
            owner_id=owner_id,
            expected_amount=amount,
            match_token=self.new_match_token(),
            description=description,
            created_at=now,
            expires_at=now + timedelta(minutes=self.settings.payment_intent_ttl_minutes),
        )
        async with await self.uow_factory() as uow:
            await uow.payments.add(intent)

        logger.info(
            "payment.intent_created",
            intent_id=str(intent.id),
            owner_id=owner_id,
            amount=amount,
            match_token=intent.match_token,
        )
        return intent

    async def handle_webhook_event(
        self, external_event_id: str, raw_content: str, transfer_amount: int
    ) -> WebhookOutcome:
        """Process one incoming-transfer notification.

        Everything happens in one transaction, starting with the idempotency
        record for (payment_gateway, external_event_id). A redelivered event
        therefore returns ALREADY_PROCESSED without touching the ledger.

        Outcomes:
            - ALREADY_PROCESSED: event seen before, or intent already completed
            - MISMATCHED: no token, unknown token, or transfer below expected amount
            - EXPIRED: intent expired (by state or deadline)
            - OK: intent completed and ledger credited expected_amount
        """
        candidates = self.extract_match_tokens(raw_content)
        now = utcnow()
        log = logger.bind(event_id=external_event_id, amount=transfer_amount)

        async with await self.uow_factory() as uow:
            first_seen = await uow.processed_events.record(
                EventSource.PAYMENT_GATEWAY, external_event_id
            )
            if not first_seen:
                log.info("webhook.duplicate")
                return WebhookOutcome.ALREADY_PROCESSED

            # A memo can carry other words that look like tokens; the first known one wins
            intent = None
            for token in candidates:
                intent = await uow.payments.get_by_match_token(token)
                if intent is not None:
                    break
            if intent is None:
                log.warning(
                    "payment.unmatched",
                    candidates=candidates,
                    content=raw_content[:200] if raw_content else "",
                )
                return WebhookOutcome.MISMATCHED
            log = log.bind(match_token=intent.match_token)

            if intent.state in (PaymentState.MATCHED, PaymentState.COMPLETED):
                log.info("payment.already_completed", intent_id=str(intent.id))
                return WebhookOutcome.ALREADY_PROCESSED

            if intent.state == PaymentState.EXPIRED or intent.is_overdue(now):
                if intent.state == PaymentState.PENDING:
                    await uow.payments.transition(
                        intent.id, PaymentState.PENDING, PaymentState.EXPIRED
                    )
                # Money arrived for an intent we no longer honour; needs manual follow-up
                log.error("payment.expired", intent_id=str(intent.id), owner_id=intent.owner_id)
                return WebhookOutcome.EXPIRED

            if intent.state == PaymentState.MISMATCHED:
                log.warning("payment.intent_mismatched", intent_id=str(intent.id))
                return WebhookOutcome.MISMATCHED

            if transfer_amount < intent.expected_amount:
                await uow.payments.transition(
                    intent.id,
                    PaymentState.PENDING,
                    PaymentState.MISMATCHED,
                    external_event_id=external_event_id,
                    transfer_amount=transfer_amount,
                )
                log.warning(
                    "payment.underpaid",
                    intent_id=str(intent.id),
                    expected=intent.expected_amount,
                )
                return WebhookOutcome.MISMATCHED

            matched = await uow.payments.transition(
                intent.id,
                PaymentState.PENDING,
                PaymentState.MATCHED,
                external_event_id=external_event_id,
                transfer_amount=transfer_amount,
            )
            if not matched:
                # A different event for the same intent committed first
                log.info("payment.already_completed", intent_id=str(intent.id))
                return WebhookOutcome.ALREADY_PROCESSED

            await uow.ledger.credit(
                intent.owner_id, intent.expected_amount, payment_intent_id=intent.id
            )
            await uow.payments.transition(
                intent.id, PaymentState.MATCHED, PaymentState.COMPLETED, completed_at=now
            )

        if transfer_amount > intent.expected_amount:
            log.warning(
                "payment.overpaid",
                intent_id=str(intent.id),
                expected=intent.expected_amount,
            )
        log.info(
            "payment.completed",
            intent_id=str(intent.id),
            owner_id=intent.owner_id,
            credited=intent.expected_amount,
        )

        await record_usage(
            self.uow_factory,
            owner_id=intent.owner_id,
            action=ACTION_PAYMENT,
            credits_used=0,
            success=True,
            details={
                "intent_id": str(intent.id),
                "match_token": intent.match_token,
                "credited": intent.expected_amount,
                "transfer_amount": transfer_amount,
            },
        )
        return WebhookOutcome.OK

    async def expire_intents(self, now: Optional[datetime] = None) -> int:
        """Expire pending intents past their deadline.

        Returns:
            Number of intents expired
        """
        async with await self.uow_factory() as uow:
            count = await uow.payments.expire_overdue(now or utcnow())
        if count:
            logger.info("payment.intents_expired", count=count)
        return count

    async def list_intents(self, owner_id: str, limit: int = 50) -> list[PaymentIntent]:
        """Return the owner's payment history, expiring overdue intents first."""
        async with await self.uow_factory() as uow:
            await uow.payments.expire_overdue(utcnow(), owner_id=owner_id)
            return await uow.payments.list_by_owner(owner_id, limit=limit)

    async def get_intent(self, owner_id: str, match_token: str) -> Optional[PaymentIntent]:
        """Return one of the owner's intents by token (None if not theirs or unknown)."""
        normalized = self.extract_match_token(match_token) or match_token.upper()
        async with await self.uow_factory() as uow:
            intent = await uow.payments.get_by_match_token(normalized)
            if intent is None or intent.owner_id != owner_id:
                return None
            if intent.is_overdue(utcnow()):
                await uow.payments.transition(intent.id, PaymentState.PENDING, PaymentState.EXPIRED)
                intent = await uow.payments.get_by_match_token(normalized)
        return intent
