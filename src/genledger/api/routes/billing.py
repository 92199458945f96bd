"""Billing API endpoints for bank-transfer top-ups.

This module implements:
- POST /api/billing/intents - Create a payment intent and its memo token
- GET /api/billing/intents - Payment history (overdue intents are expired first)
- GET /api/billing/intents/{match_token} - One payment intent
"""

from datetime import datetime
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from genledger.api.dependencies import get_owner_id, get_payment_reconciler
from genledger.models.payment_intent import PaymentIntent, PaymentState
from genledger.services.billing.payment_reconciler import PaymentReconciler

logger = structlog.get_logger()
router = APIRouter(prefix="/api/billing", tags=["billing"])


# Request/Response Models


class CreateIntentRequest(BaseModel):
    """Request model for a new payment intent."""

    amount: int = Field(..., gt=0, description="Amount the user will transfer (VND)")
    description: str = Field(default="", max_length=255)


class IntentResponse(BaseModel):
    """Caller-facing view of a payment intent."""

    intent_id: UUID
    match_token: str = Field(..., description="Token the user must put in the transfer memo")
    amount: int
    description: str
    state: PaymentState
    created_at: datetime
    expires_at: datetime
    completed_at: datetime | None = None

    @classmethod
    def from_intent(cls, intent: PaymentIntent) -> "IntentResponse":
        return cls(
            intent_id=intent.id,
            match_token=intent.match_token,
            amount=intent.expected_amount,
            description=intent.description,
            state=intent.state,
            created_at=intent.created_at,
            expires_at=intent.expires_at,
            completed_at=intent.completed_at,
        )


# API Endpoints


@router.post("/intents", response_model=IntentResponse, status_code=status.HTTP_201_CREATED)
async def create_intent(
    request: CreateIntentRequest,
    owner_id: str = Depends(get_owner_id),
    reconciler: PaymentReconciler = Depends(get_payment_reconciler),
) -> IntentResponse:
    """Create a payment intent that expires after PAYMENT_INTENT_TTL_MINUTES."""
    intent = await reconciler.create_intent(owner_id, request.amount, request.description)
    return IntentResponse.from_intent(intent)


@router.get("/intents", response_model=list[IntentResponse], status_code=status.HTTP_200_OK)
async def list_intents(
    owner_id: str = Depends(get_owner_id),
    reconciler: PaymentReconciler = Depends(get_payment_reconciler),
) -> list[IntentResponse]:
    """Return the caller's payment history, newest first."""
    intents = await reconciler.list_intents(owner_id)
    return [IntentResponse.from_intent(intent) for intent in intents]


@router.get(
    "/intents/{match_token}", response_model=IntentResponse, status_code=status.HTTP_200_OK
)
async def get_intent(
    match_token: str,
    owner_id: str = Depends(get_owner_id),
    reconciler: PaymentReconciler = Depends(get_payment_reconciler),
) -> IntentResponse:
    """Return one of the caller's payment intents.

    Raises:
        HTTPException 404: Unknown token or intent owned by someone else
    """
    intent = await reconciler.get_intent(owner_id, match_token)
    if intent is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found")
    return IntentResponse.from_intent(intent)
