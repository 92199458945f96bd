"""Credit ledger API endpoints.

- GET /api/ledger/balance - Available and held credits for the caller
"""

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from genledger.api.dependencies import get_owner_id, get_uow_factory

router = APIRouter(prefix="/api/ledger", tags=["ledger"])


class BalanceResponse(BaseModel):
    """Response model for balance queries."""

    available: int = Field(..., description="Credits the caller can spend now")
    held: int = Field(..., description="Credits reserved for in-flight jobs")


@router.get("/balance", response_model=BalanceResponse, status_code=status.HTTP_200_OK)
async def get_balance(
    owner_id: str = Depends(get_owner_id),
    uow_factory=Depends(get_uow_factory),
) -> BalanceResponse:
    """Return the caller's balance (zero for callers who never topped up)."""
    async with await uow_factory() as uow:
        balance = await uow.ledger.get_balance(owner_id)

    return BalanceResponse(available=balance.available, held=balance.held)
