"""FastAPI dependencies for request validation and common operations.

This module provides reusable FastAPI dependencies for:
- Webhook signature validation
- Caller identity (set by the upstream auth layer)
- Services built from app state
"""

from typing import Annotated, Callable

import structlog
from fastapi import Depends, Header, HTTPException, Request, status

from genledger.core.config import Settings
from genledger.services.billing.payment_reconciler import PaymentReconciler
from genledger.services.billing.sepay_signature import validate_sepay_signature
from genledger.services.image_generation.provider import ProviderGateway
from genledger.services.jobs.job_service import JobService
from genledger.services.jobs.reconciler import JobReconciler
from genledger.uow import UnitOfWork

logger = structlog.get_logger()


def get_settings() -> Settings:
    """Get application settings instance.

    Returns:
        Settings instance loaded from environment variables.
    """
    return Settings()  # type: ignore[call-arg]  # Pydantic loads from env vars


async def validate_webhook_signature(
    request: Request,
    x_sepay_signature: Annotated[str | None, Header()] = None,
    settings: Settings = Depends(get_settings),
) -> bytes:
    """Validate SePay webhook signature before processing request.

    Reads the raw request body and checks the HMAC-SHA256 signature from the
    X-Sepay-Signature header. Requests are rejected when no secret is
    configured: an unsigned endpoint would let anyone mint credits.

    Returns:
        Raw request body bytes (for further processing by the endpoint)

    Raises:
        HTTPException: 401 Unauthorized if signature is missing or invalid
    """
    if not settings.sepay_webhook_secret:
        logger.error("webhook.secret_not_configured")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Webhook signing is not configured"
        )

    if not x_sepay_signature:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-Sepay-Signature header"
        )

    # Must be the exact bytes received for signature validation
    raw_body = await request.body()

    is_valid = validate_sepay_signature(
        raw_body=raw_body,
        signature=x_sepay_signature,
        secret=settings.sepay_webhook_secret,
    )

    if not is_valid:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature"
        )

    return raw_body


def get_owner_id(x_owner_id: Annotated[str | None, Header()] = None) -> str:
    """Return the authenticated caller's id from the X-Owner-Id header.

    Authentication happens upstream; this service trusts the header.

    Raises:
        HTTPException: 401 if the header is missing or blank
    """
    if not x_owner_id or not x_owner_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-Owner-Id header"
        )
    return x_owner_id.strip()


def get_uow_factory(request: Request) -> Callable[[], UnitOfWork]:
    """Get UnitOfWork factory from app state.

    Example:
        >>> @router.get("/endpoint")
        >>> async def endpoint(uow_factory=Depends(get_uow_factory)):
        ...     async with await uow_factory() as uow:
        ...         await uow.ledger.get_balance(owner_id)
    """
    return request.app.state.uow_factory


def get_gateway(request: Request) -> ProviderGateway:
    """Get the provider gateway created in the app lifespan."""
    return request.app.state.gateway


def get_job_service(
    uow_factory=Depends(get_uow_factory),
    gateway: ProviderGateway = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
) -> JobService:
    return JobService(uow_factory, settings, provider=gateway.name)


def get_job_reconciler(
    uow_factory=Depends(get_uow_factory),
    gateway: ProviderGateway = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
) -> JobReconciler:
    return JobReconciler(uow_factory, gateway, settings)


def get_payment_reconciler(
    uow_factory=Depends(get_uow_factory),
    settings: Settings = Depends(get_settings),
) -> PaymentReconciler:
    return PaymentReconciler(uow_factory, settings)
