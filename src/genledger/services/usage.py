"""Best-effort usage logging for downstream analytics."""

from typing import Any, Callable, Optional

import structlog

from genledger.models.usage_log import UsageLog

logger = structlog.get_logger()

ACTION_GENERATE_IMAGE = "generate_image"
ACTION_PAYMENT = "payment"


async def record_usage(
    uow_factory: Callable,
    owner_id: str,
    action: str,
    credits_used: int,
    success: bool,
    details: Optional[dict[str, Any]] = None,
) -> None:
    """Write one usage record in its own transaction.

    Called after the business transaction has committed. Failures are logged
    and swallowed: usage records never affect job or ledger state.
    """
    try:
        async with await uow_factory() as uow:
            await uow.usage_logs.add(
                UsageLog(
                    owner_id=owner_id,
                    action=action,
                    credits_used=credits_used,
                    success=success,
                    details=details or {},
                )
            )
    except Exception as e:
        logger.warning(
            "usage.record_failed",
            owner_id=owner_id,
            action=action,
            error_type=type(e).__name__,
            error_message=str(e),
        )
