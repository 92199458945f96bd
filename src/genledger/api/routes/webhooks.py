"""Webhook endpoints for payment and provider notifications.

- POST /webhooks/sepay - SePay incoming bank transfer (HMAC signed)
- POST /webhooks/kie - KIE task status callback

Both senders retry until they get a 2xx, so every outcome the reconcilers
report (including duplicates and mismatches) is acknowledged with 200.
"""

import json

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status

from genledger.api.dependencies import (
    get_gateway,
    get_job_reconciler,
    get_payment_reconciler,
    validate_webhook_signature,
)
from genledger.services.billing.payment_reconciler import PaymentReconciler, WebhookOutcome
from genledger.services.exceptions import JobNotFoundError
from genledger.services.image_generation.provider import ProviderGateway, normalize_kie_record
from genledger.services.jobs.reconciler import JobReconciler

logger = structlog.get_logger()
router = APIRouter()

PAYMENT_NOT_RECOGNIZED_MESSAGE = "payment not recognized"

_OUTCOME_MESSAGES = {
    WebhookOutcome.OK: "payment completed",
    WebhookOutcome.ALREADY_PROCESSED: "payment already processed",
    WebhookOutcome.MISMATCHED: PAYMENT_NOT_RECOGNIZED_MESSAGE,
    WebhookOutcome.EXPIRED: "payment intent expired",
}


def _parse_json(raw_body: bytes) -> dict:
    try:
        payload = json.loads(raw_body)
    except json.JSONDecodeError as e:
        logger.error("webhook.invalid_json", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid JSON payload: {str(e)}",
        )
    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="JSON payload must be an object"
        )
    return payload


@router.post("/sepay", status_code=status.HTTP_200_OK)
async def receive_sepay_webhook(
    raw_body: bytes = Depends(validate_webhook_signature),
    reconciler: PaymentReconciler = Depends(get_payment_reconciler),
):
    """Receive a SePay bank transfer notification.

    Payload fields used: `id` (SePay transaction id), `content` (memo),
    `transferAmount` and `transferType` ("in" or "out").

    HTTP Status Codes:
        200: Event handled (any reconciler outcome, or an ignored outgoing transfer)
        400: Malformed payload
        401: Missing or invalid signature
        500: Internal error (triggers SePay retry)
    """
    payload = _parse_json(raw_body)

    event_id = payload.get("id")
    transfer_type = str(payload.get("transferType", "in")).lower()

    logger.info(
        "webhook.received",
        source="sepay",
        event_id=event_id,
        transfer_type=transfer_type,
        amount=payload.get("transferAmount"),
    )

    if transfer_type == "out":
        logger.info("webhook.outgoing_transfer_ignored", event_id=event_id)
        return {"success": True, "outcome": "ignored", "message": "outgoing transfer ignored"}

    if event_id is None or str(event_id) == "":
        logger.error("webhook.malformed", source="sepay", missing_field="id")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Missing required field in payload: id"
        )

    try:
        transfer_amount = int(payload["transferAmount"])
    except (KeyError, TypeError, ValueError) as e:
        logger.error("webhook.malformed", source="sepay", missing_field="transferAmount")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Missing or invalid transferAmount in payload: {str(e)}",
        )

    outcome = await reconciler.handle_webhook_event(
        external_event_id=str(event_id),
        raw_content=str(payload.get("content") or ""),
        transfer_amount=transfer_amount,
    )

    return {"success": True, "outcome": outcome.value, "message": _OUTCOME_MESSAGES[outcome]}


@router.post("/kie", status_code=status.HTTP_200_OK)
async def receive_kie_callback(
    request: Request,
    gateway: ProviderGateway = Depends(get_gateway),
    reconciler: JobReconciler = Depends(get_job_reconciler),
):
    """Receive a KIE task status callback.

    The callback carries the same record shape as recordInfo, so it goes
    through the same normalization and the same reconciler entry point as
    polling.

    HTTP Status Codes:
        200: Callback handled (including unknown tasks, which are ignored)
        400: Malformed payload
    """
    payload = _parse_json(await request.body())

    record = payload.get("data")
    if not isinstance(record, dict) or not record.get("taskId"):
        logger.error("webhook.malformed", source="kie", payload_keys=list(payload.keys()))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Missing data.taskId in payload"
        )

    task_id = str(record["taskId"])
    normalized = normalize_kie_record(record)

    logger.info(
        "webhook.received",
        source="kie",
        task_id=task_id,
        provider_state=record.get("state"),
        normalized_state=normalized.state.value,
    )

    try:
        job = await reconciler.observe_task(gateway.name, task_id, normalized)
    except JobNotFoundError:
        logger.warning("webhook.unknown_task", source="kie", task_id=task_id)
        return {"status": "ignored", "message": "Unknown task"}

    return {"status": "success", "job_id": str(job.id), "state": job.state.value}
