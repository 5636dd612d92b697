"""Stripe webhook endpoint."""

import structlog
from fastapi import APIRouter, HTTPException, Request

from metered_billing.config import settings
from metered_billing.exceptions import WebhookSignatureError
from metered_billing.routes.dependencies import DbSession
from metered_billing.services.billing_events import process_event, verify_event

logger = structlog.get_logger()

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def handle_stripe_webhook(request: Request, db: DbSession) -> dict[str, bool]:
    """Verify and apply a Stripe event.

    Once the signature checks out the response is always 200 so Stripe does
    not redeliver; handler failures are logged instead.
    """
    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("STRIPE_WEBHOOK_SECRET not configured - rejecting webhook")
        raise HTTPException(status_code=503, detail="Webhook verification not configured")

    # Signature covers the exact raw bytes
    payload = await request.body()
    try:
        event = verify_event(payload, request.headers.get("stripe-signature"))
    except WebhookSignatureError as e:
        logger.warning("Rejected Stripe webhook", reason=e.reason)
        raise HTTPException(status_code=400, detail=e.message) from e

    logger.info("Received Stripe webhook", event_type=event.get("type"), event_id=event.get("id"))
    await process_event(db, event)
    return {"received": True}
