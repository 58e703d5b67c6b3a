import json
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool

from ...capture import CaptureCoordinator
from ...config import Settings, get_settings
from ...signatures import verify_webhook_signature
from ...state import parse_event
from .deps import get_db

logger = logging.getLogger("billing.webhook")
security_logger = logging.getLogger("billing.security")

router = APIRouter(tags=["webhooks"])


@router.post("/razorpay/webhook")
async def razorpay_webhook(
    request: Request,
    x_razorpay_signature: str = Header(default=None),
    settings: Settings = Depends(get_settings),
    db=Depends(get_db),
):
    if not settings.razorpay_webhook_secret:
        logger.error("RAZORPAY_WEBHOOK_SECRET is not configured; rejecting webhook")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook secret not configured",
        )

    # The signature covers the exact bytes, so read them before any parsing.
    raw = await request.body()
    if not x_razorpay_signature:
        security_logger.warning("Razorpay webhook without signature from %s", request.client)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing signature")
    if not verify_webhook_signature(raw, x_razorpay_signature, settings.razorpay_webhook_secret):
        security_logger.warning("Razorpay webhook signature mismatch from %s", request.client)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")

    try:
        event = parse_event(json.loads(raw))
    except ValueError as exc:
        logger.warning("Rejecting malformed webhook body: %s", exc)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    coordinator = CaptureCoordinator(db, settings)
    try:
        outcome = await run_in_threadpool(coordinator.handle, event)
    except Exception as exc:
        # Nothing was recorded; a 500 makes Razorpay redeliver.
        logger.exception("Failed to record webhook %s: %s", event.name, exc)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to process webhook",
        ) from exc

    return {
        "status": "ok",
        "event": outcome.event,
        "state": outcome.state.value,
        "activation": outcome.activation.status if outcome.activation else None,
    }
