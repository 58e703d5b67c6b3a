from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Dict, Optional

import razorpay

from .config import Settings

logger = logging.getLogger("billing.razorpay")


class RazorpayNotConfigured(RuntimeError):
    pass


@lru_cache(maxsize=4)
def _client_for(key_id: str, key_secret: str) -> razorpay.Client:
    client = razorpay.Client(auth=(key_id, key_secret))
    client.set_app_details({"title": "candidate-billing", "version": "1.0.0"})
    return client


def get_razorpay_client(settings: Settings) -> razorpay.Client:
    if not settings.razorpay_configured:
        raise RazorpayNotConfigured("RAZORPAY_KEY_ID / RAZORPAY_KEY_SECRET are not configured")
    return _client_for(settings.razorpay_key_id, settings.razorpay_key_secret)


def create_order(
    client: razorpay.Client,
    *,
    amount: int,
    currency: str,
    receipt: Optional[str],
    notes: Dict[str, str],
    capture: bool,
) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "amount": amount,
        "currency": currency,
        "notes": notes,
        "payment_capture": 1 if capture else 0,
    }
    if receipt:
        data["receipt"] = receipt
    order = client.order.create(data=data)
    logger.info("Razorpay order %s created amount=%s %s", order.get("id"), amount, currency)
    return order


def capture_payment(
    client: razorpay.Client,
    payment_id: str,
    *,
    amount: int,
    currency: str,
) -> Dict[str, Any]:
    return client.payment.capture(payment_id, amount, {"currency": currency})
