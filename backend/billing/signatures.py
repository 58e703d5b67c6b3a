"""Razorpay HMAC-SHA256 signature checks.

Webhook signatures cover the exact request body bytes. Checkout signatures
cover ``"{order_id}|{payment_id}"`` and are signed with the API key secret.
"""
from __future__ import annotations

import hashlib
import hmac
from typing import Union

BytesLike = Union[bytes, bytearray, str]


def _as_bytes(value: BytesLike) -> bytes:
    if isinstance(value, str):
        return value.encode("utf-8")
    return bytes(value)


def compute_signature(payload: BytesLike, secret: str) -> str:
    return hmac.new(_as_bytes(secret), _as_bytes(payload), hashlib.sha256).hexdigest()


def verify_webhook_signature(raw_body: BytesLike, signature: str | None, secret: str) -> bool:
    if not signature or not secret:
        return False
    expected = compute_signature(raw_body, secret)
    return hmac.compare_digest(expected.encode("ascii"), signature.strip().encode("utf-8"))


def verify_payment_signature(
    order_id: str,
    payment_id: str,
    signature: str | None,
    key_secret: str,
) -> bool:
    if not order_id or not payment_id:
        return False
    return verify_webhook_signature(f"{order_id}|{payment_id}", signature, key_secret)
