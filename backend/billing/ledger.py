from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from google.api_core.exceptions import AlreadyExists

logger = logging.getLogger("billing.ledger")

ORDERS_COLLECTION = "orders"
PAYMENTS_COLLECTION = "payments"
CAPTURE_CLAIMS_COLLECTION = "payment_captures"

ORDER_CREATED = "created"
ORDER_PAID = "paid"
ORDER_FAILED = "failed"
_ORDER_STATUSES = {ORDER_CREATED, ORDER_PAID, ORDER_FAILED}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_notes(raw: Any) -> Dict[str, str]:
    # Razorpay sends an empty list when an entity has no notes.
    if not isinstance(raw, dict):
        return {}
    return {str(key): "" if value is None else str(value) for key, value in raw.items()}


def _to_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def get_order(db, order_id: Optional[str]) -> Optional[Dict[str, Any]]:
    if not order_id:
        return None
    snapshot = db.collection(ORDERS_COLLECTION).document(order_id).get()
    return snapshot.to_dict() if snapshot.exists else None


def get_payment(db, payment_id: str) -> Optional[Dict[str, Any]]:
    snapshot = db.collection(PAYMENTS_COLLECTION).document(payment_id).get()
    return snapshot.to_dict() if snapshot.exists else None


def record_order(
    db,
    order: Dict[str, Any],
    *,
    user_id: str,
    auto_capture: bool,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Upsert a provider order keyed by its id. Never moves status backwards."""
    order_id = str(order.get("id") or "").strip()
    if not order_id:
        raise ValueError("order id is required")
    now = now or _now()
    ref = db.collection(ORDERS_COLLECTION).document(order_id)
    snapshot = ref.get()
    existing = snapshot.to_dict() if snapshot.exists else {}

    status = existing.get("status") or ORDER_CREATED
    payload = {
        "id": order_id,
        "userId": existing.get("userId") or user_id,
        "amount": _to_int(order.get("amount")),
        "currency": str(order.get("currency") or "INR"),
        "receipt": order.get("receipt"),
        "notes": normalize_notes(order.get("notes")),
        "autoCapture": bool(auto_capture),
        "status": status,
        "createdAt": existing.get("createdAt") or now,
        "updatedAt": now,
    }
    ref.set(payload, merge=True)
    return payload


def mark_order_status(db, order_id: Optional[str], status: str, now: Optional[datetime] = None) -> bool:
    """Move an order from ``created`` to ``paid`` or ``failed``. Returns True if it changed."""
    if status not in _ORDER_STATUSES or status == ORDER_CREATED:
        raise ValueError(f"Unsupported order status transition: {status}")
    if not order_id:
        return False
    now = now or _now()
    ref = db.collection(ORDERS_COLLECTION).document(order_id)
    snapshot = ref.get()
    existing = snapshot.to_dict() if snapshot.exists else {}
    current = existing.get("status") or ORDER_CREATED
    if current != ORDER_CREATED:
        if current != status:
            logger.warning(
                "Ignoring order %s transition %s -> %s", order_id, current, status
            )
        return False
    patch: Dict[str, Any] = {"id": order_id, "status": status, "updatedAt": now}
    if not snapshot.exists:
        patch["createdAt"] = now
    if status == ORDER_PAID:
        patch["paidAt"] = now
    ref.set(patch, merge=True)
    return True


def record_payment(
    db,
    payment: Dict[str, Any],
    event: str,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Merge a webhook payment entity into ``payments/{id}``.

    ``captured`` and ``signatureVerified`` are only defaulted here; the
    dedicated mark_* helpers own them. Returns the merged record.
    """
    payment_id = str(payment.get("id") or "").strip()
    if not payment_id:
        raise ValueError("payment id is required")
    now = now or _now()
    ref = db.collection(PAYMENTS_COLLECTION).document(payment_id)
    snapshot = ref.get()
    existing = snapshot.to_dict() if snapshot.exists else {}

    order_id = payment.get("order_id") or existing.get("orderId")
    notes = normalize_notes(payment.get("notes"))
    if not notes:
        notes = normalize_notes(existing.get("notes"))
    if not notes and order_id:
        order = get_order(db, order_id) or {}
        notes = normalize_notes(order.get("notes"))

    payload: Dict[str, Any] = {
        "id": payment_id,
        "orderId": order_id,
        "amount": _to_int(payment.get("amount"), _to_int(existing.get("amount"))),
        "currency": str(payment.get("currency") or existing.get("currency") or "INR"),
        "status": str(payment.get("status") or existing.get("status") or ""),
        "method": payment.get("method") or existing.get("method"),
        "email": payment.get("email") or existing.get("email"),
        "contact": payment.get("contact") or existing.get("contact"),
        "notes": notes,
        "errorCode": payment.get("error_code") or existing.get("errorCode"),
        "errorDescription": payment.get("error_description") or existing.get("errorDescription"),
        "webhookEvents": {event: now},
        "updatedAt": now,
    }
    if not snapshot.exists:
        payload["captured"] = False
        payload["signatureVerified"] = False
        payload["createdAt"] = now
    ref.set(payload, merge=True)

    merged = {**existing, **payload}
    merged["webhookEvents"] = {**(existing.get("webhookEvents") or {}), event: now}
    return merged


def claim_capture_attempt(db, payment_id: str, amount: int, now: Optional[datetime] = None) -> bool:
    """Reserve the single capture attempt for a payment.

    The claim document is created, never overwritten, so of two overlapping
    deliveries only one gets True and may call the provider.
    """
    now = now or _now()
    try:
        db.collection(CAPTURE_CLAIMS_COLLECTION).document(payment_id).create(
            {"paymentId": payment_id, "amount": amount, "createdAt": now}
        )
    except AlreadyExists:
        logger.info("Capture for payment %s already claimed; skipping", payment_id)
        return False
    db.collection(PAYMENTS_COLLECTION).document(payment_id).set(
        {"captureAttemptedAt": now, "captureAmount": amount, "updatedAt": now},
        merge=True,
    )
    return True


def mark_payment_captured(
    db,
    payment_id: str,
    *,
    capture_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Flip ``captured`` to True once. Returns False if it was already set."""
    now = now or _now()
    ref = db.collection(PAYMENTS_COLLECTION).document(payment_id)
    snapshot = ref.get()
    existing = snapshot.to_dict() if snapshot.exists else {}
    if existing.get("captured") is True:
        return False
    ref.set(
        {
            "captured": True,
            "capturedAt": now,
            "captureId": capture_id or existing.get("captureId"),
            "captureError": None,
            "updatedAt": now,
        },
        merge=True,
    )
    return True


def record_capture_failure(db, payment_id: str, reason: str, now: Optional[datetime] = None) -> None:
    now = now or _now()
    db.collection(PAYMENTS_COLLECTION).document(payment_id).set(
        {"captureError": reason, "captureFailedAt": now, "updatedAt": now},
        merge=True,
    )


def mark_payment_signature_verified(
    db,
    payment_id: str,
    order_id: str,
    now: Optional[datetime] = None,
) -> bool:
    now = now or _now()
    ref = db.collection(PAYMENTS_COLLECTION).document(payment_id)
    snapshot = ref.get()
    existing = snapshot.to_dict() if snapshot.exists else {}
    if existing.get("signatureVerified") is True:
        return False
    patch: Dict[str, Any] = {
        "id": payment_id,
        "orderId": existing.get("orderId") or order_id,
        "signatureVerified": True,
        "signatureVerifiedAt": now,
        "updatedAt": now,
    }
    if not snapshot.exists:
        patch["captured"] = False
        patch["createdAt"] = now
    ref.set(patch, merge=True)
    return True
