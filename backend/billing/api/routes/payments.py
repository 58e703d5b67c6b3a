import logging
from typing import Any, Dict, Optional

import razorpay
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from ... import ledger
from ...config import Settings, get_settings
from ...razorpay_client import RazorpayNotConfigured, create_order, get_razorpay_client
from ...signatures import verify_payment_signature
from .deps import get_db, require_firebase_user

logger = logging.getLogger("billing.payments")

router = APIRouter(prefix="/payments", tags=["payments"])

_MAX_NOTES = 15
_MAX_NOTE_LENGTH = 256


class CreateOrderRequest(BaseModel):
    amount: int = Field(..., gt=0, description="Amount in minor currency units (paise)")
    currency: str = "INR"
    receipt: Optional[str] = None
    notes: Dict[str, str] = Field(default_factory=dict)
    capture: bool = True


class OrderResponse(BaseModel):
    id: str
    amount: int
    currency: str
    receipt: Optional[str] = None
    status: str
    notes: Dict[str, str] = Field(default_factory=dict)
    key_id: Optional[str] = None


class VerifyPaymentRequest(BaseModel):
    paymentId: str
    orderId: str
    signature: str


class VerifyPaymentResponse(BaseModel):
    verified: bool


def get_razorpay(settings: Settings = Depends(get_settings)):
    try:
        return get_razorpay_client(settings)
    except RazorpayNotConfigured as exc:
        logger.error("Order creation unavailable: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(exc),
        ) from exc


def _order_notes(raw: Dict[str, str], uid: str) -> Dict[str, str]:
    notes = {str(k): str(v) for k, v in raw.items()}
    # Activation trusts notes.userId, so it always names the caller.
    notes["userId"] = uid
    if len(notes) > _MAX_NOTES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"At most {_MAX_NOTES} notes are allowed",
        )
    for key, value in notes.items():
        if len(value) > _MAX_NOTE_LENGTH:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Note {key} exceeds {_MAX_NOTE_LENGTH} characters",
            )
    return notes


@router.post("/orders", response_model=OrderResponse)
def create_payment_order(
    payload: CreateOrderRequest,
    user: Dict[str, Any] = Depends(require_firebase_user),
    settings: Settings = Depends(get_settings),
    client=Depends(get_razorpay),
    db=Depends(get_db),
):
    uid = str(user.get("uid"))
    currency = (payload.currency or settings.default_currency).strip().upper()
    if len(currency) != 3:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid currency")
    notes = _order_notes(payload.notes, uid)
    try:
        order = create_order(
            client,
            amount=payload.amount,
            currency=currency,
            receipt=payload.receipt,
            notes=notes,
            capture=payload.capture,
        )
    except razorpay.errors.BadRequestError as exc:
        logger.warning("Razorpay rejected order for uid=%s: %s", uid, exc)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except Exception as exc:
        logger.error("Razorpay order creation failed for uid=%s: %s", uid, exc)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to create order",
        ) from exc

    record = ledger.record_order(db, order, user_id=uid, auto_capture=payload.capture)
    return OrderResponse(
        id=record["id"],
        amount=record["amount"],
        currency=record["currency"],
        receipt=record["receipt"],
        status=str(order.get("status") or record["status"]),
        notes=record["notes"],
        key_id=settings.razorpay_key_id,
    )


@router.post("/verify", response_model=VerifyPaymentResponse)
def verify_payment(
    payload: VerifyPaymentRequest,
    user: Dict[str, Any] = Depends(require_firebase_user),
    settings: Settings = Depends(get_settings),
    db=Depends(get_db),
):
    if not payload.paymentId.strip() or not payload.orderId.strip() or not payload.signature.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="paymentId, orderId and signature are required",
        )
    if not settings.razorpay_key_secret:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="RAZORPAY_KEY_SECRET is not configured",
        )
    uid = str(user.get("uid"))
    order = ledger.get_order(db, payload.orderId)
    if order and order.get("userId") and order.get("userId") != uid:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Order belongs to another user",
        )

    verified = verify_payment_signature(
        payload.orderId, payload.paymentId, payload.signature, settings.razorpay_key_secret
    )
    if not verified:
        logger.warning(
            "Checkout signature mismatch for payment=%s order=%s uid=%s",
            payload.paymentId,
            payload.orderId,
            uid,
        )
        return VerifyPaymentResponse(verified=False)
    ledger.mark_payment_signature_verified(db, payload.paymentId, payload.orderId)
    return VerifyPaymentResponse(verified=True)
