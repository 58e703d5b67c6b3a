from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from google.api_core.exceptions import AlreadyExists

from .config import Settings
from .ledger import normalize_notes
from .plans import derive_plan_type, entitlement_patch, parse_validity_days
from .provisioning import ProvisioningJob
from .tasks import dispatch_provisioning

logger = logging.getLogger("billing.activation")

SUBSCRIPTIONS_COLLECTION = "subscriptions"
ACTIVATIONS_COLLECTION = "subscription_activations"
USERS_COLLECTION = "users"

ACTIVATED = "activated"
SKIPPED = "skipped"
DUPLICATE = "duplicate"


@dataclass(frozen=True)
class ActivationResult:
    status: str
    subscription_id: Optional[str] = None
    plan_type: Optional[str] = None
    expires_at: Optional[datetime] = None
    reason: Optional[str] = None


def _first_note(notes: Dict[str, str], *keys: str) -> str:
    for key in keys:
        value = str(notes.get(key) or "").strip()
        if value:
            return value
    return ""


def warning_flag(hours: int) -> str:
    return f"warningSent_{hours}h"


def build_subscription(
    *,
    subscription_id: str,
    payment: Dict[str, Any],
    user_id: str,
    plan_id: str,
    plan_type: str,
    election_type: Optional[str],
    validity_days: int,
    now: datetime,
    warning_hours,
) -> Dict[str, Any]:
    amount = payment.get("amount") or 0
    record = {
        "id": subscription_id,
        "userId": user_id,
        "planId": plan_id,
        "planType": plan_type,
        "electionType": election_type,
        "validityDays": validity_days,
        "amountPaid": int(amount) / 100,
        "currency": payment.get("currency") or "INR",
        "purchasedAt": now,
        "expiresAt": now + timedelta(days=validity_days),
        "isActive": True,
        "paymentId": payment.get("id"),
        "orderId": payment.get("orderId") or payment.get("order_id"),
        "createdAt": now,
        "updatedAt": now,
    }
    for hours in warning_hours:
        record[warning_flag(hours)] = False
    return record


def activate_subscription(
    db,
    settings: Settings,
    payment: Dict[str, Any],
    *,
    now: Optional[datetime] = None,
) -> ActivationResult:
    """Turn a captured payment into a subscription plus user entitlement.

    The activation marker, the subscription insert and the entitlement update
    are committed in one batch. A payment id that was already activated makes
    the batch fail with ``AlreadyExists`` and the call is a no-op.
    """
    notes = normalize_notes(payment.get("notes"))
    plan_id = _first_note(notes, "planId", "plan_id")
    user_id = _first_note(notes, "userId", "user_id")
    payment_id = str(payment.get("id") or "")
    if not plan_id or not user_id:
        logger.info(
            "Skipping activation for payment %s: planId=%r userId=%r",
            payment_id,
            plan_id,
            user_id,
        )
        return ActivationResult(status=SKIPPED, reason="missing_plan_or_user")

    now = now or datetime.now(timezone.utc)
    validity_days = parse_validity_days(
        notes.get("validityDays") or notes.get("validity_days"),
        settings.default_validity_days,
    )
    plan_type = derive_plan_type(plan_id)
    election_type = _first_note(notes, "electionType", "election_type") or None

    sub_ref = db.collection(SUBSCRIPTIONS_COLLECTION).document()
    subscription = build_subscription(
        subscription_id=sub_ref.id,
        payment=payment,
        user_id=user_id,
        plan_id=plan_id,
        plan_type=plan_type,
        election_type=election_type,
        validity_days=validity_days,
        now=now,
        warning_hours=settings.expiry_warning_thresholds,
    )
    expires_at = subscription["expiresAt"]

    user_ref = db.collection(USERS_COLLECTION).document(user_id)
    user_exists = user_ref.get().exists

    batch = db.batch()
    batch.create(
        db.collection(ACTIVATIONS_COLLECTION).document(payment_id),
        {
            "paymentId": payment_id,
            "subscriptionId": sub_ref.id,
            "userId": user_id,
            "planId": plan_id,
            "createdAt": now,
        },
    )
    batch.set(sub_ref, subscription)
    if user_exists:
        batch.update(user_ref, {**entitlement_patch(plan_type, plan_id, expires_at), "updatedAt": now})
    try:
        batch.commit()
    except AlreadyExists:
        marker = db.collection(ACTIVATIONS_COLLECTION).document(payment_id).get()
        existing_id = (marker.to_dict() or {}).get("subscriptionId") if marker.exists else None
        logger.info(
            "Payment %s already activated as subscription %s; ignoring re-delivery",
            payment_id,
            existing_id,
        )
        return ActivationResult(
            status=DUPLICATE,
            subscription_id=existing_id,
            plan_type=plan_type,
            reason="already_activated",
        )

    if not user_exists:
        logger.warning(
            "User %s not found; subscription %s recorded without entitlement update",
            user_id,
            sub_ref.id,
        )
    logger.info(
        "Activated %s plan %s for user %s until %s (subscription %s)",
        plan_type,
        plan_id,
        user_id,
        expires_at.isoformat(),
        sub_ref.id,
    )

    job = ProvisioningJob(
        user_id=user_id,
        plan_id=plan_id,
        plan_type=plan_type,
        validity_days=validity_days,
        payment_id=payment_id,
        subscription_id=sub_ref.id,
        activated_at=now.isoformat(),
        election_type=election_type,
    )
    dispatch_provisioning(settings, job, db=db)
    return ActivationResult(
        status=ACTIVATED,
        subscription_id=sub_ref.id,
        plan_type=plan_type,
        expires_at=expires_at,
    )
