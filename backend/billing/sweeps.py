"""Scheduled subscription sweeps: daily expiry and six-hourly expiry warnings."""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .activation import SUBSCRIPTIONS_COLLECTION, USERS_COLLECTION, warning_flag
from .notifications import (
    NOTIFICATION_TYPE_EXPIRED,
    NOTIFICATION_TYPE_WARNING,
    PushNotification,
)
from .plans import (
    ENTITLEMENT_FIELDS,
    PLAN_TYPE_CANDIDATE,
    candidate_downgrade_patch,
    plan_display_name,
)

logger = logging.getLogger("billing.sweeps")

DEFAULT_WARNING_HOURS = (72, 24, 1)
MAX_BATCH_WRITES = 400


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Any) -> Optional[datetime]:
    if not isinstance(value, datetime):
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def lead_time_label(hours: int) -> str:
    if hours % 24 == 0:
        days = hours // 24
        return "1 day" if days == 1 else f"{days} days"
    return "1 hour" if hours == 1 else f"{hours} hours"


def fan_out(fn: Callable[[Any], Any], items: Sequence[Any], workers: int = 8) -> Tuple[List[Any], List[Tuple[Any, Exception]]]:
    """Run ``fn`` over ``items`` concurrently; collect results and per-item failures."""
    results: List[Any] = []
    failures: List[Tuple[Any, Exception]] = []
    if not items:
        return results, failures
    with ThreadPoolExecutor(max_workers=max(1, min(workers, len(items)))) as pool:
        futures = [(item, pool.submit(fn, item)) for item in items]
        for item, future in futures:
            try:
                results.append(future.result())
            except Exception as exc:
                failures.append((item, exc))
    return results, failures


def _commit_in_batches(db, writes: Iterable[Tuple[Any, Dict[str, Any]]]) -> int:
    batch = db.batch()
    pending = 0
    total = 0
    for ref, patch in writes:
        batch.update(ref, patch)
        pending += 1
        total += 1
        if pending >= MAX_BATCH_WRITES:
            batch.commit()
            batch = db.batch()
            pending = 0
    if pending > 0:
        batch.commit()
    return total


def _user_token(db, user_id: str) -> Optional[str]:
    snapshot = db.collection(USERS_COLLECTION).document(user_id).get()
    if not snapshot.exists:
        return None
    token = str((snapshot.to_dict() or {}).get("fcmToken") or "").strip()
    return token or None


def _renewed_since(user: Dict[str, Any], now: datetime) -> bool:
    _, expiry_field = ENTITLEMENT_FIELDS[PLAN_TYPE_CANDIDATE]
    current_expiry = _as_utc(user.get(expiry_field))
    return bool(current_expiry and current_expiry > now)


def expire_subscriptions(db, notifier, now: Optional[datetime] = None, workers: int = 8) -> Dict[str, Any]:
    now = now or _now()
    logger.info("Starting subscription expiration check at %s", now.isoformat())
    snapshots = list(
        db.collection(SUBSCRIPTIONS_COLLECTION)
        .where("isActive", "==", True)
        .where("expiresAt", "<", now)
        .stream()
    )
    logger.info("Found %s expired subscriptions", len(snapshots))
    if not snapshots:
        return {
            "success": True,
            "processedSubscriptions": 0,
            "usersDowngraded": 0,
            "downgradeErrors": 0,
            "notificationsSent": 0,
            "notificationsFailed": 0,
        }

    expired: List[Dict[str, Any]] = []
    writes = []
    for snapshot in snapshots:
        data = snapshot.to_dict() or {}
        data["id"] = data.get("id") or snapshot.id
        expired.append(data)
        writes.append((snapshot.reference, {"isActive": False, "expiredAt": now, "updatedAt": now}))
    _commit_in_batches(db, writes)
    logger.info("Marked %s subscriptions as expired", len(writes))

    # Only candidate-plan fields are cleared; highlight and carousel stay as they are.
    touched_users = {data["userId"] for data in expired if data.get("userId")}

    def downgrade(user_id: str) -> bool:
        ref = db.collection(USERS_COLLECTION).document(user_id)
        snapshot = ref.get()
        if not snapshot.exists:
            logger.warning("Expired subscription references missing user %s", user_id)
            return False
        if _renewed_since(snapshot.to_dict() or {}, now):
            logger.info("User %s holds a newer candidate plan; not downgrading", user_id)
            return False
        ref.update({**candidate_downgrade_patch(), "updatedAt": now})
        logger.info("Downgraded user %s to free plan", user_id)
        return True

    downgraded, downgrade_failures = fan_out(downgrade, sorted(touched_users), workers)
    for user_id, exc in downgrade_failures:
        logger.error("Error updating user %s: %s", user_id, exc)

    def notify(data: Dict[str, Any]) -> bool:
        user_id = data.get("userId")
        token = _user_token(db, user_id) if user_id else None
        if not token:
            return False
        plan_name = plan_display_name(data.get("planId"))
        notifier.send(
            PushNotification(
                token=token,
                title=f"{plan_name} Plan Expired",
                body=f"Your {plan_name} plan has expired. Upgrade to continue enjoying premium features.",
                data={
                    "type": NOTIFICATION_TYPE_EXPIRED,
                    "planId": data.get("planId"),
                    "userId": user_id,
                    "subscriptionId": data.get("id"),
                },
            )
        )
        return True

    sent, notify_failures = fan_out(notify, expired, workers)
    for data, exc in notify_failures:
        logger.error("Error sending expiration notification for subscription %s: %s", data.get("id"), exc)

    summary = {
        "success": True,
        "processedSubscriptions": len(expired),
        "usersDowngraded": sum(1 for ok in downgraded if ok),
        "downgradeErrors": len(downgrade_failures),
        "notificationsSent": sum(1 for ok in sent if ok),
        "notificationsFailed": len(notify_failures),
    }
    logger.info("Subscription expiration check completed: %s", summary)
    return summary


def send_expiry_warnings(
    db,
    notifier,
    now: Optional[datetime] = None,
    thresholds: Sequence[int] = DEFAULT_WARNING_HOURS,
    workers: int = 8,
) -> Dict[str, Any]:
    """Warn once per (subscription, lead time) before expiry.

    A subscription first seen inside several windows gets one warning per
    window, widest first. Each flag is set right after its own send attempt.
    """
    now = now or _now()
    pending: Dict[str, Dict[str, Any]] = {}
    for hours in sorted(set(thresholds), reverse=True):
        horizon = now + timedelta(hours=hours)
        snapshots = list(
            db.collection(SUBSCRIPTIONS_COLLECTION)
            .where("isActive", "==", True)
            .where("expiresAt", ">=", now)
            .where("expiresAt", "<=", horizon)
            .stream()
        )
        logger.info("Found %s subscriptions expiring within %s", len(snapshots), lead_time_label(hours))
        for snapshot in snapshots:
            data = snapshot.to_dict() or {}
            if data.get(warning_flag(hours)):
                continue
            entry = pending.setdefault(
                snapshot.id, {"snapshot": snapshot, "data": data, "hours": []}
            )
            entry["hours"].append(hours)

    def warn(entry: Dict[str, Any]) -> int:
        data = entry["data"]
        user_id = data.get("userId")
        token = _user_token(db, user_id) if user_id else None
        plan_name = plan_display_name(data.get("planId"))
        delivered = 0
        for hours in sorted(entry["hours"], reverse=True):
            label = lead_time_label(hours)
            if token:
                try:
                    notifier.send(
                        PushNotification(
                            token=token,
                            title=f"{plan_name} Plan Expires Soon",
                            body=f"Your {plan_name} plan expires in {label}. Renew now to avoid service interruption.",
                            data={
                                "type": NOTIFICATION_TYPE_WARNING,
                                "planId": data.get("planId"),
                                "userId": user_id,
                                "expiresIn": label,
                            },
                        )
                    )
                    delivered += 1
                except Exception as exc:
                    logger.error(
                        "Error sending %s expiration warning for subscription %s: %s",
                        label,
                        entry["snapshot"].id,
                        exc,
                    )
            entry["snapshot"].reference.update({warning_flag(hours): True, "updatedAt": now})
        return delivered

    entries = list(pending.values())
    results, failures = fan_out(warn, entries, workers)
    for entry, exc in failures:
        logger.error("Error processing warning for subscription %s: %s", entry["snapshot"].id, exc)

    summary = {
        "success": True,
        "subscriptionsWarned": len(entries) - len(failures),
        "warningsSent": sum(results),
        "errors": len(failures),
    }
    logger.info("Expiration warnings check completed: %s", summary)
    return summary
