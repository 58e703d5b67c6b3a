from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from . import ledger
from .activation import ActivationResult, activate_subscription
from .config import Settings
from .razorpay_client import RazorpayNotConfigured, capture_payment, get_razorpay_client
from .state import (
    CaptureFailed,
    CaptureSucceeded,
    Effect,
    PaymentState,
    Transition,
    UnhandledEvent,
    WebhookEvent,
    state_from_record,
    transition,
)

logger = logging.getLogger("billing.capture")


@dataclass
class PaymentOutcome:
    event: str
    payment_id: Optional[str]
    previous_state: PaymentState
    state: PaymentState
    effects: Tuple[Effect, ...] = field(default_factory=tuple)
    capture_error: Optional[str] = None
    activation: Optional[ActivationResult] = None
    error: Optional[str] = None


class CaptureCoordinator:
    """Applies webhook events to the payment ledger and performs the effects.

    The ledger write happens before any side effect. Everything after it is
    logged and recorded, never raised, so the webhook can still be
    acknowledged.
    """

    def __init__(
        self,
        db,
        settings: Settings,
        *,
        razorpay_client=None,
        activate: Callable[..., ActivationResult] = activate_subscription,
    ):
        self.db = db
        self.settings = settings
        self._razorpay_client = razorpay_client
        self._activate = activate

    def _client(self):
        if self._razorpay_client is None:
            self._razorpay_client = get_razorpay_client(self.settings)
        return self._razorpay_client

    def _auto_capture(self, record: Dict[str, Any]) -> bool:
        order = ledger.get_order(self.db, record.get("orderId"))
        if order and "autoCapture" in order:
            return bool(order["autoCapture"])
        return self.settings.razorpay_auto_capture

    def handle(self, event: WebhookEvent, now: Optional[datetime] = None) -> PaymentOutcome:
        now = now or datetime.now(timezone.utc)
        if isinstance(event, UnhandledEvent):
            logger.info("Ignoring unhandled Razorpay event %s", event.name)
            return PaymentOutcome(
                event=event.name,
                payment_id=(event.payment or {}).get("id"),
                previous_state=PaymentState.NEW,
                state=PaymentState.NEW,
            )

        payment_id = str(event.payment["id"])
        previous = state_from_record(ledger.get_payment(self.db, payment_id))
        record = ledger.record_payment(self.db, event.payment, event.name, now)
        step = transition(previous, event, auto_capture=self._auto_capture(record))
        logger.info(
            "Payment %s: %s on %s -> %s %s",
            payment_id,
            event.name,
            previous.value,
            step.state.value,
            [effect.value for effect in step.effects],
        )
        outcome = PaymentOutcome(
            event=event.name,
            payment_id=payment_id,
            previous_state=previous,
            state=step.state,
            effects=step.effects,
        )
        try:
            self._apply(step, record, outcome, now, failure_reason=getattr(event, "reason", None))
        except Exception as exc:
            # recorded already; reconciliation or the next delivery picks it up
            logger.exception("Post-ledger processing failed for payment %s: %s", payment_id, exc)
            outcome.error = str(exc)
        return outcome

    def _capture(self, record: Dict[str, Any], now: datetime):
        """Capture through Razorpay, or return None if another delivery holds the claim."""
        payment_id = record["id"]
        amount = int(record.get("amount") or 0)
        currency = record.get("currency") or self.settings.default_currency
        if not ledger.claim_capture_attempt(self.db, payment_id, amount, now):
            return None
        try:
            response = capture_payment(self._client(), payment_id, amount=amount, currency=currency)
        except RazorpayNotConfigured as exc:
            logger.error("Cannot capture payment %s: %s", payment_id, exc)
            return CaptureFailed(str(exc))
        except Exception as exc:
            logger.exception("Capture failed for payment %s: %s", payment_id, exc)
            return CaptureFailed(str(exc) or exc.__class__.__name__)
        logger.info("Captured payment %s amount=%s %s", payment_id, amount, currency)
        return CaptureSucceeded(response.get("id") if isinstance(response, dict) else None)

    def _apply(
        self,
        step: Transition,
        record: Dict[str, Any],
        outcome: PaymentOutcome,
        now: datetime,
        *,
        failure_reason: Optional[str] = None,
        capture_id: Optional[str] = None,
    ) -> None:
        payment_id = record["id"]
        order_id = record.get("orderId")
        for effect in step.effects:
            if effect is Effect.CAPTURE:
                result = self._capture(record, now)
                if result is None:
                    continue
                follow_up = transition(step.state, result, auto_capture=False)
                outcome.state = follow_up.state
                outcome.effects = outcome.effects + follow_up.effects
                if isinstance(result, CaptureFailed):
                    self._apply(follow_up, record, outcome, now, failure_reason=result.reason)
                else:
                    self._apply(follow_up, record, outcome, now, capture_id=result.capture_id)
            elif effect is Effect.MARK_CAPTURED:
                ledger.mark_payment_captured(self.db, payment_id, capture_id=capture_id, now=now)
                record["captured"] = True
            elif effect is Effect.MARK_ORDER_PAID:
                ledger.mark_order_status(self.db, order_id, ledger.ORDER_PAID, now)
            elif effect is Effect.MARK_ORDER_FAILED:
                ledger.mark_order_status(self.db, order_id, ledger.ORDER_FAILED, now)
            elif effect is Effect.RECORD_CAPTURE_FAILURE:
                reason = failure_reason or "capture_failed"
                ledger.record_capture_failure(self.db, payment_id, reason, now)
                outcome.capture_error = reason
            elif effect is Effect.ACTIVATE:
                outcome.activation = self._run_activation(record, now)

    def _run_activation(self, record: Dict[str, Any], now: datetime) -> Optional[ActivationResult]:
        try:
            return self._activate(self.db, self.settings, record, now=now)
        except Exception as exc:
            logger.exception("Activation failed for payment %s: %s", record.get("id"), exc)
            return None
