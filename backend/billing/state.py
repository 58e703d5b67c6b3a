"""Payment lifecycle as an explicit state machine.

Webhook envelopes are parsed into event variants, and ``transition`` maps
``(state, event)`` to the next state plus the side effects the caller must
perform. Nothing here touches the network or Firestore.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union


class PaymentState(str, Enum):
    NEW = "new"
    AUTHORIZED = "authorized"
    CAPTURING = "capturing"
    CAPTURED = "captured"
    CAPTURE_FAILED = "capture_failed"
    FAILED = "failed"


class Effect(str, Enum):
    CAPTURE = "capture"
    MARK_CAPTURED = "mark_captured"
    MARK_ORDER_PAID = "mark_order_paid"
    MARK_ORDER_FAILED = "mark_order_failed"
    RECORD_CAPTURE_FAILURE = "record_capture_failure"
    ACTIVATE = "activate"


@dataclass(frozen=True)
class PaymentAuthorized:
    payment: Dict[str, Any]
    name: str = "payment.authorized"


@dataclass(frozen=True)
class PaymentCaptured:
    payment: Dict[str, Any]
    name: str = "payment.captured"


@dataclass(frozen=True)
class PaymentFailed:
    payment: Dict[str, Any]
    name: str = "payment.failed"

    @property
    def reason(self) -> str:
        return str(
            self.payment.get("error_description")
            or self.payment.get("error_reason")
            or self.payment.get("error_code")
            or "payment_failed"
        )


@dataclass(frozen=True)
class UnhandledEvent:
    name: str
    payment: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class CaptureSucceeded:
    capture_id: Optional[str] = None


@dataclass(frozen=True)
class CaptureFailed:
    reason: str


WebhookEvent = Union[PaymentAuthorized, PaymentCaptured, PaymentFailed, UnhandledEvent]
PaymentEvent = Union[WebhookEvent, CaptureSucceeded, CaptureFailed]

_PAYMENT_EVENTS = {
    "payment.authorized": PaymentAuthorized,
    "payment.captured": PaymentCaptured,
    "payment.failed": PaymentFailed,
}


@dataclass(frozen=True)
class Transition:
    state: PaymentState
    effects: Tuple[Effect, ...] = field(default_factory=tuple)

    def has(self, effect: Effect) -> bool:
        return effect in self.effects


def _payment_entity(envelope: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    payload = envelope.get("payload")
    if not isinstance(payload, dict):
        return None
    payment = payload.get("payment")
    if not isinstance(payment, dict):
        return None
    entity = payment.get("entity")
    return entity if isinstance(entity, dict) else None


def parse_event(envelope: Any) -> WebhookEvent:
    """Turn a Razorpay webhook envelope into an event variant.

    Raises ``ValueError`` when the envelope is malformed: no event name, or a
    payment event without a ``payload.payment.entity`` carrying an id.
    """
    if not isinstance(envelope, dict):
        raise ValueError("Webhook body must be a JSON object")
    name = envelope.get("event")
    if not isinstance(name, str) or not name.strip():
        raise ValueError("Webhook event name missing")
    name = name.strip()
    entity = _payment_entity(envelope)

    # order.paid carries the captured payment alongside the order.
    if name == "order.paid":
        event_cls = PaymentCaptured
    else:
        event_cls = _PAYMENT_EVENTS.get(name)
    if event_cls is None:
        return UnhandledEvent(name=name, payment=entity)
    if not entity or not str(entity.get("id") or "").strip():
        raise ValueError(f"{name} is missing payload.payment.entity.id")
    return event_cls(payment=entity, name=name)


def state_from_record(record: Optional[Dict[str, Any]]) -> PaymentState:
    if not record:
        return PaymentState.NEW
    if record.get("captured") is True:
        return PaymentState.CAPTURED
    if record.get("captureError"):
        return PaymentState.CAPTURE_FAILED
    if record.get("captureAttemptedAt"):
        return PaymentState.CAPTURING
    status = str(record.get("status") or "").lower()
    if status == "failed":
        return PaymentState.FAILED
    if status == "authorized":
        return PaymentState.AUTHORIZED
    return PaymentState.NEW


_CAPTURE_CONVERGED = (Effect.MARK_CAPTURED, Effect.MARK_ORDER_PAID, Effect.ACTIVATE)


def transition(state: PaymentState, event: PaymentEvent, *, auto_capture: bool) -> Transition:
    """Next state and side effects for ``event`` observed in ``state``.

    Both capture paths (our own capture call succeeding, or the provider
    reporting ``payment.captured``) end in CAPTURED with the same effects.
    A captured payment re-observed as captured only re-requests activation,
    which is idempotent per payment id.
    """
    if isinstance(event, PaymentCaptured):
        if state is PaymentState.CAPTURED:
            return Transition(PaymentState.CAPTURED, (Effect.ACTIVATE,))
        return Transition(PaymentState.CAPTURED, _CAPTURE_CONVERGED)

    if isinstance(event, PaymentAuthorized):
        if state in (PaymentState.NEW, PaymentState.AUTHORIZED, PaymentState.FAILED):
            if auto_capture:
                return Transition(PaymentState.AUTHORIZED)
            return Transition(PaymentState.CAPTURING, (Effect.CAPTURE,))
        # capturing, captured, capture_failed: at most one capture attempt
        return Transition(state)

    if isinstance(event, CaptureSucceeded):
        if state is PaymentState.CAPTURED:
            return Transition(state)
        return Transition(PaymentState.CAPTURED, _CAPTURE_CONVERGED)

    if isinstance(event, CaptureFailed):
        if state is PaymentState.CAPTURED:
            return Transition(state)
        return Transition(PaymentState.CAPTURE_FAILED, (Effect.RECORD_CAPTURE_FAILURE,))

    if isinstance(event, PaymentFailed):
        if state is PaymentState.CAPTURED:
            return Transition(state)
        return Transition(PaymentState.FAILED, (Effect.MARK_ORDER_FAILED,))

    return Transition(state)
