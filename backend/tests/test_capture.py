from __future__ import annotations

import threading
import time
from unittest.mock import MagicMock, patch

import razorpay

from billing import ledger
from billing.activation import ACTIVATED, DUPLICATE
from billing.capture import CaptureCoordinator
from billing.state import Effect, PaymentAuthorized, PaymentCaptured, PaymentFailed, PaymentState, UnhandledEvent

from conftest import payment_entity


def _manual_order(db) -> None:
    db.seed(
        "orders/order_1",
        {"id": "order_1", "status": "created", "autoCapture": False, "notes": {"planId": "gold_plan", "userId": "user-1"}},
    )


def _client(capture_side_effect=None):
    client = MagicMock()
    client.payment.capture.return_value = {"id": "pay_1", "status": "captured"}
    if capture_side_effect is not None:
        client.payment.capture.side_effect = capture_side_effect
    return client


def test_captured_event_activates_and_marks_order_paid(db, settings, now) -> None:
    db.seed("users/user-1", {})
    db.seed("orders/order_1", {"id": "order_1", "status": "created"})
    client = _client()
    coordinator = CaptureCoordinator(db, settings, razorpay_client=client)

    outcome = coordinator.handle(PaymentCaptured(payment=payment_entity()), now)

    assert outcome.state is PaymentState.CAPTURED
    assert outcome.activation.status == ACTIVATED
    assert db.doc("payments/pay_1")["captured"] is True
    assert db.doc("orders/order_1")["status"] == "paid"
    client.payment.capture.assert_not_called()


def test_authorized_with_auto_capture_waits_for_provider(db, settings, now) -> None:
    client = _client()
    coordinator = CaptureCoordinator(db, settings, razorpay_client=client)

    outcome = coordinator.handle(PaymentAuthorized(payment=payment_entity(status="authorized")), now)

    assert outcome.state is PaymentState.AUTHORIZED
    assert outcome.activation is None
    client.payment.capture.assert_not_called()
    assert db.list("subscriptions") == []


def test_manual_capture_happens_at_most_once(db, settings, now) -> None:
    db.seed("users/user-1", {})
    _manual_order(db)
    client = _client()
    coordinator = CaptureCoordinator(db, settings, razorpay_client=client)
    authorized = PaymentAuthorized(payment=payment_entity(status="authorized"))

    first = coordinator.handle(authorized, now)
    second = coordinator.handle(authorized, now)
    third = coordinator.handle(PaymentCaptured(payment=payment_entity()), now)

    client.payment.capture.assert_called_once_with("pay_1", 50000, {"currency": "INR"})
    assert first.state is PaymentState.CAPTURED
    assert first.activation.status == ACTIVATED
    assert Effect.CAPTURE in first.effects
    assert second.effects == ()
    assert third.activation.status == DUPLICATE
    assert len(db.list("subscriptions")) == 1
    assert db.doc("payments/pay_1")["captureId"] == "pay_1"


def test_capture_failure_is_recorded_and_not_retried(db, settings, now) -> None:
    _manual_order(db)
    client = _client(capture_side_effect=razorpay.errors.BadRequestError("amount mismatch"))
    coordinator = CaptureCoordinator(db, settings, razorpay_client=client)
    authorized = PaymentAuthorized(payment=payment_entity(status="authorized"))

    outcome = coordinator.handle(authorized, now)
    again = coordinator.handle(authorized, now)

    assert outcome.state is PaymentState.CAPTURE_FAILED
    assert outcome.capture_error == "amount mismatch"
    assert outcome.error is None
    assert again.previous_state is PaymentState.CAPTURE_FAILED
    assert client.payment.capture.call_count == 1
    stored = db.doc("payments/pay_1")
    assert stored["captureError"] == "amount mismatch"
    assert stored["captured"] is False
    assert db.list("subscriptions") == []


def test_provider_capture_after_failed_attempt_still_converges(db, settings, now) -> None:
    db.seed("users/user-1", {})
    _manual_order(db)
    client = _client(capture_side_effect=RuntimeError("timeout"))
    coordinator = CaptureCoordinator(db, settings, razorpay_client=client)

    coordinator.handle(PaymentAuthorized(payment=payment_entity(status="authorized")), now)
    outcome = coordinator.handle(PaymentCaptured(payment=payment_entity()), now)

    assert outcome.previous_state is PaymentState.CAPTURE_FAILED
    assert outcome.state is PaymentState.CAPTURED
    assert outcome.activation.status == ACTIVATED
    assert db.doc("payments/pay_1")["captureError"] is None


def test_failed_payment_marks_order_failed(db, settings, now) -> None:
    db.seed("orders/order_1", {"id": "order_1", "status": "created"})
    coordinator = CaptureCoordinator(db, settings, razorpay_client=_client())

    outcome = coordinator.handle(
        PaymentFailed(payment=payment_entity(status="failed", error_description="Card declined")), now
    )

    assert outcome.state is PaymentState.FAILED
    assert db.doc("orders/order_1")["status"] == "failed"
    assert db.doc("payments/pay_1")["errorDescription"] == "Card declined"


def test_activation_error_does_not_propagate(db, settings, now) -> None:
    activate = MagicMock(side_effect=RuntimeError("firestore down"))
    coordinator = CaptureCoordinator(db, settings, razorpay_client=_client(), activate=activate)

    outcome = coordinator.handle(PaymentCaptured(payment=payment_entity()), now)

    assert outcome.state is PaymentState.CAPTURED
    assert outcome.activation is None
    assert db.doc("payments/pay_1")["captured"] is True
    activate.assert_called_once()


def test_unhandled_event_writes_nothing(db, settings, now) -> None:
    outcome = CaptureCoordinator(db, settings, razorpay_client=_client()).handle(UnhandledEvent("refund.created"), now)
    assert outcome.state is PaymentState.NEW
    assert db.docs == {}


def test_overlapping_authorized_deliveries_capture_once(db, settings, now) -> None:
    db.seed("users/user-1", {})
    _manual_order(db)
    client = _client()
    authorized = PaymentAuthorized(payment=payment_entity(status="authorized"))
    barrier = threading.Barrier(2)
    outcomes = []
    real_get_order = ledger.get_order

    def slow_get_order(*args, **kwargs):
        time.sleep(0.05)
        return real_get_order(*args, **kwargs)

    def deliver() -> None:
        coordinator = CaptureCoordinator(db, settings, razorpay_client=client)
        barrier.wait()
        outcomes.append(coordinator.handle(authorized, now))

    with patch.object(ledger, "get_order", side_effect=slow_get_order):
        threads = [threading.Thread(target=deliver) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

    assert client.payment.capture.call_count == 1
    assert len(outcomes) == 2
    assert all(outcome.error is None for outcome in outcomes)
    assert db.doc("payments/pay_1")["captured"] is True
    assert db.doc("payment_captures/pay_1")["amount"] == 50000
    assert len(db.list("subscriptions")) == 1
