from __future__ import annotations

from datetime import timedelta

import pytest

from billing import ledger

from conftest import payment_entity


class TestRecordOrder:
    def test_insert_then_repeat_keeps_status_and_created_at(self, db, now) -> None:
        order = {"id": "order_1", "amount": 50000, "currency": "INR", "receipt": "r1", "notes": {"planId": "gold_plan"}}
        ledger.record_order(db, order, user_id="user-1", auto_capture=True, now=now)
        ledger.mark_order_status(db, "order_1", ledger.ORDER_PAID, now)

        later = now + timedelta(minutes=5)
        ledger.record_order(db, order, user_id="user-1", auto_capture=True, now=later)

        stored = db.doc("orders/order_1")
        assert stored["status"] == ledger.ORDER_PAID
        assert stored["createdAt"] == now
        assert stored["updatedAt"] == later
        assert stored["userId"] == "user-1"

    def test_requires_id(self, db) -> None:
        with pytest.raises(ValueError):
            ledger.record_order(db, {"amount": 1}, user_id="u", auto_capture=True)


class TestMarkOrderStatus:
    def test_only_moves_forward_from_created(self, db, now) -> None:
        db.seed("orders/order_1", {"id": "order_1", "status": "created"})
        assert ledger.mark_order_status(db, "order_1", ledger.ORDER_PAID, now) is True
        assert ledger.mark_order_status(db, "order_1", ledger.ORDER_FAILED, now) is False
        assert db.doc("orders/order_1")["status"] == ledger.ORDER_PAID
        assert db.doc("orders/order_1")["paidAt"] == now

    def test_rejects_created_target(self, db) -> None:
        with pytest.raises(ValueError):
            ledger.mark_order_status(db, "order_1", ledger.ORDER_CREATED)

    def test_missing_order_id_is_noop(self, db) -> None:
        assert ledger.mark_order_status(db, None, ledger.ORDER_PAID) is False


class TestRecordPayment:
    def test_redelivery_yields_single_record(self, db, now) -> None:
        entity = payment_entity()
        ledger.record_payment(db, entity, "payment.captured", now)
        ledger.record_payment(db, entity, "payment.captured", now + timedelta(seconds=30))

        payments = db.list("payments")
        assert len(payments) == 1
        assert payments[0]["captured"] is False
        assert payments[0]["createdAt"] == now
        assert payments[0]["notes"] == {"planId": "gold_plan", "userId": "user-1"}

    def test_does_not_reset_captured_flag(self, db, now) -> None:
        entity = payment_entity()
        ledger.record_payment(db, entity, "payment.authorized", now)
        ledger.mark_payment_captured(db, "pay_1", capture_id="pay_1", now=now)
        merged = ledger.record_payment(db, entity, "payment.captured", now)
        assert merged["captured"] is True
        assert db.doc("payments/pay_1")["captured"] is True

    def test_accumulates_webhook_events(self, db, now) -> None:
        entity = payment_entity()
        ledger.record_payment(db, entity, "payment.authorized", now)
        merged = ledger.record_payment(db, entity, "payment.captured", now)
        assert set(merged["webhookEvents"]) == {"payment.authorized", "payment.captured"}
        assert set(db.doc("payments/pay_1")["webhookEvents"]) == {"payment.authorized", "payment.captured"}

    def test_empty_notes_fall_back_to_order_notes(self, db, now) -> None:
        db.seed("orders/order_1", {"id": "order_1", "notes": {"planId": "highlight_plan", "userId": "user-9"}})
        merged = ledger.record_payment(db, payment_entity(notes=[]), "payment.captured", now)
        assert merged["notes"] == {"planId": "highlight_plan", "userId": "user-9"}


class TestCaptureFlags:
    def test_mark_captured_is_at_most_once(self, db, now) -> None:
        ledger.record_payment(db, payment_entity(), "payment.authorized", now)
        assert ledger.mark_payment_captured(db, "pay_1", capture_id="cap_1", now=now) is True
        assert ledger.mark_payment_captured(db, "pay_1", capture_id="cap_2", now=now) is False
        assert db.doc("payments/pay_1")["captureId"] == "cap_1"

    def test_signature_verified_creates_placeholder(self, db, now) -> None:
        assert ledger.mark_payment_signature_verified(db, "pay_9", "order_9", now) is True
        assert ledger.mark_payment_signature_verified(db, "pay_9", "order_9", now) is False
        stored = db.doc("payments/pay_9")
        assert stored["signatureVerified"] is True
        assert stored["captured"] is False
        assert stored["orderId"] == "order_9"


class TestCaptureClaim:
    def test_only_first_claim_wins(self, db, now) -> None:
        ledger.record_payment(db, payment_entity(status="authorized"), "payment.authorized", now)
        assert ledger.claim_capture_attempt(db, "pay_1", 50000, now) is True
        assert ledger.claim_capture_attempt(db, "pay_1", 50000, now) is False
        assert db.doc("payments/pay_1")["captureAttemptedAt"] == now
        assert db.doc("payment_captures/pay_1")["paymentId"] == "pay_1"
