import json
from unittest.mock import patch

import pytest

from appointment_system.app import payments
from appointment_system.app.booking import book_appointment
from appointment_system.app.constants import PaymentStatus, RefundGatewayStatus
from appointment_system.app.dependencies import SessionLocal
from appointment_system.app.exceptions import (AuthorizationError, ConflictError, GatewayError,
                                               StateTransitionError, ValidationError)
from appointment_system.app.models import Appointment, Payment
from appointment_system.app.reconciliation import reconcile_failed_refunds


@pytest.fixture
def appointment(db, make_user, patient, monday):
    doctor = make_user("doctor", consultation_fee=1000.0)
    return book_appointment(db, patient, doctor.id, monday, "09:00", "09:30")


@pytest.fixture
def create(db, patient, appointment, gateways, redis_client):
    def _create(**kwargs):
        kwargs.setdefault("gateways", gateways)
        kwargs.setdefault("redis_client", redis_client)
        return payments.create_payment(db, patient, appointment.id, **kwargs)
    return _create


@pytest.fixture
def completed_offline_payment(db, admin, create, gateways):
    payment, _, _ = create(payment_method="cash")
    return payments.update_payment_status(db, admin, payment.id, PaymentStatus.COMPLETED.value, gateways=gateways)


def test_create_offline_payment(create, appointment):
    payment, order, created = create(payment_method="cash")

    assert created is True
    assert order is None
    assert payment.payment_gateway == "offline"
    assert payment.amount == 1000.0
    assert payment.currency == "INR"
    assert payment.status == PaymentStatus.PENDING.value


def test_create_is_idempotent_per_appointment(db, create, appointment):
    first, _, _ = create(payment_method="cash")
    second, _, created = create(payment_method="cash")

    assert second.id == first.id
    assert created is False
    assert db.query(Payment).filter_by(appointment_id=appointment.id).count() == 1


def test_online_order_created_once(create, fake_gateway):
    first, order, _ = create(payment_method="online")
    second, _, _ = create(payment_method="online")

    assert len(fake_gateway.orders) == 1
    assert order["orderId"] == "fake_order_1"
    assert second.gateway_order_id == "fake_order_1"
    assert fake_gateway.orders[0]["idempotency_key"] == f"payment-{first.id}-fakepay"
    assert fake_gateway.orders[0]["receipt"].startswith("APT-APT-")


def test_gateway_failure_on_create_is_recorded(create, fake_gateway):
    fake_gateway.fail_create = True

    payment, order, created = create(payment_gateway="fakepay")

    assert created is True
    assert order is None
    assert payment.status == PaymentStatus.PENDING.value
    assert payment.gateway_error["code"] == "GATEWAY_UNREACHABLE"
    assert payment.gateway_error["operation"] == "create"


def test_concurrent_order_creation_is_refused(db, create, redis_client):
    payment, _, _ = create(payment_method="cash")
    redis_client.store[f"lock:payment:{payment.id}:gateway-order"] = "locked"

    with pytest.raises(ConflictError):
        create(payment_gateway="fakepay")


def test_failed_payment_is_reused_and_reset(db, create):
    payment, _, _ = create(payment_gateway="fakepay")
    payment.status = PaymentStatus.FAILED.value
    db.commit()

    reused, _, created = create(payment_gateway="fakepay")

    assert reused.id == payment.id
    assert created is False
    assert reused.status == PaymentStatus.PENDING.value


def test_switching_gateway_resets_gateway_ids(create):
    payment, _, _ = create(payment_gateway="fakepay")
    assert payment.gateway_order_id == "fake_order_1"

    switched, _, _ = create(payment_method="cash")

    assert switched.id == payment.id
    assert switched.payment_gateway == "offline"
    assert switched.gateway_order_id is None


def test_completed_payment_returned_unchanged(create, completed_offline_payment):
    payment, order, created = create(payment_gateway="fakepay")

    assert payment.id == completed_offline_payment.id
    assert payment.status == PaymentStatus.COMPLETED.value
    assert payment.payment_gateway == "offline"
    assert created is False


def test_cancelled_payment_can_be_superseded(db, patient, create):
    payment, _, _ = create(payment_method="cash")
    payments.cancel_payment(db, patient, payment.id)

    replacement, _, created = create(payment_method="cash")

    assert created is True
    assert replacement.id != payment.id


def test_only_owning_patient_creates_payment(db, make_user, appointment, gateways, redis_client):
    stranger = make_user("patient")

    with pytest.raises(AuthorizationError):
        payments.create_payment(db, stranger, appointment.id, payment_method="cash", gateways=gateways,
                                redis_client=redis_client)


def test_unknown_gateway_rejected(create):
    with pytest.raises(ValidationError):
        create(payment_gateway="paypal")


def test_verify_completes_payment_and_appointment(db, patient, create, fake_gateway, appointment, gateways):
    payment, _, _ = create(payment_gateway="fakepay")
    fake_gateway.verify_status = PaymentStatus.COMPLETED.value

    verified, _, message = payments.verify_payment(db, patient, payment.id, gateways)

    assert message == "Payment verified successfully"
    assert verified.status == PaymentStatus.COMPLETED.value
    assert verified.receipt_number.startswith("RCP-")
    assert verified.paid_at is not None
    db.refresh(appointment)
    assert appointment.payment_status == PaymentStatus.COMPLETED.value


def test_verify_gateway_error(db, patient, create, fake_gateway, gateways):
    payment, _, _ = create(payment_gateway="fakepay")
    fake_gateway.fail_verify = True

    with pytest.raises(GatewayError) as excinfo:
        payments.verify_payment(db, patient, payment.id, gateways)

    assert excinfo.value.message == "Payment verification failed"
    db.refresh(payment)
    assert payment.status == PaymentStatus.PENDING.value
    assert payment.gateway_error["code"] == "GATEWAY_TIMEOUT"


def test_verify_offline_payment_is_a_no_op(db, patient, create, gateways):
    payment, _, _ = create(payment_method="cash")

    verified, verification, message = payments.verify_payment(db, patient, payment.id, gateways)

    assert verification is None
    assert message == "Offline payments cannot be verified automatically"
    assert verified.status == PaymentStatus.PENDING.value


def test_cancelled_payment_cannot_be_verified(db, patient, create, fake_gateway, appointment, gateways):
    payment, _, _ = create(payment_gateway="fakepay")
    payments.cancel_payment(db, patient, payment.id)
    fake_gateway.verify_status = PaymentStatus.COMPLETED.value

    with pytest.raises(StateTransitionError) as excinfo:
        payments.verify_payment(db, patient, payment.id, gateways)

    assert excinfo.value.message == "Cancelled payments cannot be verified"
    db.refresh(payment)
    assert payment.status == PaymentStatus.CANCELLED.value
    db.refresh(appointment)
    assert appointment.payment_status == PaymentStatus.PENDING.value


def test_superseded_payment_cannot_be_verified(db, patient, create, fake_gateway, gateways):
    payment, _, _ = create(payment_gateway="fakepay")
    payments.cancel_payment(db, patient, payment.id)
    replacement, _, _ = create(payment_gateway="fakepay")
    fake_gateway.verify_status = PaymentStatus.COMPLETED.value

    with pytest.raises(StateTransitionError):
        payments.verify_payment(db, patient, payment.id, gateways)

    db.refresh(replacement)
    assert replacement.status == PaymentStatus.PENDING.value


def test_success_webhook_leaves_cancelled_payment(db, patient, create, redis_client):
    payment, _, _ = create(payment_gateway="fakepay")
    payments.cancel_payment(db, patient, payment.id)

    payments.process_webhook_event("fakepay", {"orderId": payment.gateway_order_id, "status": "captured",
                                               "eventId": "e_cancelled"}, redis_client)

    db.expire_all()
    assert db.get(Payment, payment.id).status == PaymentStatus.CANCELLED.value


def test_manual_update_rejected_for_online_payments(db, admin, create, gateways):
    payment, _, _ = create(payment_gateway="fakepay")

    with pytest.raises(ValidationError):
        payments.update_payment_status(db, admin, payment.id, PaymentStatus.COMPLETED.value, gateways=gateways)


def test_manual_update_only_from_pending(db, admin, completed_offline_payment, gateways):
    with pytest.raises(StateTransitionError):
        payments.update_payment_status(db, admin, completed_offline_payment.id, PaymentStatus.FAILED.value,
                                       gateways=gateways)


def test_patient_cannot_update_status(db, patient, create, gateways):
    payment, _, _ = create(payment_method="cash")

    with pytest.raises(AuthorizationError):
        payments.update_payment_status(db, patient, payment.id, PaymentStatus.COMPLETED.value, gateways=gateways)


def test_cancel_only_pending(db, patient, completed_offline_payment):
    with pytest.raises(StateTransitionError):
        payments.cancel_payment(db, patient, completed_offline_payment.id)


def test_can_refund_bounds(completed_offline_payment):
    assert payments.can_refund(completed_offline_payment, 1000) == (True, None)
    assert payments.can_refund(completed_offline_payment, 0) == (False, "Refund amount must be positive")
    assert payments.can_refund(completed_offline_payment, 1000.01) == (
        False, "Refund amount exceeds remaining refundable amount")


def test_partial_then_full_refund(db, admin, appointment, completed_offline_payment, gateways):
    payment, refund = payments.process_refund(db, admin, completed_offline_payment.id, amount=400,
                                              reason="Shorter visit", gateways=gateways)

    assert payment.status == PaymentStatus.PARTIALLY_REFUNDED.value
    assert payment.refund_amount_remaining == 600
    assert refund.gateway_status == RefundGatewayStatus.NOT_APPLICABLE.value
    assert payments.can_refund(payment, 700) == (False, "Refund amount exceeds remaining refundable amount")
    assert payments.can_refund(payment, 600) == (True, None)

    with pytest.raises(ValidationError):
        payments.process_refund(db, admin, payment.id, amount=700, gateways=gateways)

    payment, _ = payments.process_refund(db, admin, payment.id, amount=600, gateways=gateways)

    assert payment.status == PaymentStatus.REFUNDED.value
    assert payment.refunded_at is not None
    assert payment.refund_amount_remaining == 0
    assert len(payment.refunds) == 2
    db.refresh(appointment)
    assert appointment.payment_status == PaymentStatus.REFUNDED.value
    assert payments.can_refund(payment, 1) == (False, "Payment is not in a refundable state")


def test_pending_payment_not_refundable(db, admin, create, gateways):
    payment, _, _ = create(payment_method="cash")

    with pytest.raises(ValidationError) as excinfo:
        payments.process_refund(db, admin, payment.id, amount=100, gateways=gateways)
    assert excinfo.value.message == "Payment is not in a refundable state"


@pytest.fixture
def completed_online_payment(db, patient, create, fake_gateway, gateways):
    payment, _, _ = create(payment_gateway="fakepay")
    fake_gateway.verify_status = PaymentStatus.COMPLETED.value
    verified, _, _ = payments.verify_payment(db, patient, payment.id, gateways)
    return verified


def test_gateway_refund_failure_is_recorded_not_raised(db, admin, completed_online_payment, fake_gateway,
                                                       gateways):
    fake_gateway.fail_refund = True

    payment, refund = payments.process_refund(db, admin, completed_online_payment.id, amount=250,
                                              gateways=gateways)

    assert refund.gateway_status == RefundGatewayStatus.FAILED.value
    assert refund.gateway_error["code"] == "REFUND_DECLINED"
    assert payment.gateway_error["operation"] == "refund"
    assert payment.refund_amount_remaining == 750
    assert payment.status == PaymentStatus.PARTIALLY_REFUNDED.value


def test_reconcile_failed_refund(db, admin, completed_online_payment, fake_gateway, gateways):
    fake_gateway.fail_refund = True
    payment, refund = payments.process_refund(db, admin, completed_online_payment.id, amount=250,
                                              gateways=gateways)

    fake_gateway.fail_refund = False
    refund = payments.reconcile_refund(db, payment, refund, gateways)

    assert refund.gateway_status == RefundGatewayStatus.SUCCEEDED.value
    assert refund.gateway_refund_id == "fake_refund_1"
    assert refund.reconciled_at is not None
    with pytest.raises(ValidationError):
        payments.reconcile_refund(db, payment, refund, gateways)


def test_reconciliation_sweep(db, admin, completed_online_payment, fake_gateway, gateways, redis_client):
    fake_gateway.fail_refund = True
    payments.process_refund(db, admin, completed_online_payment.id, amount=100, gateways=gateways)
    fake_gateway.fail_refund = False

    result = reconcile_failed_refunds(session_factory=SessionLocal, redis_client=redis_client, gateways=gateways)

    assert result == (1, 0, 0)
    assert len(fake_gateway.refunds) == 1


def test_webhook_completes_payment(db, create, appointment, redis_client):
    payment, _, _ = create(payment_gateway="fakepay")
    event = {"transactionId": "pay_123", "orderId": payment.gateway_order_id, "status": "captured",
             "eventId": "evt_1"}

    payment_id = payments.process_webhook_event("fakepay", event, redis_client)

    assert payment_id == payment.id
    db.expire_all()
    payment = db.get(Payment, payment.id)
    assert payment.status == PaymentStatus.COMPLETED.value
    assert db.get(Appointment, appointment.id).payment_status == PaymentStatus.COMPLETED.value


def test_replayed_webhook_is_skipped(create, redis_client):
    payment, _, _ = create(payment_gateway="fakepay")
    event = {"transactionId": payment.transaction_id, "orderId": payment.gateway_order_id, "status": "paid",
             "eventId": "evt_replay"}

    assert payments.process_webhook_event("fakepay", event, redis_client) == payment.id
    with patch.object(payments, "apply_webhook_event") as apply_event:
        assert payments.process_webhook_event("fakepay", event, redis_client) is None
    apply_event.assert_not_called()


def test_webhook_retry_after_processing_error(db, create, redis_client):
    payment, _, _ = create(payment_gateway="fakepay")
    event = {"orderId": payment.gateway_order_id, "status": "captured", "eventId": "evt_retry"}

    with patch.object(payments, "apply_webhook_event", side_effect=RuntimeError("database unavailable")):
        assert payments.process_webhook_event("fakepay", event, redis_client) is None
    assert "webhook:fakepay:evt_retry" not in redis_client.store

    assert payments.process_webhook_event("fakepay", event, redis_client) == payment.id
    assert "webhook:fakepay:evt_retry" in redis_client.store
    db.expire_all()
    assert db.get(Payment, payment.id).status == PaymentStatus.COMPLETED.value


def test_failure_webhook_does_not_undo_completion(db, create, redis_client):
    payment, _, _ = create(payment_gateway="fakepay")
    order_id = payment.gateway_order_id
    payments.process_webhook_event("fakepay", {"orderId": order_id, "status": "captured", "eventId": "e1"},
                                   redis_client)

    payments.process_webhook_event("fakepay", {"orderId": order_id, "status": "failed", "eventId": "e2"},
                                   redis_client)

    db.expire_all()
    assert db.get(Payment, payment.id).status == PaymentStatus.COMPLETED.value


def test_failure_webhook_fails_pending_payment(db, create, redis_client):
    payment, _, _ = create(payment_gateway="fakepay")

    payments.process_webhook_event("fakepay", {"orderId": payment.gateway_order_id, "status": "failed",
                                               "eventId": "e3"}, redis_client)

    db.expire_all()
    refreshed = db.get(Payment, payment.id)
    assert refreshed.status == PaymentStatus.FAILED.value
    assert refreshed.failed_at is not None


def test_webhook_for_unknown_payment_is_ignored(redis_client):
    event = {"transactionId": "missing", "status": "captured", "eventId": "e4"}

    assert payments.process_webhook_event("fakepay", event, redis_client) is None


def test_webhook_endpoint_rejects_bad_signature(client):
    response = client.post("/payments/webhook/fakepay", content=b'{"status": "captured"}',
                           headers={"x-signature": "forged"})

    assert response.status_code == 400
    assert response.json()["detail"] == "Webhook verification failed"


def test_webhook_endpoint_unknown_gateway(client):
    response = client.post("/payments/webhook/paypal", content=b"{}", headers={"x-signature": "x"})

    assert response.status_code == 400
    assert response.json()["detail"] == "Unsupported payment gateway: paypal"


def test_webhook_endpoint_processes_in_background(client, db, create, signer):
    payment, _, _ = create(payment_gateway="fakepay")
    payload = json.dumps({"orderId": payment.gateway_order_id, "status": "succeeded", "eventId": "evt_http"}).encode()

    response = client.post("/payments/webhook/fakepay", content=payload, headers={"x-signature": signer(payload)})

    assert response.status_code == 200
    assert response.json()["received"] is True
    db.expire_all()
    assert db.get(Payment, payment.id).status == PaymentStatus.COMPLETED.value


def test_payment_endpoints(client, db, doctor, patient, auth_headers, monday, monday_schedule):
    appointment = book_appointment(db, patient, doctor.id, monday, "09:00", "09:30")

    response = client.post("/payments", json={"appointment_id": appointment.id, "payment_method": "cash"},
                           headers=auth_headers(patient))
    assert response.status_code == 201, response.text
    payment_id = response.json()["payment"]["id"]

    response = client.get(f"/payments/appointment/{appointment.id}", headers=auth_headers(doctor))
    assert response.status_code == 200
    assert response.json()["id"] == payment_id

    response = client.put(f"/payments/{payment_id}/status", json={"status": "completed"},
                          headers=auth_headers(doctor))
    assert response.status_code == 200
    assert response.json()["payment"]["status"] == "completed"

    response = client.post(f"/payments/{payment_id}/refund", json={"amount": 600}, headers=auth_headers(doctor))
    assert response.status_code == 400
    assert response.json()["detail"] == "Refund amount exceeds remaining refundable amount"

    response = client.post(f"/payments/{payment_id}/refund", json={"amount": 200, "reason": "Discount"},
                           headers=auth_headers(doctor))
    assert response.status_code == 200
    assert response.json()["payment"]["status"] == "partially_refunded"
    assert response.json()["payment"]["refund_amount_remaining"] == 300

    response = client.post(f"/payments/{payment_id}/refund", json={"amount": 50}, headers=auth_headers(patient))
    assert response.status_code == 403


def test_verify_endpoint_reports_gateway_failure(client, patient, create, fake_gateway, auth_headers):
    payment, _, _ = create(payment_gateway="fakepay")
    fake_gateway.fail_verify = True

    response = client.post(f"/payments/{payment.id}/verify", headers=auth_headers(patient))

    assert response.status_code == 502
    assert response.json()["detail"] == "Payment verification failed"
