# payments.py
"""
Payment lifecycle: creation, verification, manual status updates, cancellation, refunds
and webhook processing.

A payment and its appointment's payment status always change in the same commit
(see settle_payment). Remote gateway calls never hold a database transaction open
longer than the call itself, and failures during create/refund are recorded on the
payment instead of failing the request.
"""
import logging
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .constants import (GATEWAY_FAILURE_STATUSES, GATEWAY_SUCCESS_STATUSES, Messages, OFFLINE_GATEWAY,
                        PaymentMethod, PaymentStatus, REFUNDABLE_PAYMENT_STATUSES, RefundGatewayStatus,
                        SETTLEABLE_PAYMENT_STATUSES, SETTLED_PAYMENT_STATUSES)
from .dependencies import (DEFAULT_CURRENCY, DEFAULT_ONLINE_GATEWAY, PAYMENT_LOCK_TTL_SECONDS, SessionLocal,
                           UserRole, WEBHOOK_DEDUPE_TTL_SECONDS)
from .exceptions import (AuthorizationError, ConflictError, GatewayError, NotFoundError, StateTransitionError,
                         ValidationError)
from .locks import acquire_lock, forget_seen, mark_seen, release_lock
from .metrics import GATEWAY_ERRORS, PAYMENT_STATUS_CHANGES
from .models import Appointment, Payment, Refund, User
from .notifications import notify
from .repository import active_payment_for_appointment, get_appointment, get_payment
from .utils import generate_receipt_number

MANUAL_TARGET_STATUSES = (
    PaymentStatus.COMPLETED.value,
    PaymentStatus.FAILED.value,
    PaymentStatus.CANCELLED.value,
)


def _now():
    return datetime.now(timezone.utc)


def resolve_gateway_name(payment_method=None, payment_gateway=None, gateways=None):
    """Pick the gateway for a payment: explicit choice first, then defaults by method."""
    if payment_gateway == PaymentMethod.ONLINE.value:
        payment_gateway = DEFAULT_ONLINE_GATEWAY
    if payment_gateway:
        if gateways is not None and payment_gateway not in gateways:
            raise ValidationError(Messages.INVALID_PAYMENT_GATEWAY)
        return payment_gateway
    if payment_method == PaymentMethod.ONLINE.value:
        return DEFAULT_ONLINE_GATEWAY
    return OFFLINE_GATEWAY


def new_payment_for_appointment(appointment: Appointment, payment_gateway, gateways=None, payment_method=None,
                                metadata=None):
    gateway_name = resolve_gateway_name(payment_method, payment_gateway, gateways)
    if payment_method is None:
        payment_method = PaymentMethod.CASH.value if gateway_name == OFFLINE_GATEWAY else PaymentMethod.ONLINE.value
    return Payment(
        appointment_id=appointment.id,
        patient_id=appointment.patient_id,
        doctor_id=appointment.doctor_id,
        amount=appointment.consultation_fee,
        currency=DEFAULT_CURRENCY,
        payment_method=payment_method,
        payment_gateway=gateway_name,
        status=PaymentStatus.PENDING.value,
        payment_metadata=metadata or {},
    )


def ensure_payment_access(actor: User, payment: Payment, patient=True, doctor=True, admin=True):
    if actor.role == UserRole.ADMIN.value and admin:
        return
    if actor.role == UserRole.PATIENT.value and patient and payment.patient_id == actor.id:
        return
    if actor.role == UserRole.DOCTOR.value and doctor and payment.doctor_id == actor.id:
        return
    raise AuthorizationError(Messages.NOT_AUTHORIZED)


def _record_status(payment: Payment, status):
    payment.status = status
    now = _now()
    if status == PaymentStatus.COMPLETED.value:
        payment.paid_at = payment.paid_at or now
    elif status == PaymentStatus.FAILED.value:
        payment.failed_at = now
    elif status == PaymentStatus.CANCELLED.value:
        payment.cancelled_at = now
    elif status == PaymentStatus.REFUNDED.value:
        payment.refunded_at = now
    PAYMENT_STATUS_CHANGES.labels(gateway=payment.payment_gateway, status=status).inc()


def _sync_appointment(db: Session, payment: Payment):
    appointment = db.query(Appointment).filter(Appointment.id == payment.appointment_id).first()
    if appointment and payment.status in (PaymentStatus.COMPLETED.value, PaymentStatus.REFUNDED.value):
        appointment.payment_status = payment.status


def settle_payment(db: Session, payment: Payment, status, gateway_response=None):
    """Move a payment to a settlement status and mirror it on the appointment in one commit."""
    _record_status(payment, status)
    if status == PaymentStatus.COMPLETED.value and not payment.receipt_number:
        payment.receipt_number = generate_receipt_number(payment.id)
    if gateway_response is not None:
        payment.gateway_response = {**(payment.gateway_response or {}), **gateway_response}
    _sync_appointment(db, payment)
    db.commit()
    db.refresh(payment)
    logging.info(f"Payment {payment.id} settled as {status}")
    return payment


def _capture_gateway_error(payment: Payment, operation, error: GatewayError):
    GATEWAY_ERRORS.labels(gateway=payment.payment_gateway, operation=operation).inc()
    logging.error(f"Gateway {payment.payment_gateway} {operation} failed for payment {payment.id}: {error.message}")
    payment.gateway_error = {**error.as_dict(), "operation": operation, "at": _now().isoformat()}


def _ensure_gateway_order(db: Session, payment: Payment, appointment: Appointment, gateway, redis_client):
    """Create the remote order once per payment, guarded by a redis lock."""
    if payment.gateway_order_id:
        return payment.gateway_response

    lock_key = f"lock:payment:{payment.id}:gateway-order"
    if not acquire_lock(redis_client, lock_key, PAYMENT_LOCK_TTL_SECONDS):
        raise ConflictError(Messages.PAYMENT_IN_PROGRESS)
    try:
        # Another request may have finished while we waited on the lock.
        db.refresh(payment)
        if payment.gateway_order_id:
            return payment.gateway_response

        try:
            order = gateway.create_payment(
                amount=payment.amount,
                currency=payment.currency,
                receipt=f"APT-{appointment.appointment_number}",
                metadata={
                    "appointment_id": appointment.id,
                    "patient_id": payment.patient_id,
                    "doctor_id": payment.doctor_id,
                },
                idempotency_key=f"payment-{payment.id}-{payment.payment_gateway}",
            )
        except GatewayError as e:
            _capture_gateway_error(payment, "create", e)
            db.commit()
            return None

        payment.transaction_id = order["transactionId"]
        payment.gateway_order_id = order.get("orderId") or order["transactionId"]
        payment.payment_intent_id = order.get("clientSecret")
        payment.gateway_response = order
        payment.gateway_error = None
        db.commit()
        logging.info(f"Gateway order {payment.gateway_order_id} created for payment {payment.id}")
        return order
    finally:
        release_lock(redis_client, lock_key)


def create_payment(db: Session, actor: User, appointment_id: int, payment_method=None, payment_gateway=None,
                   metadata=None, gateways=None, redis_client=None):
    """
    Create (or reuse) the payment of an appointment.

    Returns (payment, gateway_order, created). A completed or refunded payment is returned
    unchanged; a pending or failed one is reset to pending and reused.
    """
    appointment = get_appointment(db, appointment_id)
    if actor.role != UserRole.PATIENT.value or appointment.patient_id != actor.id:
        raise AuthorizationError(Messages.NOT_AUTHORIZED)

    gateway_name = resolve_gateway_name(payment_method, payment_gateway, gateways)
    if payment_method is None:
        payment_method = PaymentMethod.CASH.value if gateway_name == OFFLINE_GATEWAY else PaymentMethod.ONLINE.value
    if payment_method not in {method.value for method in PaymentMethod}:
        raise ValidationError(f"Unsupported payment method: {payment_method}")
    gateway = gateways.get(gateway_name)

    payment = active_payment_for_appointment(db, appointment.id)
    created = False
    if payment and payment.status in SETTLED_PAYMENT_STATUSES:
        logging.info(f"Payment {payment.id} for appointment {appointment.id} already {payment.status}")
        return payment, None, False

    if payment is None:
        payment = new_payment_for_appointment(appointment, gateway_name, gateways, payment_method, metadata)
        db.add(payment)
        try:
            db.commit()
            created = True
        except IntegrityError:
            # Lost the race against a concurrent create; continue with the winner's row.
            db.rollback()
            payment = active_payment_for_appointment(db, appointment.id)
            if payment is None:
                raise ConflictError(Messages.PAYMENT_IN_PROGRESS)
            if payment.status in SETTLED_PAYMENT_STATUSES:
                return payment, None, False

    if not created:
        if payment.payment_gateway != gateway_name:
            payment.transaction_id = None
            payment.gateway_order_id = None
            payment.payment_intent_id = None
            payment.gateway_response = None
        if payment.status != PaymentStatus.PENDING.value:
            _record_status(payment, PaymentStatus.PENDING.value)
        payment.payment_method = payment_method
        payment.payment_gateway = gateway_name
        payment.gateway_error = None
        if metadata:
            payment.payment_metadata = {**(payment.payment_metadata or {}), **metadata}
        db.commit()

    db.refresh(payment)
    order = None
    if gateway.is_remote:
        order = _ensure_gateway_order(db, payment, appointment, gateway, redis_client)
        db.refresh(payment)

    logging.info(f"Payment {payment.id} {'created' if created else 'reused'} for appointment {appointment.id} "
                 f"via {gateway_name}")
    return payment, order, created


def verify_payment(db: Session, actor: User, payment_id: int, gateways):
    """Re-query the gateway. Returns (payment, verification, message)."""
    payment = get_payment(db, payment_id)
    ensure_payment_access(actor, payment)
    gateway = gateways.get(payment.payment_gateway)

    if not gateway.is_remote:
        return payment, None, Messages.OFFLINE_CANNOT_VERIFY
    if not payment.transaction_id:
        raise ValidationError("Payment has no gateway transaction to verify")
    if payment.status in SETTLED_PAYMENT_STATUSES:
        return payment, None, Messages.PAYMENT_VERIFIED
    if payment.status not in SETTLEABLE_PAYMENT_STATUSES:
        raise StateTransitionError(Messages.CANNOT_VERIFY_CANCELLED_PAYMENT)

    try:
        verification = gateway.verify_payment(payment.transaction_id)
    except GatewayError as e:
        _capture_gateway_error(payment, "verify", e)
        db.commit()
        raise GatewayError(Messages.PAYMENT_VERIFICATION_FAILED, code=e.code, details=e.details)

    status = verification.get("status")
    if status == PaymentStatus.COMPLETED.value:
        settle_payment(db, payment, PaymentStatus.COMPLETED.value, {"verification": verification.get("raw")})
        notify(payment.doctor_id, "payment_completed", f"Payment received for appointment {payment.appointment_id}",
               payment_id=payment.id)
        return payment, verification, Messages.PAYMENT_VERIFIED

    if status == PaymentStatus.FAILED.value and payment.status == PaymentStatus.PENDING.value:
        _record_status(payment, PaymentStatus.FAILED.value)
    payment.gateway_response = {**(payment.gateway_response or {}), "verification": verification.get("raw")}
    db.commit()
    db.refresh(payment)
    return payment, verification, f"Payment status: {payment.status}"


def update_payment_status(db: Session, actor: User, payment_id: int, status, transaction_id=None,
                          gateway_response=None, gateways=None):
    """Manual status change for offline payments, by the assigned doctor or an admin."""
    payment = get_payment(db, payment_id)
    ensure_payment_access(actor, payment, patient=False)

    if gateways.get(payment.payment_gateway).is_remote:
        raise ValidationError(Messages.ONLINE_STATUS_UPDATE_REJECTED)
    if status not in MANUAL_TARGET_STATUSES:
        raise ValidationError(f"Invalid payment status: {status}")
    if payment.status != PaymentStatus.PENDING.value:
        raise StateTransitionError(f"Cannot change payment status from {payment.status} to {status}")

    if transaction_id:
        payment.transaction_id = transaction_id
    if status == PaymentStatus.COMPLETED.value:
        settle_payment(db, payment, status, gateway_response)
        notify(payment.patient_id, "payment_completed", "Your payment has been recorded", payment_id=payment.id)
    else:
        _record_status(payment, status)
        if gateway_response:
            payment.gateway_response = {**(payment.gateway_response or {}), **gateway_response}
        db.commit()
        db.refresh(payment)
    logging.info(f"Payment {payment.id} manually set to {status} by user {actor.id}")
    return payment


def cancel_payment(db: Session, actor: User, payment_id: int):
    payment = get_payment(db, payment_id)
    ensure_payment_access(actor, payment, doctor=False)
    if payment.status != PaymentStatus.PENDING.value:
        raise StateTransitionError("Only pending payments can be cancelled")
    _record_status(payment, PaymentStatus.CANCELLED.value)
    db.commit()
    db.refresh(payment)
    logging.info(f"Payment {payment.id} cancelled by user {actor.id}")
    return payment


def cancel_pending_payment(db: Session, appointment: Appointment):
    """Cancel the appointment's payment if it is still pending; the caller commits."""
    payment = active_payment_for_appointment(db, appointment.id)
    if payment and payment.status == PaymentStatus.PENDING.value:
        _record_status(payment, PaymentStatus.CANCELLED.value)
        return payment
    return None


def can_refund(payment: Payment, amount=None):
    """Returns (allowed, reason). `amount` defaults to the full remaining balance."""
    if payment.status not in REFUNDABLE_PAYMENT_STATUSES:
        return False, Messages.PAYMENT_NOT_REFUNDABLE
    requested = payment.refund_amount_remaining if amount is None else round(float(amount), 2)
    if requested <= 0:
        return False, Messages.REFUND_AMOUNT_NOT_POSITIVE
    if requested > payment.refund_amount_remaining:
        return False, Messages.REFUND_EXCEEDS_REMAINING
    return True, None


def _remote_refund(payment: Payment, gateway, amount, reason):
    """Best-effort gateway refund. Returns (gateway_status, refund_id, response, error)."""
    if not gateway.is_remote or not payment.transaction_id:
        return RefundGatewayStatus.NOT_APPLICABLE.value, None, None, None
    try:
        result = gateway.process_refund(payment.transaction_id, amount, reason)
    except GatewayError as e:
        _capture_gateway_error(payment, "refund", e)
        return RefundGatewayStatus.FAILED.value, None, None, e.as_dict()
    return RefundGatewayStatus.SUCCEEDED.value, result.get("refundId"), result, None


def process_refund(db: Session, actor: User, payment_id: int, amount=None, reason=None, gateways=None):
    """
    Record a refund against a payment, calling the gateway when the payment went through one.

    The refund row and the reduced refundable balance are committed whether or not the
    gateway call succeeds; a failed call is left on the Refund for reconcile_refund.
    Returns (payment, refund).
    """
    payment = get_payment(db, payment_id, for_update=True)
    ensure_payment_access(actor, payment, patient=False)

    allowed, reason_not_allowed = can_refund(payment, amount)
    if not allowed:
        raise ValidationError(reason_not_allowed)
    requested = payment.refund_amount_remaining if amount is None else round(float(amount), 2)

    gateway = gateways.get(payment.payment_gateway)
    gateway_status, refund_id, response, error = _remote_refund(payment, gateway, requested, reason)

    refund = Refund(
        payment_id=payment.id,
        amount=requested,
        reason=reason,
        processed_by=actor.id,
        gateway_status=gateway_status,
        gateway_refund_id=refund_id,
        gateway_response=response,
        gateway_error=error,
    )
    db.add(refund)

    payment.refund_amount = round((payment.refund_amount or 0) + requested, 2)
    payment.refund_reason = reason or payment.refund_reason
    if payment.refund_amount_remaining <= 0:
        settle_payment(db, payment, PaymentStatus.REFUNDED.value)
    else:
        _record_status(payment, PaymentStatus.PARTIALLY_REFUNDED.value)
        db.commit()
        db.refresh(payment)
    db.refresh(refund)

    notify(payment.patient_id, "payment_refunded", f"A refund of {requested} {payment.currency} was issued",
           payment_id=payment.id, refund_id=refund.id)
    logging.info(f"Refund {refund.id} of {requested} recorded for payment {payment.id} "
                 f"(gateway {gateway_status})")
    return payment, refund


def reconcile_refund(db: Session, payment: Payment, refund: Refund, gateways):
    """Retry the gateway call of a refund whose earlier attempt failed."""
    if refund.gateway_status != RefundGatewayStatus.FAILED.value:
        raise ValidationError(Messages.REFUND_ALREADY_RECONCILED)

    gateway = gateways.get(payment.payment_gateway)
    gateway_status, refund_id, response, error = _remote_refund(payment, gateway, refund.amount, refund.reason)
    if gateway_status == RefundGatewayStatus.FAILED.value:
        refund.gateway_error = error
        db.commit()
        logging.warning(f"Refund {refund.id} for payment {payment.id} still failing: {error['message']}")
        return refund

    refund.gateway_status = gateway_status
    refund.gateway_refund_id = refund_id
    refund.gateway_response = response
    refund.gateway_error = None
    refund.reconciled_at = _now()
    payment.gateway_error = None
    db.commit()
    db.refresh(refund)
    logging.info(f"Refund {refund.id} for payment {payment.id} reconciled")
    return refund


def verify_webhook_request(gateways, gateway_name, payload: bytes, signature):
    """Check a webhook's signature; returns the normalized event data or raises ValidationError."""
    gateway = gateways.get(gateway_name)
    result = gateway.verify_webhook(payload, signature)
    if not result.get("verified"):
        logging.warning(f"Rejected {gateway_name} webhook with invalid signature")
        raise ValidationError(Messages.WEBHOOK_VERIFICATION_FAILED)
    return result["data"]


def _find_webhook_payment(db: Session, gateway_name, data):
    lookups = [value for value in (data.get("transactionId"), data.get("orderId")) if value]
    if not lookups:
        return None
    return db.query(Payment).filter(
        Payment.payment_gateway == gateway_name,
        (Payment.transaction_id.in_(lookups)) | (Payment.gateway_order_id.in_(lookups)),
    ).order_by(Payment.id.desc()).first()


def apply_webhook_event(db: Session, gateway_name, data):
    """Apply a verified webhook event. Returns the payment, or None when no payment matches."""
    payment = _find_webhook_payment(db, gateway_name, data)
    if not payment:
        logging.warning(f"No payment found for {gateway_name} webhook {data.get('eventId')}")
        return None

    event_status = data.get("status")
    webhook_log = {**(payment.gateway_response or {}), "webhook": data}

    if event_status in GATEWAY_SUCCESS_STATUSES:
        if payment.status in SETTLEABLE_PAYMENT_STATUSES:
            if data.get("transactionId") and not payment.transaction_id:
                payment.transaction_id = data["transactionId"]
            settle_payment(db, payment, PaymentStatus.COMPLETED.value, {"webhook": data})
            notify(payment.doctor_id, "payment_completed",
                   f"Payment received for appointment {payment.appointment_id}", payment_id=payment.id)
            return payment
    elif event_status in GATEWAY_FAILURE_STATUSES:
        if payment.status == PaymentStatus.PENDING.value:
            _record_status(payment, PaymentStatus.FAILED.value)
            payment.gateway_response = webhook_log
            db.commit()
            notify(payment.patient_id, "payment_failed", "Your payment could not be completed",
                   payment_id=payment.id)
            return payment

    logging.info(f"Webhook {data.get('eventId')} ({event_status}) left payment {payment.id} as {payment.status}")
    return payment


def process_webhook_event(gateway_name, data, redis_client, session_factory=SessionLocal):
    """Background entry point: dedupe the event, then apply it in a fresh session. Returns the payment id."""
    event_key = data.get("eventId") or f"{data.get('transactionId')}:{data.get('status')}"
    seen_key = f"webhook:{gateway_name}:{event_key}"
    if not mark_seen(redis_client, seen_key, WEBHOOK_DEDUPE_TTL_SECONDS):
        logging.info(f"Skipping replayed {gateway_name} webhook {event_key}")
        return None

    db = session_factory()
    try:
        payment = apply_webhook_event(db, gateway_name, data)
        return payment.id if payment else None
    except Exception as e:
        db.rollback()
        # Let the provider's retry through.
        forget_seen(redis_client, seen_key)
        logging.error(f"Error processing {gateway_name} webhook {event_key}: {str(e)}")
        return None
    finally:
        db.close()


def payment_for_appointment(db: Session, actor: User, appointment_id: int):
    appointment = get_appointment(db, appointment_id)
    payment = active_payment_for_appointment(db, appointment.id)
    if not payment:
        raise NotFoundError(Messages.PAYMENT_NOT_FOUND)
    ensure_payment_access(actor, payment)
    return payment
