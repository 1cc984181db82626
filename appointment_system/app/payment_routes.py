from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Body, Depends, Request
from pydantic import BaseModel
from redis import Redis
from sqlalchemy.orm import Session
import logging

from .auth import get_current_user, role_required
from .constants import Messages
from .dependencies import get_db, get_redis_client, UserRole
from .gateways import GatewayRegistry, get_gateway_registry
from .models import User
from .repository import get_payment as load_payment, get_refund
from . import payments
from .utils import serialize_payment, serialize_refund

router = APIRouter(prefix="/payments")

SIGNATURE_HEADERS = ("stripe-signature", "x-razorpay-signature", "x-signature")


class CreatePaymentRequest(BaseModel):
    appointment_id: int
    payment_method: Optional[str] = None
    payment_gateway: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class UpdatePaymentStatusRequest(BaseModel):
    status: str
    transaction_id: Optional[str] = None
    gateway_response: Optional[Dict[str, Any]] = None


class RefundRequest(BaseModel):
    amount: Optional[float] = None
    reason: Optional[str] = None


@router.post("/webhook/{gateway}")
async def payment_webhook(
        gateway: str,
        request: Request,
        background_tasks: BackgroundTasks,
        gateways: GatewayRegistry = Depends(get_gateway_registry),
        redis_client: Redis = Depends(get_redis_client)
):
    payload = await request.body()
    signature = next((request.headers[name] for name in SIGNATURE_HEADERS if name in request.headers), None)
    data = payments.verify_webhook_request(gateways, gateway, payload, signature)
    background_tasks.add_task(payments.process_webhook_event, gateway, data, redis_client)
    logging.info(f"Accepted {gateway} webhook {data.get('eventId')}")
    return {"received": True, "message": Messages.WEBHOOK_ACCEPTED}


@router.post("", status_code=201)
@role_required([UserRole.PATIENT.value])
def create_payment(
        request: CreatePaymentRequest,
        db: Session = Depends(get_db),
        gateways: GatewayRegistry = Depends(get_gateway_registry),
        redis_client: Redis = Depends(get_redis_client),
        current_user: User = Depends(get_current_user)
):
    payment, order, created = payments.create_payment(
        db, current_user, request.appointment_id,
        payment_method=request.payment_method,
        payment_gateway=request.payment_gateway,
        metadata=request.metadata,
        gateways=gateways,
        redis_client=redis_client,
    )
    return {
        "message": "Payment created successfully" if created else "Existing payment returned",
        "payment": serialize_payment(payment),
        "gateway_order": order,
    }


@router.get("/appointment/{appointment_id}")
def get_payment_for_appointment(appointment_id: int, db: Session = Depends(get_db),
                                current_user: User = Depends(get_current_user)):
    return serialize_payment(payments.payment_for_appointment(db, current_user, appointment_id))


@router.get("/{payment_id}")
def get_payment(payment_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    payment = load_payment(db, payment_id)
    payments.ensure_payment_access(current_user, payment)
    return serialize_payment(payment)


@router.post("/{payment_id}/verify")
def verify_payment(payment_id: int, db: Session = Depends(get_db),
                   gateways: GatewayRegistry = Depends(get_gateway_registry),
                   current_user: User = Depends(get_current_user)):
    payment, verification, message = payments.verify_payment(db, current_user, payment_id, gateways)
    return {"message": message, "payment": serialize_payment(payment), "verification": verification}


@router.put("/{payment_id}/status")
@role_required([UserRole.DOCTOR.value])
def update_payment_status(payment_id: int, request: UpdatePaymentStatusRequest, db: Session = Depends(get_db),
                          gateways: GatewayRegistry = Depends(get_gateway_registry),
                          current_user: User = Depends(get_current_user)):
    payment = payments.update_payment_status(
        db, current_user, payment_id, request.status,
        transaction_id=request.transaction_id,
        gateway_response=request.gateway_response,
        gateways=gateways,
    )
    return {"message": "Payment status updated successfully", "payment": serialize_payment(payment)}


@router.put("/{payment_id}/cancel")
def cancel_payment(payment_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    payment = payments.cancel_payment(db, current_user, payment_id)
    return {"message": "Payment cancelled successfully", "payment": serialize_payment(payment)}


@router.post("/{payment_id}/refund")
@role_required([UserRole.DOCTOR.value])
def refund_payment(payment_id: int, request: RefundRequest = Body(None), db: Session = Depends(get_db),
                   gateways: GatewayRegistry = Depends(get_gateway_registry),
                   current_user: User = Depends(get_current_user)):
    payment, refund = payments.process_refund(
        db, current_user, payment_id,
        amount=request.amount if request else None,
        reason=request.reason if request else None,
        gateways=gateways,
    )
    return {"message": "Refund processed", "payment": serialize_payment(payment), "refund": serialize_refund(refund)}


@router.post("/{payment_id}/refunds/{refund_id}/reconcile")
@role_required([UserRole.ADMIN.value])
def reconcile_refund(payment_id: int, refund_id: int, db: Session = Depends(get_db),
                     gateways: GatewayRegistry = Depends(get_gateway_registry),
                     current_user: User = Depends(get_current_user)):
    payment = load_payment(db, payment_id)
    refund = payments.reconcile_refund(db, payment, get_refund(db, payment_id, refund_id), gateways)
    return {"message": "Refund reconciliation attempted", "refund": serialize_refund(refund)}
