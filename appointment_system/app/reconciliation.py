# reconciliation.py
import logging

from .constants import RefundGatewayStatus
from .dependencies import SessionLocal, get_redis_client, PAYMENT_LOCK_TTL_SECONDS
from .gateways import get_gateway_registry
from .locks import acquire_lock, release_lock
from .models import Refund
from .payments import reconcile_refund


def reconcile_failed_refunds(session_factory=SessionLocal, redis_client=None, gateways=None):
    """Retry every refund whose gateway call failed. Returns (reconciled, still_failing, skipped)."""
    redis_client = redis_client or get_redis_client()
    gateways = gateways or get_gateway_registry()
    reconciled = still_failing = skipped = 0

    db = session_factory()
    try:
        failed_refunds = db.query(Refund).filter(
            Refund.gateway_status == RefundGatewayStatus.FAILED.value
        ).order_by(Refund.id).all()

        for refund in failed_refunds:
            lock_key = f"lock:payment:{refund.payment_id}:refund"

            if acquire_lock(redis_client, lock_key, PAYMENT_LOCK_TTL_SECONDS):
                try:
                    refund = reconcile_refund(db, refund.payment, refund, gateways)
                    if refund.gateway_status == RefundGatewayStatus.SUCCEEDED.value:
                        reconciled += 1
                    else:
                        still_failing += 1
                finally:
                    release_lock(redis_client, lock_key)
            else:
                logging.info(f"Refund {refund.id} skipped because payment {refund.payment_id} is locked")
                skipped += 1
    finally:
        db.close()

    logging.info(f"Refund reconciliation finished: {reconciled} reconciled, {still_failing} still failing, "
                 f"{skipped} skipped")
    return reconciled, still_failing, skipped
