# gateways.py
"""
Payment gateway abstraction layer.

Every provider implements the same four operations. New providers are added by subclassing
PaymentGateway and registering a factory with GatewayRegistry; nothing else in the service
knows provider specifics.
"""
import json
import logging
import os
import uuid
from abc import ABC, abstractmethod

import razorpay
import requests
import stripe
from razorpay.errors import (BadRequestError, GatewayError as RazorpayGatewayError, ServerError,
                             SignatureVerificationError)
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .constants import OFFLINE_GATEWAY, PaymentStatus
from .dependencies import GATEWAY_MAX_RETRIES, GATEWAY_TIMEOUT_SECONDS
from .exceptions import GatewayError, ValidationError


def to_minor_units(amount):
    return int(round(float(amount) * 100))


class PaymentGateway(ABC):
    name = "base"
    # Offline collection never talks to a remote provider.
    is_remote = True

    def __init__(self, config=None):
        self.config = config or {}

    @abstractmethod
    def create_payment(self, amount, currency, receipt, metadata=None, idempotency_key=None):
        """Create a remote order/intent. Returns at least {"transactionId", "orderId"}."""

    @abstractmethod
    def verify_payment(self, transaction_id):
        """Re-query the provider. Returns {"transactionId", "status", "raw"}."""

    @abstractmethod
    def process_refund(self, transaction_id, amount, reason=None):
        """Refund `amount` of a captured payment. Returns {"refundId", "status", "raw"}."""

    @abstractmethod
    def verify_webhook(self, payload: bytes, signature):
        """Check the signature of a raw webhook body. Returns {"verified", "data"}."""


class OfflineGateway(PaymentGateway):
    """Pay at clinic: status is advanced manually by the doctor or an admin."""

    name = OFFLINE_GATEWAY
    is_remote = False

    def create_payment(self, amount, currency, receipt, metadata=None, idempotency_key=None):
        transaction_id = f"offline_{uuid.uuid4().hex}"
        return {
            "transactionId": transaction_id,
            "orderId": None,
            "status": PaymentStatus.PENDING.value,
            "raw": {"message": "Payment pending - to be collected at clinic"},
        }

    def verify_payment(self, transaction_id):
        return {
            "transactionId": transaction_id,
            "status": PaymentStatus.PENDING.value,
            "raw": {"message": "Offline payment - verification required"},
        }

    def process_refund(self, transaction_id, amount, reason=None):
        return {
            "refundId": None,
            "status": "manual",
            "raw": {"message": "Offline refund - manual processing required", "amount": amount},
        }

    def verify_webhook(self, payload, signature):
        return {"verified": False, "data": None}


def build_http_session(max_retries=GATEWAY_MAX_RETRIES):
    # POSTs are only retried on connection failures, where the request never reached the provider.
    retry = Retry(
        total=max_retries,
        backoff_factor=0.5,
        status_forcelist=(500, 502, 503, 504),
        allowed_methods=frozenset({"GET"}),
    )
    session = requests.Session()
    session.mount("https://", HTTPAdapter(max_retries=retry))
    return session


RAZORPAY_ERROR_CODES = {
    BadRequestError: "BAD_REQUEST_ERROR",
    ServerError: "SERVER_ERROR",
    RazorpayGatewayError: "GATEWAY_ERROR",
}


class RazorpayGateway(PaymentGateway):
    """Razorpay orders through the official SDK; amounts travel in paise."""

    name = "razorpay"

    def __init__(self, config=None, client=None):
        super().__init__(config)
        self.key_id = self.config.get("key_id")
        self.key_secret = self.config.get("key_secret")
        self.webhook_secret = self.config.get("webhook_secret")
        self.timeout = self.config.get("timeout", GATEWAY_TIMEOUT_SECONDS)
        self.client = client or razorpay.Client(
            session=build_http_session(self.config.get("max_retries", GATEWAY_MAX_RETRIES)),
            auth=(self.key_id, self.key_secret),
        )

    def _call(self, operation, *args, **kwargs):
        if not self.key_id or not self.key_secret:
            raise GatewayError("Payment gateway is not configured", code="GATEWAY_NOT_CONFIGURED")
        try:
            return operation(*args, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise GatewayError(f"Razorpay request failed: {str(e)}", code="GATEWAY_UNREACHABLE")
        except tuple(RAZORPAY_ERROR_CODES) as e:
            code = next(error_code for error_class, error_code in RAZORPAY_ERROR_CODES.items()
                        if isinstance(e, error_class))
            raise GatewayError(str(e) or "Razorpay request failed", code=code)

    def create_payment(self, amount, currency, receipt, metadata=None, idempotency_key=None):
        order = self._call(self.client.order.create, {
            "amount": to_minor_units(amount),
            "currency": currency,
            "receipt": receipt,
            "notes": {key: str(value) for key, value in (metadata or {}).items()},
        })
        return {
            "transactionId": order["id"],
            "orderId": order["id"],
            "amount": order.get("amount", 0) / 100,
            "currency": order.get("currency", currency),
            "status": PaymentStatus.PENDING.value,
            "raw": order,
        }

    def verify_payment(self, transaction_id):
        if transaction_id.startswith("order_"):
            order = self._call(self.client.order.fetch, transaction_id)
            status = PaymentStatus.COMPLETED.value if order.get("status") == "paid" else PaymentStatus.PENDING.value
            return {"transactionId": transaction_id, "status": status, "raw": order}

        payment = self._call(self.client.payment.fetch, transaction_id)
        if payment.get("status") == "captured":
            status = PaymentStatus.COMPLETED.value
        elif payment.get("status") == "failed":
            status = PaymentStatus.FAILED.value
        else:
            status = PaymentStatus.PENDING.value
        return {"transactionId": transaction_id, "status": status, "raw": payment}

    def _captured_payment_id(self, transaction_id):
        # Refunds are issued against the captured payment, not the order.
        if not transaction_id.startswith("order_"):
            return transaction_id
        payments = self._call(self.client.order.payments, transaction_id).get("items", [])
        captured = next((item for item in payments if item.get("status") == "captured"), None)
        if not captured:
            raise GatewayError("No captured payment found for order", code="NO_CAPTURED_PAYMENT")
        return captured["id"]

    def process_refund(self, transaction_id, amount, reason=None):
        payment_id = self._captured_payment_id(transaction_id)
        refund = self._call(self.client.payment.refund, payment_id, {
            "amount": to_minor_units(amount),
            "notes": {"reason": reason or "Customer requested refund"},
        })
        return {"refundId": refund["id"], "status": refund.get("status"), "raw": refund}

    def verify_webhook(self, payload, signature):
        if not self.webhook_secret or not signature:
            logging.warning("Razorpay webhook rejected: missing secret or signature")
            return {"verified": False, "data": None}

        try:
            body_text = payload.decode("utf-8")
            self.client.utility.verify_webhook_signature(body_text, signature, self.webhook_secret)
        except (UnicodeDecodeError, SignatureVerificationError) as e:
            logging.warning(f"Razorpay webhook signature verification failed: {str(e)}")
            return {"verified": False, "data": None}

        try:
            body = json.loads(body_text)
            event = body.get("event", "")
            entities = body.get("payload", {})
            if "payment" in entities:
                entity = entities["payment"]["entity"]
                order_id = entity.get("order_id")
            else:
                entity = entities.get("order", {}).get("entity", {})
                order_id = entity.get("id")
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logging.warning(f"Razorpay webhook with malformed body rejected: {str(e)}")
            return {"verified": False, "data": None}

        status = "failed" if event == "payment.failed" else entity.get("status")
        return {
            "verified": True,
            "data": {
                "transactionId": entity.get("id"),
                "orderId": order_id,
                "status": status,
                "eventId": f"{event}:{entity.get('id')}",
            },
        }


class StripeGateway(PaymentGateway):
    name = "stripe"

    def __init__(self, config=None):
        super().__init__(config)
        self.api_key = self.config.get("secret_key")
        self.webhook_secret = self.config.get("webhook_secret")
        stripe.max_network_retries = self.config.get("max_retries", GATEWAY_MAX_RETRIES)

    def _check_configured(self):
        if not self.api_key:
            raise GatewayError("Payment gateway is not configured", code="GATEWAY_NOT_CONFIGURED")

    @staticmethod
    def _as_gateway_error(error):
        return GatewayError(
            getattr(error, "user_message", None) or str(error),
            code=getattr(error, "code", None) or "STRIPE_ERROR",
        )

    def create_payment(self, amount, currency, receipt, metadata=None, idempotency_key=None):
        self._check_configured()
        try:
            intent = stripe.PaymentIntent.create(
                api_key=self.api_key,
                idempotency_key=idempotency_key,
                amount=to_minor_units(amount),
                currency=currency.lower(),
                description=receipt,
                metadata={key: str(value) for key, value in (metadata or {}).items()},
            )
        except stripe.StripeError as e:
            raise self._as_gateway_error(e)
        return {
            "transactionId": intent["id"],
            "orderId": intent["id"],
            "clientSecret": intent["client_secret"],
            "status": PaymentStatus.PENDING.value,
            "raw": {"id": intent["id"], "status": intent["status"]},
        }

    def verify_payment(self, transaction_id):
        self._check_configured()
        try:
            intent = stripe.PaymentIntent.retrieve(transaction_id, api_key=self.api_key)
        except stripe.StripeError as e:
            raise self._as_gateway_error(e)
        if intent["status"] == "succeeded":
            status = PaymentStatus.COMPLETED.value
        elif intent["status"] == "canceled":
            status = PaymentStatus.FAILED.value
        else:
            status = PaymentStatus.PENDING.value
        return {
            "transactionId": transaction_id,
            "status": status,
            "raw": {"id": intent["id"], "status": intent["status"], "amount": intent["amount"]},
        }

    def process_refund(self, transaction_id, amount, reason=None):
        self._check_configured()
        try:
            refund = stripe.Refund.create(
                api_key=self.api_key,
                payment_intent=transaction_id,
                amount=to_minor_units(amount),
                metadata={"reason": reason or "requested_by_customer"},
            )
        except stripe.StripeError as e:
            raise self._as_gateway_error(e)
        return {"refundId": refund["id"], "status": refund["status"], "raw": {"id": refund["id"]}}

    def verify_webhook(self, payload, signature):
        if not self.webhook_secret or not signature:
            logging.warning("Stripe webhook rejected: missing secret or signature")
            return {"verified": False, "data": None}
        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            logging.warning(f"Stripe webhook signature verification failed: {str(e)}")
            return {"verified": False, "data": None}

        intent = event["data"]["object"]
        if event["type"] == "payment_intent.payment_failed":
            status = "failed"
        else:
            status = intent.get("status")
        return {
            "verified": True,
            "data": {
                "transactionId": intent.get("id"),
                "orderId": intent.get("id"),
                "status": status,
                "eventId": event["id"],
            },
        }


def gateway_config(name):
    """Provider credentials from environment variables."""
    if name == RazorpayGateway.name:
        return {
            "key_id": os.getenv("RAZORPAY_KEY_ID"),
            "key_secret": os.getenv("RAZORPAY_KEY_SECRET"),
            "webhook_secret": os.getenv("RAZORPAY_WEBHOOK_SECRET"),
        }
    if name == StripeGateway.name:
        return {
            "secret_key": os.getenv("STRIPE_SECRET_KEY"),
            "webhook_secret": os.getenv("STRIPE_WEBHOOK_SECRET"),
        }
    return {}


DEFAULT_GATEWAYS = {
    OfflineGateway.name: OfflineGateway,
    RazorpayGateway.name: RazorpayGateway,
    StripeGateway.name: StripeGateway,
}


class GatewayRegistry:
    """Builds each gateway once by name; the only place that maps names to providers."""

    def __init__(self, factories=None):
        self._factories = dict(DEFAULT_GATEWAYS if factories is None else factories)
        self._instances = {}

    def register(self, name, factory):
        self._factories[name] = factory
        self._instances.pop(name, None)

    def __contains__(self, name):
        return name in self._factories

    def names(self):
        return sorted(self._factories)

    def get(self, name) -> PaymentGateway:
        if name not in self._factories:
            raise ValidationError(f"Unsupported payment gateway: {name}")
        if name not in self._instances:
            self._instances[name] = self._factories[name](gateway_config(name))
        return self._instances[name]


default_registry = GatewayRegistry()


def get_gateway_registry():
    return default_registry
