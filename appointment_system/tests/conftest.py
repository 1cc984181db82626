import hashlib
import hmac
import json
import os
import random
import string
import tempfile
from datetime import date, timedelta
from unittest.mock import Mock

_DB_DIR = tempfile.mkdtemp()
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'appointments_test.db')}"
os.environ["JWT_SECRET_KEY"] = "test-secret-key"
os.environ["CLINIC_TIMEZONE"] = "UTC"
os.environ["DEFAULT_ONLINE_GATEWAY"] = "fakepay"

import pytest
from fastapi.testclient import TestClient
from redis import Redis

from appointment_system.app import create_app
from appointment_system.app.auth import create_access_token, get_password_hash
from appointment_system.app.dependencies import SessionLocal, UserRole, engine, get_redis_client
from appointment_system.app.exceptions import GatewayError
from appointment_system.app.gateways import GatewayRegistry, OfflineGateway, PaymentGateway, get_gateway_registry
from appointment_system.app.models import (AvailabilityTimeSlot, Base, Doctor, DoctorAvailability, User)

PASSWORD = "testpassword123"
PASSWORD_HASH = get_password_hash(PASSWORD)
WEBHOOK_SECRET = "whsec_test"


class FakeGateway(PaymentGateway):
    """In-memory online gateway with switchable failures."""

    name = "fakepay"

    def __init__(self, config=None):
        super().__init__(config)
        self.orders = []
        self.refunds = []
        self.verify_status = "pending"
        self.fail_create = False
        self.fail_verify = False
        self.fail_refund = False

    def create_payment(self, amount, currency, receipt, metadata=None, idempotency_key=None):
        if self.fail_create:
            raise GatewayError("Gateway unavailable", code="GATEWAY_UNREACHABLE")
        order_id = f"fake_order_{len(self.orders) + 1}"
        self.orders.append({"id": order_id, "amount": amount, "receipt": receipt,
                            "idempotency_key": idempotency_key})
        return {"transactionId": order_id, "orderId": order_id, "status": "pending"}

    def verify_payment(self, transaction_id):
        if self.fail_verify:
            raise GatewayError("Gateway timeout", code="GATEWAY_TIMEOUT")
        return {"transactionId": transaction_id, "status": self.verify_status, "raw": {"id": transaction_id}}

    def process_refund(self, transaction_id, amount, reason=None):
        if self.fail_refund:
            raise GatewayError("Refund declined", code="REFUND_DECLINED")
        refund_id = f"fake_refund_{len(self.refunds) + 1}"
        self.refunds.append({"id": refund_id, "transaction_id": transaction_id, "amount": amount})
        return {"refundId": refund_id, "status": "processed", "raw": {"id": refund_id}}

    def verify_webhook(self, payload, signature):
        expected = hmac.new(WEBHOOK_SECRET.encode(), payload, hashlib.sha256).hexdigest()
        if not signature or not hmac.compare_digest(expected, signature):
            return {"verified": False, "data": None}
        return {"verified": True, "data": json.loads(payload)}


def sign(payload: bytes):
    return hmac.new(WEBHOOK_SECRET.encode(), payload, hashlib.sha256).hexdigest()


def next_weekday(weekday, weeks_ahead=1):
    """A future date falling on `weekday` (0 = Monday)."""
    today = date.today()
    return today + timedelta(days=(weekday - today.weekday()) % 7 + 7 * weeks_ahead)


def generate_random_email(role):
    return f"test_{role}_{''.join(random.choices(string.ascii_lowercase + string.digits, k=8))}@example.com"


@pytest.fixture(scope="session")
def app():
    return create_app()


@pytest.fixture(autouse=True)
def clean_tables(app):
    yield
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def redis_client():
    store = {}
    client = Mock(spec=Redis)

    def fake_set(key, value, nx=False, ex=None):
        if nx and key in store:
            return None
        store[key] = value
        return True

    client.set.side_effect = fake_set
    client.get.side_effect = store.get
    client.delete.side_effect = lambda key: 1 if store.pop(key, None) is not None else 0
    client.store = store
    return client


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def gateways(fake_gateway):
    return GatewayRegistry({
        OfflineGateway.name: OfflineGateway,
        FakeGateway.name: lambda config: fake_gateway,
    })


@pytest.fixture
def client(app, redis_client, gateways):
    app.dependency_overrides[get_redis_client] = lambda: redis_client
    app.dependency_overrides[get_gateway_registry] = lambda: gateways
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    def _make(role, consultation_fee=500.0, is_approved=True, timezone=None):
        user = User(name=f"Test {role.capitalize()}", email=generate_random_email(role),
                    hashed_password=PASSWORD_HASH, role=role)
        db.add(user)
        db.flush()
        if role == UserRole.DOCTOR.value:
            db.add(Doctor(user_id=user.id, consultation_fee=consultation_fee, consultation_duration=30,
                          is_approved=is_approved, timezone=timezone))
        db.commit()
        db.refresh(user)
        return user
    return _make


@pytest.fixture
def patient(make_user):
    return make_user(UserRole.PATIENT.value)


@pytest.fixture
def doctor(make_user):
    return make_user(UserRole.DOCTOR.value)


@pytest.fixture
def admin(make_user):
    return make_user(UserRole.ADMIN.value)


@pytest.fixture
def auth_headers():
    def _headers(user):
        return {"Authorization": f"Bearer {create_access_token({'sub': user.email})}"}
    return _headers


@pytest.fixture
def set_weekly_slots(db):
    def _set(doctor_id, day, slots, is_available=True):
        availability = DoctorAvailability(doctor_id=doctor_id, day=day, is_available=is_available)
        availability.time_slots = [AvailabilityTimeSlot(start=start, end=end) for start, end in slots]
        db.add(availability)
        db.commit()
        return availability
    return _set


@pytest.fixture
def monday():
    return next_weekday(0)


@pytest.fixture
def monday_schedule(doctor, set_weekly_slots):
    return set_weekly_slots(doctor.id, "monday", [("09:00", "09:30"), ("09:30", "10:00"), ("10:00", "10:30")])


@pytest.fixture
def tuesday():
    return next_weekday(1)


@pytest.fixture
def signer():
    return sign
