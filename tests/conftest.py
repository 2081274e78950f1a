import os
import sys
from datetime import date
from decimal import Decimal
from pathlib import Path
from types import SimpleNamespace

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

# Settings are read once at import time
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["DB_LOG_SLOW_QUERIES"] = "false"
os.environ["RAZORPAY_KEY_ID"] = "rzp_test_key"
os.environ["RAZORPAY_KEY_SECRET"] = "test_key_secret"
os.environ["RAZORPAY_WEBHOOK_SECRET"] = "test_webhook_secret"
os.environ["RAZORPAY_ALLOW_UNVERIFIED_WEBHOOKS"] = "false"
os.environ["FIELD_ENCRYPTION_KEY"] = "11" * 32
os.environ["SECRET_KEY"] = "test-jwt-secret"
os.environ["SECURITY_HEADERS_ENABLED"] = "true"

from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from clinicpay.audit import AuditRecorder, get_audit_recorder  # noqa: E402
from clinicpay.auth import create_access_token  # noqa: E402
from clinicpay.database import Base, get_db  # noqa: E402
from clinicpay.domain.payments.gateway import get_gateway, to_minor_units  # noqa: E402
from clinicpay.domain.payments.state_machine import PaymentStateMachine  # noqa: E402
from clinicpay.models import Appointment, Doctor, User  # noqa: E402
from clinicpay.models_payment import Payment  # noqa: E402
from clinicpay.notifications import NotificationDispatcher, get_notification_dispatcher  # noqa: E402

KEY_SECRET = "test_key_secret"
WEBHOOK_SECRET = "test_webhook_secret"


class FakeGateway:
    """Stands in for RazorpayService; records every call"""

    def __init__(self):
        self.orders = []
        self.refunds = []
        self.fail_with = None
        self.before_refund_returns = None

    def is_available(self):
        return True

    async def create_order(self, amount, currency, receipt, notes=None):
        if self.fail_with:
            raise self.fail_with
        order = {
            "id": f"order_test{len(self.orders) + 1}",
            "amount": to_minor_units(amount),
            "currency": currency,
            "receipt": receipt,
            "notes": notes or {},
            "status": "created",
        }
        self.orders.append(order)
        return order

    async def refund_payment(self, gateway_payment_id, amount, notes=None):
        if self.fail_with:
            raise self.fail_with
        refund = {
            "id": f"rfnd_test{len(self.refunds) + 1}",
            "payment_id": gateway_payment_id,
            "amount": to_minor_units(amount),
            "notes": notes or {},
        }
        self.refunds.append(refund)
        if self.before_refund_returns:
            self.before_refund_returns(refund)
        return refund


class RecordingDispatcher(NotificationDispatcher):
    def __init__(self):
        self.sent = []

    def send(self, notification_type, payment):
        self.sent.append((notification_type, payment.id))

    def count(self, notification_type):
        return sum(1 for sent_type, _ in self.sent if sent_type == notification_type)


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'clinicpay_test.db'}", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def audit(session_factory):
    return AuditRecorder(session_factory=session_factory, maxsize=100)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def machine(db, audit, dispatcher):
    return PaymentStateMachine(db, audit, dispatcher)


@pytest.fixture
def seeded(db):
    patient = User(full_name="Asha Patient", email="asha@example.com", phone="+919800000001", role="patient")
    other = User(full_name="Ravi Patient", email="ravi@example.com", role="patient")
    admin = User(full_name="Meera Admin", email="admin@example.com", role="admin")
    doctor = Doctor(full_name="Dr. Kapoor", email="kapoor@example.com", specialization="Cardiology")
    db.add_all([patient, other, admin, doctor])
    db.commit()

    appointment = Appointment(
        patient_id=patient.id,
        doctor_id=doctor.id,
        appointment_date=date(2026, 11, 2),
        time_slot="10:00-10:30",
        consultation_type="video",
        consultation_fee=Decimal("500.00"),
    )
    db.add(appointment)
    db.commit()

    return SimpleNamespace(
        patient_id=patient.id,
        other_id=other.id,
        admin_id=admin.id,
        doctor_id=doctor.id,
        appointment_id=appointment.id,
    )


@pytest.fixture
def make_payment(db, seeded):
    """Insert a payment directly in any status"""

    def _make(status="pending", order_id="order_1", gateway_payment_id=None, amount="500.00", **extra):
        payment = Payment(
            appointment_id=seeded.appointment_id,
            patient_id=seeded.patient_id,
            doctor_id=seeded.doctor_id,
            amount=Decimal(amount),
            gateway_order_id=order_id,
            gateway_payment_id=gateway_payment_id,
            status=status,
            **extra,
        )
        db.add(payment)
        db.commit()
        db.refresh(payment)
        return payment

    return _make


@pytest.fixture
def client(session_factory, audit, dispatcher, gateway):
    from clinicpay.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_audit_recorder] = lambda: audit
    app.dependency_overrides[get_notification_dispatcher] = lambda: dispatcher

    yield TestClient(app)

    app.dependency_overrides.clear()


def auth_headers(user_id, role):
    return {"Authorization": f"Bearer {create_access_token(user_id, role)}"}
