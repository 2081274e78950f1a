import json

import pytest

from clinicpay import config
from clinicpay.models_audit import AuditLog
from clinicpay.models_payment import Payment
from clinicpay.notifications import PAYMENT_RECEIVED, PAYMENT_REFUNDED
from clinicpay.webhook_security import WEBHOOK_SIGNATURE_HEADER, create_client_signature, create_webhook_signature
from conftest import KEY_SECRET, WEBHOOK_SECRET, auth_headers


def post_webhook(client, event, secret=WEBHOOK_SECRET, signature=None):
    body = json.dumps(event).encode()
    headers = {"Content-Type": "application/json"}
    headers[WEBHOOK_SIGNATURE_HEADER] = signature or create_webhook_signature(secret, body)
    return client.post("/api/payments/webhook", content=body, headers=headers)


def capture_event(order_id, payment_id):
    return {
        "event": "payment.captured",
        "payload": {"payment": {"entity": {"id": payment_id, "order_id": order_id, "method": "upi"}}},
    }


def create_order(client, seeded):
    return client.post(
        "/api/payments/create-order",
        json={"appointmentId": seeded.appointment_id},
        headers=auth_headers(seeded.patient_id, "patient"),
    )


def verify(client, seeded, order_id, payment_id, signature=None):
    return client.post(
        "/api/payments/verify",
        json={
            "razorpay_order_id": order_id,
            "razorpay_payment_id": payment_id,
            "razorpay_signature": signature or create_client_signature(order_id, payment_id, KEY_SECRET),
        },
        headers=auth_headers(seeded.patient_id, "patient"),
    )


def test_full_payment_lifecycle(client, seeded, gateway, dispatcher, db):
    admin = auth_headers(seeded.admin_id, "admin")

    # Order for the 500 consultation fee
    response = create_order(client, seeded)
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["key"] == "rzp_test_key"
    assert body["order"]["amount"] == 50000
    order_id, payment_id = body["order"]["id"], body["paymentId"]

    # Client confirmation
    response = verify(client, seeded, order_id, "pay_live1")
    assert response.status_code == 200
    assert response.json()["payment"]["status"] == "completed"
    assert "gatewaySignature" not in response.json()["payment"]

    # The gateway's capture webhook arrives afterwards and changes nothing
    response = post_webhook(client, capture_event(order_id, "pay_live1"))
    assert response.status_code == 200
    assert dispatcher.count(PAYMENT_RECEIVED) == 1

    # Full refund
    response = client.post(f"/api/payments/{payment_id}/refund", json={"amount": 500}, headers=admin)
    assert response.status_code == 200
    refunded = response.json()["payment"]
    assert refunded["status"] == "refunded"
    assert refunded["refund"]["amount"] == 500.0
    assert refunded["refund"]["type"] == "full"

    # Second refund is refused before the gateway is called
    response = client.post(f"/api/payments/{payment_id}/refund", json={"amount": 500}, headers=admin)
    assert response.status_code == 400
    assert response.json()["detail"] == "Payment is not refundable"
    assert len(gateway.refunds) == 1
    assert dispatcher.count(PAYMENT_REFUNDED) == 1


def test_webhook_before_client_confirmation(client, seeded, dispatcher):
    order_id = create_order(client, seeded).json()["order"]["id"]

    assert post_webhook(client, capture_event(order_id, "pay_1")).json()["status"] == "processed"
    response = verify(client, seeded, order_id, "pay_1")

    assert response.status_code == 200
    assert response.json()["payment"]["status"] == "completed"
    assert dispatcher.count(PAYMENT_RECEIVED) == 1


def test_bad_client_signature_changes_nothing(client, seeded, db, audit):
    order_id = create_order(client, seeded).json()["order"]["id"]

    response = verify(client, seeded, order_id, "pay_1", signature="0" * 64)

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid payment signature"
    payment = db.query(Payment).filter(Payment.gateway_order_id == order_id).one()
    assert payment.status == "pending"
    assert payment.gateway_payment_id is None
    audit.flush()
    assert db.query(AuditLog).filter(AuditLog.action == "Payment signature verification failed").count() == 1


REFUND_COLUMNS = ("refund_amount", "refund_reason", "refund_transaction_id", "refunded_at", "refunded_by", "refund_type")


def signed_events(order_id, payment_id):
    return {
        "payment.captured": capture_event(order_id, "pay_new"),
        "payment.failed": {
            "event": "payment.failed",
            "payload": {"payment": {"entity": {"id": "pay_new", "order_id": order_id, "error_description": "x"}}},
        },
        "refund.processed": {
            "event": "refund.processed",
            "payload": {"refund": {"entity": {"id": "rfnd_forged", "payment_id": payment_id, "amount": 50000}}},
        },
    }


@pytest.mark.parametrize(
    "event_kind, status, gateway_payment_id",
    [
        ("payment.captured", "pending", None),
        ("payment.failed", "pending", None),
        ("refund.processed", "completed", "pay_1"),
    ],
)
def test_bad_webhook_signature_changes_nothing(
    client, db, audit, make_payment, event_kind, status, gateway_payment_id
):
    payment = make_payment(status=status, order_id="order_sig", gateway_payment_id=gateway_payment_id)
    event = signed_events("order_sig", "pay_1")[event_kind]

    response = post_webhook(client, event, secret="wrong_secret")

    assert response.status_code == 401
    db.expire_all()
    stored = db.get(Payment, payment.id)
    assert stored.status == status
    assert stored.gateway_payment_id == gateway_payment_id
    assert stored.failure_reason is None
    for column in REFUND_COLUMNS:
        assert getattr(stored, column) is None
    audit.flush()
    entry = db.query(AuditLog).filter(AuditLog.action == "Webhook signature rejected").one()
    assert entry.severity == "warning"


def test_webhook_without_secret_rejected_unless_explicitly_allowed(client, seeded, db, monkeypatch):
    order_id = create_order(client, seeded).json()["order"]["id"]
    monkeypatch.setattr(config, "RAZORPAY_WEBHOOK_SECRET", None)

    response = post_webhook(client, capture_event(order_id, "pay_1"), signature="anything")
    assert response.status_code == 503

    monkeypatch.setattr(config, "RAZORPAY_ALLOW_UNVERIFIED_WEBHOOKS", True)
    response = post_webhook(client, capture_event(order_id, "pay_1"), signature="anything")
    assert response.status_code == 200
    assert db.query(Payment).filter(Payment.gateway_order_id == order_id).one().status == "completed"


def test_unknown_webhook_event_acknowledged(client, seeded):
    response = post_webhook(client, {"event": "payout.processed", "payload": {}})
    assert response.status_code == 200
    assert response.json()["status"] == "ignored"


def test_webhook_for_unknown_order_acknowledged(client, seeded):
    response = post_webhook(client, capture_event("order_nope", "pay_1"))
    assert response.status_code == 200
    assert response.json()["status"] == "ignored"


def test_malformed_webhook_body_acknowledged(client, seeded):
    body = b"not json"
    response = client.post(
        "/api/payments/webhook",
        content=body,
        headers={WEBHOOK_SIGNATURE_HEADER: create_webhook_signature(WEBHOOK_SECRET, body)},
    )
    assert response.status_code == 200
    assert response.json()["status"] == "ignored"


def test_confirm_on_failed_payment_is_conflict(client, seeded, db):
    order_id = create_order(client, seeded).json()["order"]["id"]
    post_webhook(
        client,
        {
            "event": "payment.failed",
            "payload": {"payment": {"entity": {"id": "pay_1", "order_id": order_id, "error_description": "declined"}}},
        },
    )

    response = verify(client, seeded, order_id, "pay_1")

    assert response.status_code == 409
    assert response.json()["detail"] == "Payment is already in a terminal state"


def test_verify_requires_owner(client, seeded):
    order_id = create_order(client, seeded).json()["order"]["id"]
    response = client.post(
        "/api/payments/verify",
        json={
            "razorpay_order_id": order_id,
            "razorpay_payment_id": "pay_1",
            "razorpay_signature": create_client_signature(order_id, "pay_1", KEY_SECRET),
        },
        headers=auth_headers(seeded.other_id, "patient"),
    )
    assert response.status_code == 403


def test_verify_rejects_blank_fields(client, seeded):
    response = client.post(
        "/api/payments/verify",
        json={"razorpay_order_id": " ", "razorpay_payment_id": "pay_1", "razorpay_signature": "x"},
        headers=auth_headers(seeded.patient_id, "patient"),
    )
    assert response.status_code == 422


def test_admin_cannot_create_order(client, seeded):
    response = client.post(
        "/api/payments/create-order",
        json={"appointmentId": seeded.appointment_id},
        headers=auth_headers(seeded.admin_id, "admin"),
    )
    assert response.status_code == 403


def test_gateway_error_maps_to_502(client, seeded, gateway):
    from clinicpay.domain.payments.gateway import GatewayError

    gateway.fail_with = GatewayError("Payment gateway timed out")
    response = create_order(client, seeded)
    assert response.status_code == 502


@pytest.mark.parametrize("role_key, expected", [("patient_id", 200), ("admin_id", 200), ("other_id", 403)])
def test_payment_details_visibility(client, seeded, role_key, expected):
    payment_id = create_order(client, seeded).json()["paymentId"]
    role = "admin" if role_key == "admin_id" else "patient"

    response = client.get(f"/api/payments/{payment_id}", headers=auth_headers(getattr(seeded, role_key), role))

    assert response.status_code == expected
    if expected == 200:
        payment = response.json()["payment"]
        assert payment["patient"]["fullName"] == "Asha Patient"
        assert payment["doctor"]["fullName"] == "Dr. Kapoor"
        assert payment["appointment"]["timeSlot"] == "10:00-10:30"


def test_refund_requires_admin(client, seeded, make_payment, gateway):
    payment = make_payment(status="completed", gateway_payment_id="pay_1")
    response = client.post(
        f"/api/payments/{payment.id}/refund", json={}, headers=auth_headers(seeded.patient_id, "patient")
    )
    assert response.status_code == 403
    assert gateway.refunds == []


def test_refund_over_original_amount_rejected(client, seeded, make_payment, gateway):
    payment = make_payment(status="completed", gateway_payment_id="pay_1")
    response = client.post(
        f"/api/payments/{payment.id}/refund", json={"amount": 750}, headers=auth_headers(seeded.admin_id, "admin")
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid refund amount"
    assert gateway.refunds == []


def test_security_headers_present(client, seeded):
    payment_id = create_order(client, seeded).json()["paymentId"]
    response = client.get(f"/api/payments/{payment_id}", headers=auth_headers(seeded.patient_id, "patient"))
    assert response.headers["Cache-Control"] == "no-store, no-cache, must-revalidate, private"
    assert response.headers["X-Frame-Options"] == "DENY"


def test_invalid_token(client, seeded):
    response = client.get("/api/payments/1", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401
