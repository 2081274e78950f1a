"""Payment service - Business logic for client confirmation and payment details"""

import logging
from decimal import Decimal
from typing import Optional

from fastapi import HTTPException, Request
from sqlalchemy.orm import Session

from ...audit import AuditRecorder, get_audit_recorder
from ...config import RAZORPAY_KEY_SECRET
from ...models import User
from ...models_payment import Payment
from ...webhook_security import verify_client_signature
from .repository import PaymentRepository
from .schemas import VerifyPaymentRequest
from .state_machine import PaymentStateMachine, TransitionOutcome

logger = logging.getLogger(__name__)


def money(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


def serialize_payment(payment: Payment) -> dict:
    """Public projection of a payment; the stored signature is never included"""
    return {
        "id": payment.id,
        "publicId": payment.public_id,
        "appointmentId": payment.appointment_id,
        "patientId": payment.patient_id,
        "doctorId": payment.doctor_id,
        "amount": money(payment.amount),
        "currency": payment.currency,
        "status": payment.status,
        "isTerminal": payment.is_terminal,
        "paymentMethod": payment.payment_method,
        "paymentGateway": payment.payment_gateway,
        "gatewayOrderId": payment.gateway_order_id,
        "gatewayPaymentId": payment.gateway_payment_id,
        "transactionId": payment.transaction_id,
        "paidAt": payment.paid_at.isoformat() if payment.paid_at else None,
        "failureReason": payment.failure_reason,
        "consultationFee": money(payment.consultation_fee),
        "onlinePaymentFee": money(payment.online_payment_fee),
        "platformCommission": money(payment.platform_commission),
        "doctorEarning": money(payment.doctor_earning),
        "refund": (
            {
                "amount": money(payment.refund_amount),
                "reason": payment.refund_reason,
                "transactionId": payment.refund_transaction_id,
                "refundedAt": payment.refunded_at.isoformat() if payment.refunded_at else None,
                "refundedBy": payment.refunded_by,
                "type": payment.refund_type,
            }
            if payment.refund_transaction_id or payment.refund_amount is not None
            else None
        ),
        "createdAt": payment.created_at.isoformat() if payment.created_at else None,
    }


class PaymentService:
    """Service for payment confirmation and lookups"""

    def __init__(
        self,
        db: Session,
        state_machine: PaymentStateMachine,
        audit: Optional[AuditRecorder] = None,
        key_secret: Optional[str] = RAZORPAY_KEY_SECRET,
    ):
        self.db = db
        self.state_machine = state_machine
        self.audit = audit or get_audit_recorder()
        self.key_secret = key_secret

    def confirm_payment(self, data: VerifyPaymentRequest, user: User, request: Optional[Request] = None) -> Payment:
        """Verify the client-relayed signature and complete the payment"""
        payment = PaymentRepository.get_by_gateway_order_id(self.db, data.razorpay_order_id)
        if not payment:
            raise HTTPException(status_code=404, detail="Payment not found")

        if payment.patient_id != user.id:
            logger.warning(f"⚠️ User {user.id} tried to confirm payment {payment.id} they do not own")
            raise HTTPException(status_code=403, detail="Not authorized")

        if not verify_client_signature(
            data.razorpay_order_id, data.razorpay_payment_id, data.razorpay_signature, self.key_secret
        ):
            self.audit.record(
                action="Payment signature verification failed",
                module="payments",
                severity="warning",
                description=f"Invalid client signature for order {data.razorpay_order_id}",
                actor=user,
                target_id=payment.id,
                target_model="Payment",
                new_data=data.model_dump(),
                request=request,
            )
            raise HTTPException(status_code=400, detail="Invalid payment signature")

        result = self.state_machine.apply_client_confirmation(
            payment,
            gateway_payment_id=data.razorpay_payment_id,
            signature=data.razorpay_signature,
            actor=user,
            request=request,
        )

        if result.succeeded:
            return result.payment
        if result.outcome == TransitionOutcome.NOT_FOUND:
            raise HTTPException(status_code=404, detail="Payment not found")
        if result.outcome == TransitionOutcome.TERMINAL:
            raise HTTPException(status_code=409, detail="Payment is already in a terminal state")
        raise HTTPException(status_code=409, detail="Payment could not be confirmed")

    def get_payment_details(self, payment_id: int, user: User) -> dict:
        payment = PaymentRepository.get_by_id(self.db, payment_id)
        if not payment:
            raise HTTPException(status_code=404, detail="Payment not found")

        if user.role != "admin" and payment.patient_id != user.id:
            raise HTTPException(status_code=403, detail="Not authorized")

        details = serialize_payment(payment)
        patient, doctor, appointment = payment.patient, payment.doctor, payment.appointment
        details["patient"] = {"fullName": patient.full_name, "email": patient.email} if patient else None
        details["doctor"] = {"fullName": doctor.full_name, "email": doctor.email} if doctor else None
        details["appointment"] = (
            {
                "appointmentDate": appointment.appointment_date.isoformat() if appointment.appointment_date else None,
                "timeSlot": appointment.time_slot,
                "consultationType": appointment.consultation_type,
            }
            if appointment
            else None
        )
        return details
