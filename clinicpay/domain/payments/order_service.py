"""Order service - Creates gateway orders and the matching pending payment"""

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from fastapi import HTTPException, Request
from sqlalchemy.orm import Session

from ...audit import AuditRecorder, get_audit_recorder
from ...config import ONLINE_PAYMENT_FEE_PERCENT, PAYMENT_CURRENCY
from ...models import User
from ...models_payment import Payment
from .gateway import GatewayError, RazorpayService
from .repository import PaymentRepository

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


def calculate_fee_breakdown(amount: Decimal, fee_percent: Decimal = Decimal(ONLINE_PAYMENT_FEE_PERCENT)) -> dict:
    """
    Split a consultation fee into the platform's online payment fee and the
    doctor's earning. The fee doubles as the platform commission.
    """
    amount = Decimal(amount).quantize(CENTS, rounding=ROUND_HALF_UP)
    online_fee = (amount * Decimal(fee_percent) / 100).quantize(CENTS, rounding=ROUND_HALF_UP)
    return {
        "consultation_fee": amount,
        "online_payment_fee": online_fee,
        "platform_commission": online_fee,
        "commission_percentage": Decimal(fee_percent),
        "doctor_earning": amount - online_fee,
    }


class OrderService:
    """Opens a payment for an appointment"""

    def __init__(
        self,
        db: Session,
        gateway: RazorpayService,
        audit: Optional[AuditRecorder] = None,
        currency: str = PAYMENT_CURRENCY,
    ):
        self.db = db
        self.gateway = gateway
        self.audit = audit or get_audit_recorder()
        self.currency = currency

    async def create_order(
        self,
        appointment_id: int,
        user: User,
        request: Optional[Request] = None,
    ) -> tuple[Payment, dict]:
        appointment = PaymentRepository.get_appointment(self.db, appointment_id)
        if not appointment:
            raise HTTPException(status_code=404, detail="Appointment not found")

        if appointment.patient_id != user.id:
            logger.warning(f"⚠️ User {user.id} tried to pay for appointment {appointment_id} they do not own")
            raise HTTPException(status_code=403, detail="Not authorized")

        amount = Decimal(appointment.consultation_fee or 0)
        if amount <= 0:
            raise HTTPException(status_code=400, detail="Invalid consultation fee")

        if PaymentRepository.get_completed_for_appointment(self.db, appointment_id):
            raise HTTPException(status_code=400, detail="Appointment is already paid")

        try:
            order = await self.gateway.create_order(
                amount=amount,
                currency=self.currency,
                receipt=f"apt_{appointment.id}",
                notes={
                    "appointmentId": str(appointment.id),
                    "patientId": str(appointment.patient_id),
                    "doctorId": str(appointment.doctor_id),
                },
            )
        except GatewayError as e:
            logger.error(f"❌ Order creation failed for appointment {appointment_id}: {e.message}")
            raise HTTPException(status_code=502, detail=f"Payment gateway error: {e.message}") from e

        try:
            payment = PaymentRepository.create(
                self.db,
                appointment_id=appointment.id,
                patient_id=appointment.patient_id,
                doctor_id=appointment.doctor_id,
                amount=amount,
                currency=self.currency,
                gateway_order_id=order["id"],
                **calculate_fee_breakdown(amount),
            )
        except Exception as e:
            self.db.rollback()
            logger.critical(
                f"🚨 Reconciliation gap: gateway order {order['id']} exists but no payment was stored "
                f"for appointment {appointment_id}: {e}"
            )
            self.audit.record(
                action="Reconciliation gap",
                module="payments",
                severity="critical",
                description=f"Gateway order {order['id']} created but local payment persistence failed",
                actor=user,
                target_id=appointment.id,
                target_model="Appointment",
                new_data={"gateway_order_id": order["id"], "amount": amount},
                request=request,
            )
            raise HTTPException(status_code=500, detail="Failed to record payment order") from e

        logger.info(f"💳 Payment {payment.id} opened for appointment {appointment_id} (order {order['id']})")
        self.audit.record(
            action="Payment order created",
            module="payments",
            severity="info",
            description=f"Order {order['id']} for {amount} {self.currency}",
            actor=user,
            target_id=payment.id,
            target_model="Payment",
            new_data={"status": payment.status, "amount": amount, "gateway_order_id": order["id"]},
            request=request,
        )
        return payment, order
