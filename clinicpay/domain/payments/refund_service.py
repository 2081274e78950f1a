"""Refund service - Issues gateway refunds for completed payments"""

import logging
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

from fastapi import HTTPException, Request
from sqlalchemy.orm import Session

from ...audit import AuditRecorder, get_audit_recorder
from ...models import User
from ...models_payment import Payment, PaymentStatus
from .gateway import GatewayError, RazorpayService
from .repository import PaymentRepository
from .state_machine import PaymentStateMachine, TransitionOutcome

logger = logging.getLogger(__name__)

DEFAULT_REFUND_REASON = "Appointment cancellation"


class RefundProcessor:
    """Admin-initiated refunds (completed -> refunded)"""

    def __init__(
        self,
        db: Session,
        gateway: RazorpayService,
        state_machine: PaymentStateMachine,
        audit: Optional[AuditRecorder] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.state_machine = state_machine
        self.audit = audit or get_audit_recorder()

    @staticmethod
    def _resolve_amount(payment: Payment, amount) -> Decimal:
        if amount is None:
            return Decimal(payment.amount)
        try:
            value = Decimal(str(amount))
        except (InvalidOperation, ValueError):
            raise HTTPException(status_code=400, detail="Invalid refund amount") from None
        if not value.is_finite():
            raise HTTPException(status_code=400, detail="Invalid refund amount")
        # Bounds apply to the amount actually sent, in whole paise
        value = value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        if value <= 0 or value > Decimal(payment.amount):
            raise HTTPException(status_code=400, detail="Invalid refund amount")
        return value

    async def refund(
        self,
        payment_id: int,
        amount=None,
        reason: Optional[str] = None,
        actor: Optional[User] = None,
        request: Optional[Request] = None,
    ) -> Payment:
        payment = PaymentRepository.get_by_id(self.db, payment_id)
        if not payment:
            raise HTTPException(status_code=404, detail="Payment not found")

        # Both checks happen before the gateway is contacted
        if payment.status != PaymentStatus.COMPLETED.value or not payment.gateway_payment_id:
            logger.warning(f"⚠️ Refund refused for payment {payment_id} in status {payment.status}")
            raise HTTPException(status_code=400, detail="Payment is not refundable")
        refund_amount = self._resolve_amount(payment, amount)
        refund_type = "full" if refund_amount == Decimal(payment.amount) else "partial"
        reason = reason or DEFAULT_REFUND_REASON

        try:
            remote = await self.gateway.refund_payment(
                payment.gateway_payment_id,
                refund_amount,
                notes={"reason": reason, "paymentId": str(payment.id)},
            )
        except GatewayError as e:
            logger.error(f"❌ Refund failed at gateway for payment {payment_id}: {e.message}")
            raise HTTPException(status_code=502, detail=f"Refund failed: {e.message}") from e

        refund_id = remote["id"]
        result = self.state_machine.apply_refund(
            payment,
            refund_amount=refund_amount,
            refund_transaction_id=refund_id,
            refund_reason=reason,
            refunded_at=datetime.utcnow(),
            refunded_by=actor.id if actor else None,
            refund_type=refund_type,
            actor=actor,
            request=request,
        )

        if result.outcome == TransitionOutcome.APPLIED:
            logger.info(f"💸 Refund {refund_id} of {refund_amount} recorded for payment {payment_id}")
            return result.payment

        current = result.payment
        if (
            result.outcome == TransitionOutcome.ALREADY_APPLIED
            and current is not None
            and current.refund_transaction_id == refund_id
        ):
            # The refund.processed webhook for this refund landed first
            PaymentRepository.update_refund_details(
                self.db,
                payment_id,
                refund_id,
                {
                    "refund_reason": reason,
                    "refunded_by": actor.id if actor else None,
                    "refund_type": refund_type,
                },
            )
            self.db.expire_all()
            logger.info(f"ℹ️ Refund {refund_id} was already applied by webhook; filled in actor details")
            return PaymentRepository.get_by_id(self.db, payment_id)

        logger.critical(
            f"🚨 Reconciliation gap: gateway refund {refund_id} succeeded but payment {payment_id} "
            f"could not transition ({result.outcome.value}, status={current.status if current else None})"
        )
        self.audit.record(
            action="Reconciliation gap",
            module="payments",
            severity="critical",
            description=f"Gateway refund {refund_id} succeeded but local refund transition was {result.outcome.value}",
            actor=actor,
            target_id=payment_id,
            target_model="Payment",
            new_data={"refund_transaction_id": refund_id, "refund_amount": refund_amount},
            request=request,
        )
        raise HTTPException(status_code=409, detail="Refund issued but payment state changed concurrently")
