"""
Payment State Machine

pending -> completed -> refunded
pending -> failed

Every transition is one guarded UPDATE (compare-and-set on the expected
source status). Exactly one caller wins a race; everyone else re-reads the
row and gets a classified outcome instead of an error. Side effects
(notification, audit, appointment link) run only for the winner.
"""

import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from fastapi import Request
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...audit import AuditRecorder, get_audit_recorder
from ...models_payment import PAYMENT_METHODS, TERMINAL_STATUSES, Payment, PaymentStatus
from ...notifications import (
    PAYMENT_FAILED,
    PAYMENT_RECEIVED,
    PAYMENT_REFUNDED,
    NotificationDispatcher,
    dispatch_notification,
    get_notification_dispatcher,
)
from .repository import PaymentRepository

logger = logging.getLogger(__name__)

PENDING = PaymentStatus.PENDING.value
COMPLETED = PaymentStatus.COMPLETED.value
FAILED = PaymentStatus.FAILED.value
REFUNDED = PaymentStatus.REFUNDED.value

ALLOWED_TRANSITIONS = {
    PENDING: frozenset({COMPLETED, FAILED}),
    COMPLETED: frozenset({REFUNDED}),
    FAILED: frozenset(),
    REFUNDED: frozenset(),
}

# The only legal source status for each target
_SOURCE_STATUS = {COMPLETED: PENDING, FAILED: PENDING, REFUNDED: COMPLETED}


class TransitionOutcome(str, enum.Enum):
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    TERMINAL = "terminal"
    INVALID = "invalid"
    NOT_FOUND = "not_found"


@dataclass
class TransitionResult:
    outcome: TransitionOutcome
    payment: Optional[Payment]
    previous_status: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        """Applied by this call or by a concurrent one; both count as success"""
        return self.outcome in (TransitionOutcome.APPLIED, TransitionOutcome.ALREADY_APPLIED)


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset())


def normalize_payment_method(method: Optional[str]) -> str:
    method = (method or "").lower()
    return method if method in PAYMENT_METHODS else "other"


class PaymentStateMachine:
    """Drives Payment.status through its lifecycle"""

    def __init__(
        self,
        db: Session,
        audit: Optional[AuditRecorder] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
    ):
        self.db = db
        self.audit = audit or get_audit_recorder()
        self.dispatcher = dispatcher or get_notification_dispatcher()

    can_transition = staticmethod(can_transition)

    # ------------------------------------------------------------------
    # Core compare-and-set
    # ------------------------------------------------------------------

    def transition(self, payment: Payment, target: str, values: dict) -> TransitionResult:
        """Attempt source -> target with `values` applied in the same statement"""
        payment_id = payment.id
        expected = _SOURCE_STATUS[target]
        fields = dict(values, status=target, updated_at=datetime.utcnow())

        try:
            won = PaymentRepository.compare_and_set(self.db, payment_id, expected, fields)
        except IntegrityError as e:
            # e.g. gateway_payment_id already attached to another record
            self.db.rollback()
            logger.error(f"❌ Payment {payment_id} {expected} -> {target} rejected by constraint: {e.orig}")
            current = PaymentRepository.get_by_id(self.db, payment_id)
            return TransitionResult(TransitionOutcome.INVALID, current, current.status if current else None)

        self.db.expire_all()
        current = PaymentRepository.get_by_id(self.db, payment_id)

        if won:
            logger.info(f"✅ Payment {payment_id}: {expected} -> {target}")
            return TransitionResult(TransitionOutcome.APPLIED, current, expected)

        if current is None:
            logger.warning(f"⚠️ Payment {payment_id} disappeared before {target} transition")
            return TransitionResult(TransitionOutcome.NOT_FOUND, None)

        if current.status == target:
            logger.info(f"ℹ️ Payment {payment_id} already {target}; nothing to do")
            outcome = TransitionOutcome.ALREADY_APPLIED
        elif current.status in TERMINAL_STATUSES:
            logger.warning(f"⚠️ Payment {payment_id} is {current.status} (terminal); ignoring -> {target}")
            outcome = TransitionOutcome.TERMINAL
        else:
            logger.warning(f"⚠️ Payment {payment_id} cannot move {current.status} -> {target}")
            outcome = TransitionOutcome.INVALID
        return TransitionResult(outcome, current, current.status)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def apply_client_confirmation(
        self,
        payment: Payment,
        gateway_payment_id: str,
        signature: str,
        actor: Any = None,
        request: Optional[Request] = None,
    ) -> TransitionResult:
        """pending -> completed from a client confirmation whose signature was already verified"""
        now = datetime.utcnow()
        result = self.transition(
            payment,
            COMPLETED,
            {
                "gateway_payment_id": gateway_payment_id,
                "gateway_signature": signature,
                "transaction_id": gateway_payment_id,
                "paid_at": now,
            },
        )
        if result.outcome == TransitionOutcome.APPLIED:
            self._on_completed(result.payment, "client confirmation", actor, request)
        return result

    def apply_capture(
        self,
        payment: Payment,
        gateway_payment_id: str,
        method: Optional[str] = None,
        captured_at: Optional[datetime] = None,
    ) -> TransitionResult:
        """pending -> completed from a gateway capture event"""
        result = self.transition(
            payment,
            COMPLETED,
            {
                "gateway_payment_id": gateway_payment_id,
                "transaction_id": gateway_payment_id,
                "payment_method": normalize_payment_method(method),
                "paid_at": captured_at or datetime.utcnow(),
            },
        )
        if result.outcome == TransitionOutcome.APPLIED:
            self._on_completed(result.payment, "gateway webhook")
        return result

    def apply_failure(self, payment: Payment, reason: Optional[str] = None) -> TransitionResult:
        """pending -> failed; only the gateway reports failures"""
        reason = reason or "Payment failed"
        result = self.transition(payment, FAILED, {"failure_reason": reason})
        if result.outcome == TransitionOutcome.APPLIED:
            failed = result.payment
            dispatch_notification(self.dispatcher, PAYMENT_FAILED, failed)
            self.audit.record(
                action="Payment failed",
                module="payments",
                severity="warning",
                description=f"Payment {failed.id} failed: {reason}",
                target_id=failed.id,
                target_model="Payment",
                previous_data={"status": PENDING},
                new_data={"status": FAILED, "failure_reason": reason},
            )
        return result

    def apply_refund(
        self,
        payment: Payment,
        refund_amount,
        refund_transaction_id: Optional[str],
        refund_reason: Optional[str] = None,
        refunded_at: Optional[datetime] = None,
        refunded_by: Optional[int] = None,
        refund_type: Optional[str] = None,
        actor: Any = None,
        request: Optional[Request] = None,
    ) -> TransitionResult:
        """completed -> refunded with the whole refund sub-record"""
        values = {
            "refund_amount": refund_amount,
            "refund_reason": refund_reason,
            "refund_transaction_id": refund_transaction_id,
            "refunded_at": refunded_at or datetime.utcnow(),
            "refunded_by": refunded_by,
            "refund_type": refund_type,
        }
        result = self.transition(payment, REFUNDED, values)
        if result.outcome == TransitionOutcome.APPLIED:
            refunded = result.payment
            dispatch_notification(self.dispatcher, PAYMENT_REFUNDED, refunded)
            self.audit.record(
                action="Payment refunded",
                module="payments",
                severity="warning",
                description=(
                    f"Refunded {refund_amount} {refunded.currency} ({refund_type or 'full'}) "
                    f"on payment {refunded.id}"
                ),
                actor=actor,
                target_id=refunded.id,
                target_model="Payment",
                previous_data={"status": COMPLETED},
                new_data={"status": REFUNDED, **values},
                request=request,
            )
        return result

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------

    def _on_completed(self, payment: Payment, source: str, actor: Any = None, request: Optional[Request] = None):
        try:
            PaymentRepository.link_appointment(self.db, payment.appointment_id, payment.id)
        except Exception as e:
            self.db.rollback()
            logger.error(f"❌ Failed to link appointment {payment.appointment_id} to payment {payment.id}: {e}")

        dispatch_notification(self.dispatcher, PAYMENT_RECEIVED, payment)
        self.audit.record(
            action="Payment completed",
            module="payments",
            severity="info",
            description=f"Payment {payment.id} completed via {source}",
            actor=actor,
            target_id=payment.id,
            target_model="Payment",
            previous_data={"status": PENDING},
            new_data={
                "status": COMPLETED,
                "amount": payment.amount,
                "gateway_payment_id": payment.gateway_payment_id,
            },
            request=request,
        )
