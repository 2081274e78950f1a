"""
Webhook Reconciler

Maps verified gateway events onto the payment state machine. The gateway is
the source of truth but delivers at-least-once and in any order, so every
handler is idempotent and anything unrecognised is acknowledged and ignored.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...audit import AuditRecorder, get_audit_recorder
from ...models_payment import PaymentStatus
from .gateway import from_minor_units
from .repository import PaymentRepository
from .state_machine import PaymentStateMachine, TransitionOutcome

logger = logging.getLogger(__name__)

PROCESSED = "processed"
IGNORED = "ignored"

CAPTURE_EVENTS = {"payment.captured", "order.paid"}
FAILURE_EVENTS = {"payment.failed"}
REFUND_EVENTS = {"refund.processed"}


@dataclass
class ReconcileResult:
    status: str  # processed | ignored
    event: Optional[str] = None
    payment_id: Optional[int] = None
    outcome: Optional[TransitionOutcome] = None
    reason: Optional[str] = None


def _entity(event: dict, kind: str) -> dict:
    node = event
    for key in ("payload", kind, "entity"):
        node = node.get(key) if isinstance(node, dict) else None
    return node if isinstance(node, dict) else {}


def _ref(value) -> Optional[str]:
    """Gateway ids are strings; anything else is treated as missing"""
    return value if isinstance(value, str) and value else None


def _timestamp(value) -> Optional[datetime]:
    try:
        return datetime.utcfromtimestamp(int(value)) if value else None
    except (TypeError, ValueError, OverflowError):
        return None


class WebhookReconciler:
    """Applies gateway webhook events to local payment records"""

    def __init__(self, db: Session, state_machine: PaymentStateMachine, audit: Optional[AuditRecorder] = None):
        self.db = db
        self.state_machine = state_machine
        self.audit = audit or get_audit_recorder()

    def apply(self, event: dict) -> ReconcileResult:
        event_type = _ref(event.get("event")) if isinstance(event, dict) else None
        logger.info(f"🔄 Reconciling webhook event: {event_type}")

        if event_type in CAPTURE_EVENTS:
            return self._handle_capture(event_type, event)
        if event_type in FAILURE_EVENTS:
            return self._handle_failure(event_type, event)
        if event_type in REFUND_EVENTS:
            return self._handle_refund(event_type, event)

        return self._ignored(event_type, "unhandled event")

    def _ignored(self, event_type: str, reason: str) -> ReconcileResult:
        logger.warning(f"⚠️ Ignoring {event_type}: {reason}")
        return ReconcileResult(IGNORED, event_type, reason=reason)

    # ------------------------------------------------------------------
    # payment.captured / order.paid
    # ------------------------------------------------------------------

    def _handle_capture(self, event_type: str, event: dict) -> ReconcileResult:
        entity = _entity(event, "payment")
        order_id = _ref(entity.get("order_id")) or _ref(_entity(event, "order").get("id"))
        gateway_payment_id = _ref(entity.get("id"))
        if not order_id or not gateway_payment_id:
            return self._ignored(event_type, "missing order or payment reference")

        payment = PaymentRepository.get_by_gateway_order_id(self.db, order_id)
        if not payment:
            return self._ignored(event_type, f"no payment for order {order_id}")

        result = self.state_machine.apply_capture(
            payment,
            gateway_payment_id=gateway_payment_id,
            method=_ref(entity.get("method")),
            captured_at=_timestamp(entity.get("created_at")),
        )
        return ReconcileResult(PROCESSED, event_type, payment.id, result.outcome)

    # ------------------------------------------------------------------
    # payment.failed
    # ------------------------------------------------------------------

    def _handle_failure(self, event_type: str, event: dict) -> ReconcileResult:
        entity = _entity(event, "payment")
        order_id = _ref(entity.get("order_id"))
        if not order_id:
            return self._ignored(event_type, "missing order reference")

        payment = PaymentRepository.get_by_gateway_order_id(self.db, order_id)
        if not payment:
            return self._ignored(event_type, f"no payment for order {order_id}")

        result = self.state_machine.apply_failure(payment, _ref(entity.get("error_description")))
        return ReconcileResult(PROCESSED, event_type, payment.id, result.outcome)

    # ------------------------------------------------------------------
    # refund.processed
    # ------------------------------------------------------------------

    def _handle_refund(self, event_type: str, event: dict) -> ReconcileResult:
        entity = _entity(event, "refund")
        gateway_payment_id = _ref(entity.get("payment_id"))
        refund_id = _ref(entity.get("id"))
        if not gateway_payment_id or not refund_id:
            return self._ignored(event_type, "missing payment or refund reference")

        payment = PaymentRepository.get_by_gateway_payment_id(self.db, gateway_payment_id)
        if not payment:
            return self._ignored(event_type, f"no payment for gateway payment {gateway_payment_id}")

        processed_at = _timestamp(entity.get("created_at")) or datetime.utcnow()

        if payment.status == PaymentStatus.REFUNDED.value:
            return self._confirm_existing_refund(event_type, payment, refund_id, processed_at)

        if payment.status != PaymentStatus.COMPLETED.value:
            return self._ignored(event_type, f"payment {payment.id} is {payment.status}")

        # Refund initiated on the gateway side (dashboard, dispute)
        try:
            amount = from_minor_units(entity["amount"]) if entity.get("amount") is not None else payment.amount
        except (TypeError, ValueError, ArithmeticError):
            return self._ignored(event_type, f"unreadable refund amount {entity.get('amount')!r}")
        if amount <= 0:
            return self._ignored(event_type, f"non-positive refund amount {amount}")
        result = self.state_machine.apply_refund(
            payment,
            refund_amount=amount,
            refund_transaction_id=refund_id,
            refund_reason="Refund processed by payment gateway",
            refunded_at=processed_at,
            refund_type="full" if amount >= payment.amount else "partial",
        )
        if result.outcome == TransitionOutcome.ALREADY_APPLIED:
            # Lost to a local refund that committed between our read and write
            return self._confirm_existing_refund(event_type, result.payment, refund_id, processed_at)
        return ReconcileResult(PROCESSED, event_type, payment.id, result.outcome)

    def _confirm_existing_refund(self, event_type, payment, refund_id: str, processed_at: datetime) -> ReconcileResult:
        if payment.refund_transaction_id == refund_id:
            logger.info(f"ℹ️ Refund {refund_id} already recorded on payment {payment.id}")
            return ReconcileResult(PROCESSED, event_type, payment.id, TransitionOutcome.ALREADY_APPLIED)

        if payment.refund_transaction_id is None:
            PaymentRepository.update_refund_details(
                self.db,
                payment.id,
                None,
                {"refund_transaction_id": refund_id, "refunded_at": payment.refunded_at or processed_at},
            )
            logger.info(f"🔗 Attached refund {refund_id} to payment {payment.id}")
            return ReconcileResult(PROCESSED, event_type, payment.id, TransitionOutcome.ALREADY_APPLIED)

        logger.error(
            f"🚨 Refund anomaly on payment {payment.id}: recorded {payment.refund_transaction_id}, "
            f"gateway reports {refund_id}"
        )
        self.audit.record(
            action="Refund anomaly",
            module="payments",
            severity="critical",
            description=f"Gateway reported refund {refund_id} but {payment.refund_transaction_id} is recorded",
            target_id=payment.id,
            target_model="Payment",
            new_data={"refund_transaction_id": refund_id},
        )
        return ReconcileResult(IGNORED, event_type, payment.id, TransitionOutcome.TERMINAL, reason="refund id mismatch")
