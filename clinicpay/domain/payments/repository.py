"""Payment repository - Database operations for payments"""

from typing import Optional

from sqlalchemy.orm import Session

from ...models import Appointment
from ...models_payment import Payment, PaymentStatus


class PaymentRepository:
    """Repository for payment database operations"""

    @staticmethod
    def get_by_id(db: Session, payment_id: int) -> Optional[Payment]:
        """Get payment by ID"""
        return db.query(Payment).filter(Payment.id == payment_id).first()

    @staticmethod
    def get_by_gateway_order_id(db: Session, gateway_order_id: str) -> Optional[Payment]:
        """Get payment by the gateway order reference"""
        return db.query(Payment).filter(Payment.gateway_order_id == gateway_order_id).first()

    @staticmethod
    def get_by_gateway_payment_id(db: Session, gateway_payment_id: str) -> Optional[Payment]:
        """Get payment by the gateway payment reference"""
        return db.query(Payment).filter(Payment.gateway_payment_id == gateway_payment_id).first()

    @staticmethod
    def get_appointment(db: Session, appointment_id: int) -> Optional[Appointment]:
        return db.query(Appointment).filter(Appointment.id == appointment_id).first()

    @staticmethod
    def get_completed_for_appointment(db: Session, appointment_id: int) -> Optional[Payment]:
        return (
            db.query(Payment)
            .filter(
                Payment.appointment_id == appointment_id,
                Payment.status.in_([PaymentStatus.COMPLETED.value, PaymentStatus.REFUNDED.value]),
            )
            .first()
        )

    @staticmethod
    def create(db: Session, **fields) -> Payment:
        """Insert a new pending payment record"""
        payment = Payment(status=PaymentStatus.PENDING.value, **fields)
        db.add(payment)
        db.commit()
        db.refresh(payment)
        return payment

    @staticmethod
    def compare_and_set(
        db: Session,
        payment_id: int,
        expected_status: str,
        values: dict,
    ) -> bool:
        """
        Apply `values` only if the row is still in `expected_status`.

        Single UPDATE ... WHERE id = :id AND status = :expected. Returns True
        when this caller won (exactly one row changed).
        """
        rowcount = (
            db.query(Payment)
            .filter(Payment.id == payment_id, Payment.status == expected_status)
            .update(values, synchronize_session=False)
        )
        db.commit()
        return rowcount == 1

    @staticmethod
    def update_refund_details(
        db: Session,
        payment_id: int,
        refund_transaction_id: Optional[str],
        values: dict,
    ) -> bool:
        """
        Fill refund sub-record fields on an already refunded row, guarded on
        the refund reference it currently carries (None = not yet attached).
        """
        query = db.query(Payment).filter(
            Payment.id == payment_id,
            Payment.status == PaymentStatus.REFUNDED.value,
        )
        if refund_transaction_id is None:
            query = query.filter(Payment.refund_transaction_id.is_(None))
        else:
            query = query.filter(Payment.refund_transaction_id == refund_transaction_id)
        rowcount = query.update(values, synchronize_session=False)
        db.commit()
        return rowcount == 1

    @staticmethod
    def link_appointment(db: Session, appointment_id: int, payment_id: int) -> None:
        """Point the appointment at its completed payment"""
        db.query(Appointment).filter(Appointment.id == appointment_id).update(
            {"payment_id": payment_id}, synchronize_session=False
        )
        db.commit()
