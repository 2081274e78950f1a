"""
Payment Models for Appointment Fees
"""

import enum
import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base
from .field_cipher import EncryptedString


def generate_public_id():
    """Generate a unique public ID for secure public access"""
    return str(uuid.uuid4())


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


TERMINAL_STATUSES = frozenset({PaymentStatus.FAILED.value, PaymentStatus.REFUNDED.value})

PAYMENT_METHODS = {"card", "upi", "netbanking", "wallet", "emi", "cash", "other"}


class Payment(Base):
    """One record per appointment payment attempt"""

    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    public_id = Column(String(36), unique=True, nullable=False, index=True, default=generate_public_id)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=False, index=True)
    patient_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    doctor_id = Column(Integer, ForeignKey("doctors.id"), nullable=False, index=True)

    # Money is fixed-point; never use Float here
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(10), default="INR", nullable=False)
    payment_method = Column(String(20), default="other")  # card, upi, netbanking, wallet, emi, cash, other
    payment_gateway = Column(String(20), default="razorpay")

    # Gateway references
    gateway_order_id = Column(String(64), unique=True, nullable=False, index=True)  # Set once at creation
    gateway_payment_id = Column(String(64), unique=True, nullable=True, index=True)  # Set on capture
    gateway_signature = Column(EncryptedString(255), nullable=True)
    transaction_id = Column(String(64), nullable=True, index=True)

    # Status
    status = Column(String(20), default=PaymentStatus.PENDING.value, nullable=False, index=True)
    paid_at = Column(DateTime, nullable=True)
    failure_reason = Column(Text, nullable=True)

    # Commission breakdown
    consultation_fee = Column(Numeric(12, 2), nullable=True)
    platform_commission = Column(Numeric(12, 2), default=0)
    commission_percentage = Column(Numeric(5, 2), default=0)
    online_payment_fee = Column(Numeric(12, 2), default=0)  # Gateway processing fee
    doctor_earning = Column(Numeric(12, 2), default=0)

    # Refund (populated only on completed -> refunded)
    refund_amount = Column(Numeric(12, 2), nullable=True)
    refund_reason = Column(Text, nullable=True)
    refund_transaction_id = Column(String(64), nullable=True, index=True)
    refunded_at = Column(DateTime, nullable=True)
    refunded_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    refund_type = Column(String(10), nullable=True)  # full, partial

    created_at = Column(DateTime, server_default=func.now(), index=True)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    # Relationships
    appointment = relationship("Appointment", foreign_keys=[appointment_id])
    patient = relationship("User", foreign_keys=[patient_id])
    doctor = relationship("Doctor", foreign_keys=[doctor_id])

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
