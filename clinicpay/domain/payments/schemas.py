"""Payment domain schemas - Pydantic models for validation"""

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, field_validator


class CreateOrderRequest(BaseModel):
    appointmentId: int

    @field_validator("appointmentId")
    @classmethod
    def validate_appointment_id(cls, v):
        if v <= 0:
            raise ValueError("appointmentId must be positive")
        return v


class VerifyPaymentRequest(BaseModel):
    """Fields handed to the client by the gateway checkout"""

    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str

    @field_validator("razorpay_order_id", "razorpay_payment_id", "razorpay_signature")
    @classmethod
    def not_blank(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Missing payment verification fields")
        return v


class RefundRequest(BaseModel):
    """Omitting amount refunds the full payment"""

    amount: Optional[Decimal] = None
    reason: Optional[str] = None

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v):
        if v is not None and (not v.is_finite() or v <= 0):
            raise ValueError("Refund amount must be positive")
        return v

    @field_validator("reason")
    @classmethod
    def trim_reason(cls, v):
        if v is not None:
            v = v.strip()[:500]
        return v or None
