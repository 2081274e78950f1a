"""Payment router - FastAPI endpoints for appointment payments"""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from ... import config
from ...audit import AuditRecorder, get_audit_recorder
from ...auth import get_current_user, require_admin, require_patient
from ...database import get_db
from ...models import User
from ...notifications import NotificationDispatcher, get_notification_dispatcher
from ...security_utils import log_security_event
from ...webhook_security import verify_razorpay_webhook
from .gateway import RazorpayService, get_gateway
from .order_service import OrderService
from .reconciler import IGNORED, WebhookReconciler
from .refund_service import RefundProcessor
from .schemas import CreateOrderRequest, RefundRequest, VerifyPaymentRequest
from .service import PaymentService, serialize_payment
from .state_machine import PaymentStateMachine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["Payments"])


def get_state_machine(
    db: Session = Depends(get_db),
    audit: AuditRecorder = Depends(get_audit_recorder),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> PaymentStateMachine:
    """Dependency injection for PaymentStateMachine"""
    return PaymentStateMachine(db, audit, dispatcher)


def get_payment_service(
    db: Session = Depends(get_db),
    state_machine: PaymentStateMachine = Depends(get_state_machine),
    audit: AuditRecorder = Depends(get_audit_recorder),
) -> PaymentService:
    """Dependency injection for PaymentService"""
    return PaymentService(db, state_machine, audit, key_secret=config.RAZORPAY_KEY_SECRET)


def get_order_service(
    db: Session = Depends(get_db),
    gateway: RazorpayService = Depends(get_gateway),
    audit: AuditRecorder = Depends(get_audit_recorder),
) -> OrderService:
    """Dependency injection for OrderService"""
    return OrderService(db, gateway, audit)


def get_refund_processor(
    db: Session = Depends(get_db),
    gateway: RazorpayService = Depends(get_gateway),
    state_machine: PaymentStateMachine = Depends(get_state_machine),
    audit: AuditRecorder = Depends(get_audit_recorder),
) -> RefundProcessor:
    """Dependency injection for RefundProcessor"""
    return RefundProcessor(db, gateway, state_machine, audit)


def get_reconciler(
    db: Session = Depends(get_db),
    state_machine: PaymentStateMachine = Depends(get_state_machine),
    audit: AuditRecorder = Depends(get_audit_recorder),
) -> WebhookReconciler:
    """Dependency injection for WebhookReconciler"""
    return WebhookReconciler(db, state_machine, audit)


# ============================================================================
# PATIENT ENDPOINTS
# ============================================================================


@router.post("/create-order")
async def create_order(
    data: CreateOrderRequest,
    request: Request,
    current_user: User = Depends(require_patient),
    service: OrderService = Depends(get_order_service),
):
    """Create a gateway order for an appointment's consultation fee"""
    payment, order = await service.create_order(data.appointmentId, current_user, request)
    return {
        "success": True,
        "order": {
            "id": order["id"],
            "amount": order.get("amount"),
            "currency": order.get("currency", payment.currency),
            "receipt": order.get("receipt"),
        },
        "paymentId": payment.id,
        "key": config.RAZORPAY_KEY_ID,
    }


@router.post("/verify")
async def verify_payment(
    data: VerifyPaymentRequest,
    request: Request,
    current_user: User = Depends(require_patient),
    service: PaymentService = Depends(get_payment_service),
):
    """Client-side payment confirmation after checkout"""
    payment = service.confirm_payment(data, current_user, request)
    return {
        "success": True,
        "message": "Payment verified successfully",
        "payment": serialize_payment(payment),
    }


# ============================================================================
# GATEWAY WEBHOOK
# ============================================================================


@router.post("/webhook")
async def razorpay_webhook(
    request: Request,
    reconciler: WebhookReconciler = Depends(get_reconciler),
    audit: AuditRecorder = Depends(get_audit_recorder),
):
    """
    Razorpay webhook endpoint. The signature covers the raw body, so it is
    verified before any JSON parsing. Verified events always get a 200, even
    when nothing matched, so the gateway stops redelivering.
    """
    try:
        _, raw_body = await verify_razorpay_webhook(
            request,
            config.RAZORPAY_WEBHOOK_SECRET,
            allow_unverified=config.RAZORPAY_ALLOW_UNVERIFIED_WEBHOOKS,
        )
    except HTTPException as e:
        if e.status_code == 401:
            log_security_event(
                "webhook_rejected",
                ip_address=request.client.host if request.client else None,
                details={"reason": e.detail},
            )
            audit.record(
                action="Webhook signature rejected",
                module="payments",
                severity="warning",
                description=f"Razorpay webhook rejected: {e.detail}",
                request=request,
            )
        raise

    try:
        event = json.loads(raw_body)
    except ValueError as e:
        logger.warning(f"⚠️ Webhook body is not valid JSON: {e}")
        return {"success": True, "status": IGNORED}

    if not isinstance(event, dict):
        logger.warning("⚠️ Webhook body is not a JSON object")
        return {"success": True, "status": IGNORED}

    result = reconciler.apply(event)
    return {"success": True, "status": result.status, "event": result.event}


# ============================================================================
# DETAILS AND REFUNDS
# ============================================================================


@router.get("/{payment_id}")
async def get_payment(
    payment_id: int,
    current_user: User = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    """Payment details for its patient or an admin"""
    return {"success": True, "payment": service.get_payment_details(payment_id, current_user)}


@router.post("/{payment_id}/refund")
async def refund_payment(
    payment_id: int,
    data: RefundRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    processor: RefundProcessor = Depends(get_refund_processor),
):
    """Refund a completed payment (admin only)"""
    payment = await processor.refund(payment_id, data.amount, data.reason, current_user, request)
    return {
        "success": True,
        "message": "Refund processed successfully",
        "payment": serialize_payment(payment),
    }
