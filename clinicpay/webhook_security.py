"""
Payment Signature Verification

Two independent HMAC-SHA256 contracts:
- Client confirmation: signature over "order_id|payment_id" keyed by the
  gateway key secret, computed by the gateway checkout and relayed by the client
- Webhook: signature over the exact raw request body keyed by the separate
  webhook secret, sent in the X-Razorpay-Signature header

All comparisons are constant-time over the full computed value.
"""

import hashlib
import hmac
import logging

from fastapi import HTTPException, Request

from .security_utils import constant_time_compare, mask_sensitive_data

logger = logging.getLogger(__name__)

WEBHOOK_SIGNATURE_HEADER = "X-Razorpay-Signature"


class WebhookSignatureError(Exception):
    """Raised when webhook signature verification fails"""

    pass


def compute_hmac_sha256(secret: str, payload: bytes) -> str:
    """Compute HMAC-SHA256 signature of payload"""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def create_client_signature(order_id: str, payment_id: str, secret: str) -> str:
    """Signature the gateway checkout hands back to the client after payment"""
    return compute_hmac_sha256(secret, f"{order_id}|{payment_id}".encode("utf-8"))


def verify_client_signature(order_id: str, payment_id: str, signature: str, secret: str) -> bool:
    """
    Verify a client-submitted payment confirmation.

    Returns False on any mismatch or missing input; callers report a generic
    "invalid signature" without saying which part failed.
    """
    if not secret:
        logger.error("❌ RAZORPAY_KEY_SECRET not configured; cannot verify payment signatures")
        return False
    if not order_id or not payment_id or not signature:
        return False

    expected_signature = create_client_signature(order_id, payment_id, secret)
    if constant_time_compare(expected_signature, signature):
        return True

    logger.warning(
        f"🚫 Payment signature mismatch for order {order_id} "
        f"(received {mask_sensitive_data(signature)})"
    )
    return False


def create_webhook_signature(secret: str, payload: bytes) -> str:
    """Create a webhook signature for testing or replay tooling"""
    return compute_hmac_sha256(secret, payload)


async def verify_razorpay_webhook(
    request: Request,
    secret: str | None,
    allow_unverified: bool = False,
    raise_on_failure: bool = True,
) -> tuple[bool, bytes]:
    """
    Verify a Razorpay webhook signature over the raw request body.

    Args:
        request: FastAPI request object
        secret: Webhook secret from the Razorpay dashboard
        allow_unverified: Accept webhooks without verification when no secret
            is configured (explicit operational mode, logged on every event)
        raise_on_failure: If True, raises HTTPException on failure

    Returns:
        Tuple of (is_valid, raw_body)
    """
    # Get raw body BEFORE any parsing - the signature covers these exact bytes
    raw_body = await request.body()
    signature = request.headers.get(WEBHOOK_SIGNATURE_HEADER, "")

    logger.info(f"📥 Razorpay webhook received ({len(raw_body)} bytes)")

    if not secret:
        if allow_unverified:
            logger.warning(
                "⚠️ RAZORPAY_WEBHOOK_SECRET not configured - accepting UNVERIFIED webhook "
                "(RAZORPAY_ALLOW_UNVERIFIED_WEBHOOKS=true)"
            )
            return True, raw_body

        logger.error("❌ RAZORPAY_WEBHOOK_SECRET not configured; rejecting webhook")
        if raise_on_failure:
            raise HTTPException(status_code=503, detail="Webhook verification not configured")
        return False, raw_body

    if not signature:
        logger.error(f"❌ Missing {WEBHOOK_SIGNATURE_HEADER} header")
        if raise_on_failure:
            raise HTTPException(status_code=401, detail="Missing webhook signature")
        return False, raw_body

    expected_signature = compute_hmac_sha256(secret, raw_body)
    if constant_time_compare(expected_signature, signature):
        logger.info("✅ Razorpay webhook signature verified")
        return True, raw_body

    logger.warning(
        f"🚫 Razorpay webhook signature mismatch (received {mask_sensitive_data(signature)})"
    )
    if raise_on_failure:
        raise HTTPException(status_code=401, detail="Invalid webhook signature")
    return False, raw_body
