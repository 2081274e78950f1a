"""
Security Utilities
Masking and redaction helpers shared by logging and the audit trail
"""

import logging
import secrets
from datetime import datetime
from typing import Any, Optional

logger = logging.getLogger(__name__)

# Keys whose values never reach logs or audit snapshots
SENSITIVE_FIELDS = frozenset(
    {
        "password",
        "confirmPassword",
        "newPassword",
        "currentPassword",
        "token",
        "refreshToken",
        "creditCard",
        "cvv",
        "accountNumber",
        "ifscCode",
        "razorpay_signature",
        "razorpay_payment_id",
        "gateway_signature",
        "phone",
    }
)

REDACTED = "[REDACTED]"


def sanitize_log_data(data: Any) -> Any:
    """
    Strip sensitive fields from data before it is logged or audited.
    Nested dicts and lists are walked; the input is never modified.
    """
    if isinstance(data, dict):
        return {
            key: REDACTED if key in SENSITIVE_FIELDS and value else sanitize_log_data(value)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [sanitize_log_data(item) for item in data]
    return data


def mask_sensitive_data(data: Optional[str], visible_chars: int = 4) -> str:
    """
    Mask sensitive data for logging/display

    Args:
        data: Sensitive data to mask
        visible_chars: Number of characters to show at the end

    Returns:
        Masked string
    """
    if not data:
        return ""
    if len(data) <= visible_chars:
        return "*" * len(data)

    return "*" * (len(data) - visible_chars) + data[-visible_chars:]


def constant_time_compare(a: Optional[str], b: Optional[str]) -> bool:
    """
    Compare two strings in constant time to prevent timing attacks

    Returns:
        True if strings are equal, False otherwise (including when either is empty)
    """
    if not a or not b:
        return False
    return secrets.compare_digest(a.encode(), b.encode())


def log_security_event(
    event_type: str,
    user_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
):
    """
    Log security-related events to the application logger

    Args:
        event_type: Type of security event (webhook_rejected, signature_mismatch, etc.)
        user_id: User identifier
        ip_address: Client IP address
        details: Additional event details (sanitized before logging)
    """
    log_entry = {
        "timestamp": datetime.utcnow().isoformat(),
        "event_type": event_type,
        "user_id": user_id,
        "ip_address": ip_address,
        "details": sanitize_log_data(details or {}),
    }
    logger.info(f"SECURITY_EVENT: {log_entry}")
