"""Razorpay service - Integration with the Razorpay Orders and Refunds API"""

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

import httpx

from ...config import GATEWAY_TIMEOUT_SECONDS, RAZORPAY_BASE_URL, RAZORPAY_KEY_ID, RAZORPAY_KEY_SECRET

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    """Gateway call failed (network, timeout or remote rejection). Safe to retry."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def to_minor_units(amount: Decimal) -> int:
    """Rupees -> paise using fixed-point arithmetic"""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> Decimal:
    """Paise -> rupees"""
    return (Decimal(int(amount)) / 100).quantize(Decimal("0.01"))


class RazorpayService:
    """Service for Razorpay API operations"""

    def __init__(
        self,
        key_id: Optional[str] = RAZORPAY_KEY_ID,
        key_secret: Optional[str] = RAZORPAY_KEY_SECRET,
        base_url: str = RAZORPAY_BASE_URL,
        timeout: float = GATEWAY_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.key_id = key_id
        self.key_secret = key_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

        if not self.key_id or not self.key_secret:
            logger.warning(
                "RAZORPAY_KEY_ID / RAZORPAY_KEY_SECRET not set; payment endpoints will fail until configured"
            )

    def is_available(self) -> bool:
        """Check if Razorpay credentials are configured"""
        return bool(self.key_id and self.key_secret)

    async def _request(self, method: str, path: str, payload: dict) -> dict:
        if not self.is_available():
            raise GatewayError("Payment gateway not configured")

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                auth=(self.key_id, self.key_secret),
                timeout=httpx.Timeout(self.timeout),
                transport=self.transport,
            ) as client:
                response = await client.request(method, path, json=payload)
        except httpx.TimeoutException as e:
            logger.error(f"⏱️ Razorpay {method} {path} timed out after {self.timeout}s")
            raise GatewayError("Payment gateway timed out") from e
        except httpx.HTTPError as e:
            logger.error(f"❌ Razorpay {method} {path} failed: {e}")
            raise GatewayError("Payment gateway unreachable") from e

        if response.status_code >= 400:
            try:
                description = response.json().get("error", {}).get("description")
            except ValueError:
                description = None
            message = description or f"Gateway returned HTTP {response.status_code}"
            logger.error(f"❌ Razorpay {method} {path} rejected: HTTP {response.status_code} - {message}")
            raise GatewayError(message, status_code=response.status_code)

        try:
            return response.json()
        except ValueError as e:
            raise GatewayError("Payment gateway returned an invalid response") from e

    async def create_order(
        self,
        amount: Decimal,
        currency: str,
        receipt: str,
        notes: Optional[dict] = None,
    ) -> dict:
        """Create a remote order for the given amount (in major units)"""
        order = await self._request(
            "POST",
            "/orders",
            {
                "amount": to_minor_units(amount),
                "currency": currency,
                "receipt": receipt,
                "notes": notes or {},
            },
        )
        if not order.get("id"):
            raise GatewayError("Payment gateway returned an order without an id")
        logger.info(f"✅ Created Razorpay order {order['id']} for {amount} {currency}")
        return order

    async def refund_payment(
        self,
        gateway_payment_id: str,
        amount: Decimal,
        notes: Optional[dict] = None,
    ) -> dict:
        """Refund a captured payment (full or partial)"""
        refund = await self._request(
            "POST",
            f"/payments/{gateway_payment_id}/refund",
            {"amount": to_minor_units(amount), "notes": notes or {}},
        )
        if not refund.get("id"):
            raise GatewayError("Payment gateway returned a refund without an id")
        logger.info(f"✅ Razorpay refund {refund['id']} issued for payment {gateway_payment_id}")
        return refund


# Singleton instance
razorpay_service = RazorpayService()


def get_gateway() -> RazorpayService:
    """Dependency injection for the payment gateway"""
    return razorpay_service
