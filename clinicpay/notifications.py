"""
Payment Notification Dispatch
Informed of terminal payment state changes. Rendering and delivery (email,
push, SMS) live outside this service; the default dispatcher only logs.
"""

import logging

logger = logging.getLogger(__name__)

PAYMENT_RECEIVED = "payment_received"
PAYMENT_FAILED = "payment_failed"
PAYMENT_REFUNDED = "payment_refunded"


class NotificationDispatcher:
    """Default dispatcher - logs the event for downstream delivery"""

    def send(self, notification_type: str, payment) -> None:
        logger.info(
            f"🔔 {notification_type} for payment {payment.id} "
            f"(patient={payment.patient_id}, amount={payment.amount} {payment.currency})"
        )


def dispatch_notification(dispatcher: NotificationDispatcher, notification_type: str, payment) -> bool:
    """
    Hand a payment event to the dispatcher. Delivery problems are logged and
    never propagate into the payment flow.
    """
    try:
        dispatcher.send(notification_type, payment)
        return True
    except Exception as e:
        logger.error(f"❌ Failed to dispatch {notification_type} for payment {payment.id}: {e}")
        return False


notification_dispatcher = NotificationDispatcher()


def get_notification_dispatcher() -> NotificationDispatcher:
    """Dependency injection for the NotificationDispatcher"""
    return notification_dispatcher
