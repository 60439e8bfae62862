"""External integrations for payment processing."""
from .base import (
    CheckoutSession,
    DisbursementChannel,
    ExternalCheckoutRequest,
    LineItem,
    NotificationEvent,
    PaymentGateway,
    DisbursementResult,
)
from .stripe_client import CircuitBreaker, StripeClient

__all__ = [
    "CheckoutSession",
    "CircuitBreaker",
    "DisbursementChannel",
    "ExternalCheckoutRequest",
    "LineItem",
    "NotificationEvent",
    "PaymentGateway",
    "StripeClient",
    "DisbursementResult",
]
