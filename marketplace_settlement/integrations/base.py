"""
Interfaces to the external payment processor.

The settlement core talks to the processor only through these two
protocols. StripeClient implements both; tests inject fakes.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol, Tuple


@dataclass(frozen=True)
class LineItem:
    title: str
    unit_amount: int
    currency: str
    quantity: int = 1
    description: Optional[str] = None
    image_url: Optional[str] = None


@dataclass(frozen=True)
class ExternalCheckoutRequest:
    """
    Processor-neutral checkout session request.

    Destination charge: the buyer pays unit_amount, the processor routes the
    payment to destination_account and withholds application_fee_amount for
    the platform.
    """

    line_items: Tuple[LineItem, ...]
    destination_account: str
    application_fee_amount: int
    currency: str
    success_url: str
    cancel_url: str
    metadata: Dict[str, str] = field(default_factory=dict)
    customer_email: Optional[str] = None


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: Optional[str]
    payment_intent_id: Optional[str] = None


@dataclass(frozen=True)
class NotificationEvent:
    """Verified processor notification."""

    id: str
    type: str
    data_object: Dict[str, Any]
    payload: Dict[str, Any]


@dataclass(frozen=True)
class DisbursementResult:
    id: str
    amount: int
    destination: str


class PaymentGateway(Protocol):
    async def create_checkout_session(
        self, request: ExternalCheckoutRequest, idempotency_key: str
    ) -> CheckoutSession:
        """
        Create a hosted checkout session.

        Raises:
            PaymentGatewayError: On processor failure or timeout
        """
        ...

    def verify_and_parse_notification(self, payload: bytes, signature: str) -> NotificationEvent:
        """
        Verify a notification signature and parse its body.

        Raises:
            InvalidSignature: If the signature does not verify
            MalformedNotification: If a verified body cannot be parsed
        """
        ...


class DisbursementChannel(Protocol):
    async def create_payout(
        self,
        amount: int,
        currency: str,
        destination: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> DisbursementResult:
        """
        Pay out from the seller's connected account to their bank account.

        ``destination`` is the connected account; the sale proceeds already
        sit in its balance because checkout uses destination charges.

        Raises:
            DisbursementError: If the instruction did not succeed. Only
                PERMANENT errors mean the payout definitely did not happen.
        """
        ...
