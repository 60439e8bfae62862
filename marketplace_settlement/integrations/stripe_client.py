"""
Stripe adapter for checkout sessions, webhooks and connected-account payouts.

Implements:
- Exponential backoff for transient errors (tenacity)
- Circuit breaker pattern
- Bounded timeout on every API call
- Idempotency keys on every mutating call
- Webhook signature verification

The API key is passed per request; the module-level ``stripe.api_key`` is
never set.
"""
import asyncio
import json
import time
from typing import Any, Callable, Dict, Optional, TypeVar

import stripe
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ..config import Settings
from ..core.errors import (
    DisbursementError,
    GatewayErrorType,
    InvalidSignature,
    MalformedNotification,
    PaymentGatewayError,
)
from ..monitoring.metrics import metrics
from .base import CheckoutSession, ExternalCheckoutRequest, NotificationEvent, DisbursementResult

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CircuitBreaker:
    """
    Circuit breaker for Stripe API calls.

    Prevents cascading failures by temporarily stopping requests
    when error rate exceeds threshold.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def before_call(self, error_class: type = PaymentGatewayError) -> None:
        """
        Raises:
            error_class: If circuit is open (transient, nothing was sent)
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise error_class(
                    "Circuit breaker is open",
                    error_type=GatewayErrorType.TRANSIENT,
                    circuit_open=True,
                )

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, PaymentGatewayError) and error.is_retryable


class StripeClient:
    """
    Stripe implementation of PaymentGateway and DisbursementChannel.

    Constructed once at process start and injected where needed.
    """

    def __init__(
        self,
        settings: Settings,
        circuit_breaker: Optional[CircuitBreaker] = None,
        retry_wait_min: float = 1.0,
        retry_wait_max: float = 16.0,
    ) -> None:
        self.settings = settings
        self.api_key = settings.stripe_secret_key
        self.api_version = settings.stripe_api_version
        self.webhook_secret = settings.stripe_webhook_secret
        self.webhook_tolerance = settings.stripe_webhook_tolerance_seconds
        self.timeout = settings.stripe_request_timeout_seconds
        self.max_attempts = settings.stripe_retry_max_attempts
        self.retry_wait_min = retry_wait_min
        self.retry_wait_max = retry_wait_max
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

        logger.info(
            "stripe_client_initialized",
            api_version=self.api_version,
            test_mode=settings.is_test_mode,
        )

    # ------------------------------------------------------------------
    # Error handling
    # ------------------------------------------------------------------

    @staticmethod
    def classify_error(error: stripe.StripeError) -> GatewayErrorType:
        """
        Classify Stripe error for retry logic.

        Args:
            error: Stripe error

        Returns:
            GatewayErrorType: Error classification
        """
        if isinstance(error, stripe.RateLimitError):
            return GatewayErrorType.RATE_LIMIT
        elif isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            return GatewayErrorType.TRANSIENT
        elif isinstance(
            error,
            (
                stripe.CardError,
                stripe.InvalidRequestError,
                stripe.AuthenticationError,
                stripe.PermissionError,
                stripe.IdempotencyError,
            ),
        ):
            return GatewayErrorType.PERMANENT
        else:
            # Unknown errors are treated as transient
            return GatewayErrorType.TRANSIENT

    def _translate_error(
        self,
        error: stripe.StripeError,
        operation: str,
        error_class: type = PaymentGatewayError,
    ) -> PaymentGatewayError:
        error_type = self.classify_error(error)

        logger.error(
            "stripe_api_error",
            operation=operation,
            error_type=error_type.value,
            error_code=getattr(error, "code", None),
            error_message=str(error),
        )
        metrics.record_stripe_api_error(error_type.value)

        return error_class(
            str(error),
            error_type=error_type,
            original_error=error,
            operation=operation,
            stripe_code=getattr(error, "code", None),
        )

    # ------------------------------------------------------------------
    # Call plumbing
    # ------------------------------------------------------------------

    async def _call_once(
        self,
        operation: str,
        func: Callable[..., T],
        error_class: type,
        **kwargs: Any,
    ) -> T:
        self.circuit_breaker.before_call(error_class)
        start = time.monotonic()
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(func, **kwargs), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            self.circuit_breaker.on_failure()
            metrics.record_stripe_api_call(operation, "timeout", time.monotonic() - start)
            metrics.record_stripe_api_error(GatewayErrorType.TRANSIENT.value)
            logger.error("stripe_api_timeout", operation=operation, timeout_seconds=self.timeout)
            raise error_class(
                f"Stripe {operation} timed out after {self.timeout}s",
                error_type=GatewayErrorType.TRANSIENT,
                operation=operation,
            )
        except stripe.StripeError as e:
            self.circuit_breaker.on_failure()
            metrics.record_stripe_api_call(operation, "error", time.monotonic() - start)
            raise self._translate_error(e, operation, error_class)

        self.circuit_breaker.on_success()
        metrics.record_stripe_api_call(operation, "success", time.monotonic() - start)
        return result

    async def _call(
        self,
        operation: str,
        func: Callable[..., T],
        error_class: type = PaymentGatewayError,
        **kwargs: Any,
    ) -> T:
        """
        Run a blocking Stripe SDK call with timeout, circuit breaker and retries.

        Only transient and rate-limit errors are retried; the idempotency key
        in kwargs makes a retried create safe.
        """
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=1, min=self.retry_wait_min, max=self.retry_wait_max),
            reraise=True,
        ):
            with attempt:
                return await self._call_once(operation, func, error_class, **kwargs)
        raise AssertionError("unreachable")  # pragma: no cover

    def _request_options(self, idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        options: Dict[str, Any] = {
            "api_key": self.api_key,
            "stripe_version": self.api_version,
        }
        if idempotency_key:
            options["idempotency_key"] = idempotency_key
        return options

    # ------------------------------------------------------------------
    # PaymentGateway
    # ------------------------------------------------------------------

    @staticmethod
    def build_session_params(request: ExternalCheckoutRequest) -> Dict[str, Any]:
        """Map an ExternalCheckoutRequest onto Checkout Session parameters."""
        line_items = []
        for item in request.line_items:
            product_data: Dict[str, Any] = {"name": item.title}
            if item.description:
                product_data["description"] = item.description
            if item.image_url:
                product_data["images"] = [item.image_url]
            line_items.append(
                {
                    "price_data": {
                        "currency": item.currency,
                        "unit_amount": item.unit_amount,
                        "product_data": product_data,
                    },
                    "quantity": item.quantity,
                }
            )

        params: Dict[str, Any] = {
            "mode": "payment",
            "line_items": line_items,
            "payment_intent_data": {
                "application_fee_amount": request.application_fee_amount,
                "transfer_data": {"destination": request.destination_account},
                "metadata": dict(request.metadata),
            },
            "metadata": dict(request.metadata),
            "success_url": request.success_url,
            "cancel_url": request.cancel_url,
        }
        if request.customer_email:
            params["customer_email"] = request.customer_email
        return params

    async def create_checkout_session(
        self, request: ExternalCheckoutRequest, idempotency_key: str
    ) -> CheckoutSession:
        """
        Create a Checkout Session as a destination charge.

        Args:
            request: Processor-neutral checkout request
            idempotency_key: Stable per transaction

        Returns:
            CheckoutSession: Session id and hosted page URL

        Raises:
            PaymentGatewayError: If session creation fails
        """
        logger.info(
            "creating_checkout_session",
            idempotency_key=idempotency_key,
            application_fee_amount=request.application_fee_amount,
            destination_account=request.destination_account,
        )

        session = await self._call(
            "create_checkout_session",
            stripe.checkout.Session.create,
            **self.build_session_params(request),
            **self._request_options(idempotency_key),
        )

        logger.info("checkout_session_created", session_id=session.id)

        return CheckoutSession(
            id=session.id,
            url=getattr(session, "url", None),
            payment_intent_id=getattr(session, "payment_intent", None),
        )

    def verify_and_parse_notification(self, payload: bytes, signature: str) -> NotificationEvent:
        """
        Verify a Stripe-Signature header and parse the event body.

        Args:
            payload: Raw request body, exactly as received
            signature: Stripe-Signature header value

        Raises:
            InvalidSignature: If the header is missing, stale or does not match
            MalformedNotification: If the verified body is not a usable event
        """
        if not signature:
            raise InvalidSignature("Missing signature header")

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError:
            raise InvalidSignature("Payload is not valid UTF-8")

        try:
            stripe.WebhookSignature.verify_header(
                body, signature, self.webhook_secret, self.webhook_tolerance
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("webhook_signature_verification_failed", error=str(e))
            raise InvalidSignature(f"Invalid webhook signature: {str(e)}")

        try:
            event = json.loads(body)
        except ValueError as e:
            raise MalformedNotification(f"Notification body is not JSON: {str(e)}")

        if not isinstance(event, dict):
            raise MalformedNotification("Notification body is not an object")

        event_id = event.get("id")
        event_type = event.get("type")
        data = event.get("data")
        data_object = data.get("object") if isinstance(data, dict) else None
        if not isinstance(event_id, str) or not isinstance(event_type, str):
            raise MalformedNotification("Notification is missing id or type")
        if not isinstance(data_object, dict):
            raise MalformedNotification(
                "Notification is missing data.object", event_id=event_id
            )

        logger.info("webhook_signature_verified", event_id=event_id, event_type=event_type)

        return NotificationEvent(
            id=event_id,
            type=event_type,
            data_object=data_object,
            payload=event,
        )

    # ------------------------------------------------------------------
    # DisbursementChannel
    # ------------------------------------------------------------------

    async def create_payout(
        self,
        amount: int,
        currency: str,
        destination: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> DisbursementResult:
        """
        Pay out a connected account's balance to the seller's bank account.

        Checkout is a destination charge, so the seller's share is already in
        the connected account. The payout is created on that account
        (``stripe_account``); no platform funds move.

        Raises:
            DisbursementError: If the payout fails. Only PERMANENT errors mean
                Stripe did not create it.
        """
        logger.info(
            "creating_payout",
            amount=amount,
            connected_account=destination,
            idempotency_key=idempotency_key,
        )

        payout = await self._call(
            "create_payout",
            stripe.Payout.create,
            DisbursementError,
            amount=amount,
            currency=currency,
            metadata=metadata or {},
            stripe_account=destination,
            **self._request_options(idempotency_key),
        )

        logger.info("payout_created", stripe_payout_id=payout.id, amount=amount)

        return DisbursementResult(id=payout.id, amount=amount, destination=destination)
