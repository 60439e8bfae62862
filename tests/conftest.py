"""
Pytest configuration and fixtures.

Every test gets its own SQLite file database. The payment gateway is a
StripeClient whose webhook verification is real (events are signed with the
Stripe ``t=...,v1=...`` scheme below) while checkout sessions and payouts
are answered in memory.
"""
import hashlib
import hmac
import json
import time
import uuid
from typing import Any, AsyncGenerator, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from marketplace_settlement.api.main import create_app
from marketplace_settlement.config import Settings
from marketplace_settlement.core.checkout_builder import (
    BuyerRef,
    CheckoutRequestBuilder,
    CheckoutResult,
    CheckoutService,
    ProductRef,
)
from marketplace_settlement.core.errors import DisbursementError, PaymentGatewayError
from marketplace_settlement.core.locks import SellerLockManager
from marketplace_settlement.core.payout_manager import PayoutFeeSchedule, PayoutRequestManager
from marketplace_settlement.core.settlement_reconciler import (
    NotificationResult,
    SettlementReconciler,
)
from marketplace_settlement.database.connection import (
    create_engine,
    create_session_factory,
    init_db,
)
from marketplace_settlement.database.models import (
    AffiliateLink,
    SellerAccount,
    Transaction,
    WebhookEvent,
)
from marketplace_settlement.database.repository import SettlementRepository
from marketplace_settlement.integrations.base import (
    CheckoutSession,
    ExternalCheckoutRequest,
    DisbursementResult,
)
from marketplace_settlement.integrations.stripe_client import StripeClient

TEST_WEBHOOK_SECRET = "whsec_test_fake_secret"


def sign_payload(
    payload: str, secret: str = TEST_WEBHOOK_SECRET, timestamp: Optional[int] = None
) -> str:
    """Stripe-Signature header for a payload."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{payload}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


def build_event(
    event_type: str, data_object: Dict[str, Any], event_id: Optional[str] = None
) -> Tuple[bytes, str]:
    """Signed event body and its signature header."""
    payload = json.dumps(
        {
            "id": event_id or f"evt_{uuid.uuid4().hex}",
            "object": "event",
            "type": event_type,
            "data": {"object": data_object},
        }
    )
    return payload.encode("utf-8"), sign_payload(payload)


class FakeGateway(StripeClient):
    """Real signature verification, in-memory checkout sessions."""

    def __init__(self, settings: Settings) -> None:
        super().__init__(settings)
        self.requests: List[Tuple[ExternalCheckoutRequest, str]] = []
        self.fail_with: Optional[PaymentGatewayError] = None

    async def create_checkout_session(
        self, request: ExternalCheckoutRequest, idempotency_key: str
    ) -> CheckoutSession:
        self.requests.append((request, idempotency_key))
        if self.fail_with is not None:
            raise self.fail_with
        session_id = f"cs_test_{uuid.uuid4().hex[:16]}"
        return CheckoutSession(
            id=session_id,
            url=f"https://checkout.stripe.com/c/pay/{session_id}",
        )

    def request_for(self, transaction_id: Any) -> ExternalCheckoutRequest:
        for request, _ in self.requests:
            if request.metadata.get("transaction_id") == str(transaction_id):
                return request
        raise KeyError(transaction_id)


class FakeDisbursementChannel:
    def __init__(self) -> None:
        self.payouts: List[Dict[str, Any]] = []
        self.fail_with: Optional[DisbursementError] = None

    async def create_payout(
        self,
        amount: int,
        currency: str,
        destination: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> DisbursementResult:
        if self.fail_with is not None:
            raise self.fail_with
        self.payouts.append(
            {
                "amount": amount,
                "currency": currency,
                "destination": destination,
                "idempotency_key": idempotency_key,
                "metadata": metadata or {},
            }
        )
        return DisbursementResult(
            id=f"po_test_{len(self.payouts)}", amount=amount, destination=destination
        )


class Marketplace:
    """Services wired together over one test database, plus shortcuts."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: FakeGateway,
        channel: FakeDisbursementChannel,
        lock_manager: SellerLockManager,
        settings: Settings,
    ) -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        self.channel = channel
        self.lock_manager = lock_manager
        self.checkout_service = CheckoutService(
            session_factory, gateway, CheckoutRequestBuilder.from_settings(settings)
        )
        self.payouts = PayoutRequestManager(
            session_factory,
            lock_manager,
            PayoutFeeSchedule.from_settings(settings),
            disbursement_channel=channel,
            dispatch_mode="scheduled",
            currency=settings.currency,
        )
        self.reconciler = SettlementReconciler(
            session_factory,
            gateway,
            lock_manager,
            affiliate_clearing_days=settings.affiliate_clearing_days,
            payout_manager=self.payouts,
        )

    async def add_seller(
        self,
        seller_id: str,
        level: int = 1,
        account_id: Optional[str] = None,
        charges_enabled: bool = True,
        payouts_enabled: bool = True,
    ) -> None:
        async with self.session_factory() as db:
            db.add(
                SellerAccount(
                    seller_id=seller_id,
                    level=level,
                    external_account_id=account_id or f"acct_{seller_id}",
                    charges_enabled=charges_enabled,
                    payouts_enabled=payouts_enabled,
                    onboarding_complete=True,
                )
            )
            await db.commit()

    async def add_affiliate_link(
        self, code: str, product_id: str, promoter_id: str, is_active: bool = True
    ) -> None:
        async with self.session_factory() as db:
            db.add(
                AffiliateLink(
                    code=code,
                    product_id=product_id,
                    promoter_id=promoter_id,
                    is_active=is_active,
                )
            )
            await db.commit()

    async def checkout(
        self,
        seller_id: str,
        price: int,
        product_id: str = "prod_1",
        buyer_id: str = "buyer_1",
        commission_percent: Any = 0,
        promoter_code: Optional[str] = None,
    ) -> CheckoutResult:
        return await self.checkout_service.create_checkout(
            ProductRef(
                id=product_id,
                seller_id=seller_id,
                title="Preset Pack",
                price=price,
                affiliate_commission_percent=commission_percent,
            ),
            BuyerRef(id=buyer_id, email=f"{buyer_id}@example.com"),
            promoter_code=promoter_code,
        )

    def completion_event(
        self,
        result: CheckoutResult,
        payment_intent: Optional[str] = None,
        payment_status: str = "paid",
        event_type: str = "checkout.session.completed",
        event_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Tuple[bytes, str]:
        if metadata is None:
            metadata = dict(self.gateway.request_for(result.transaction_id).metadata)
        return build_event(
            event_type,
            {
                "id": result.session_id,
                "object": "checkout.session",
                "payment_status": payment_status,
                "payment_intent": payment_intent or f"pi_{result.session_id}",
                "metadata": metadata,
            },
            event_id=event_id,
        )

    def refund_event(
        self, payment_intent: str, refunded: bool = True, event_id: Optional[str] = None
    ) -> Tuple[bytes, str]:
        return build_event(
            "charge.refunded",
            {
                "id": f"ch_{uuid.uuid4().hex[:12]}",
                "object": "charge",
                "payment_intent": payment_intent,
                "refunded": refunded,
                "amount": 10000,
                "amount_refunded": 10000 if refunded else 2500,
            },
            event_id=event_id,
        )

    def payout_event(
        self,
        external_id: str,
        payout_id: Any = None,
        event_type: str = "payout.paid",
        failure_message: Optional[str] = None,
    ) -> Tuple[bytes, str]:
        data: Dict[str, Any] = {
            "id": external_id,
            "object": "payout",
            "status": "paid" if event_type == "payout.paid" else "failed",
            "metadata": {"payout_id": str(payout_id)} if payout_id else {},
        }
        if failure_message:
            data["failure_code"] = "account_closed"
            data["failure_message"] = failure_message
        return build_event(event_type, data)

    async def deliver(self, event: Tuple[bytes, str]) -> NotificationResult:
        payload, signature = event
        return await self.reconciler.handle_notification(payload, signature)

    async def sell(self, seller_id: str, price: int, **kwargs: Any) -> CheckoutResult:
        """Checkout followed by a paid completion notification."""
        result = await self.checkout(seller_id, price, **kwargs)
        await self.deliver(self.completion_event(result))
        return result

    async def transaction(self, transaction_id: Any) -> Transaction:
        async with self.session_factory() as db:
            transaction = await SettlementRepository(db).get_transaction(
                uuid.UUID(str(transaction_id))
            )
        assert transaction is not None
        return transaction

    async def seller(self, seller_id: str) -> SellerAccount:
        async with self.session_factory() as db:
            seller = await SettlementRepository(db).get_seller(seller_id)
        assert seller is not None
        return seller

    async def balance(self, seller_id: str) -> int:
        async with self.session_factory() as db:
            return await SettlementRepository(db).available_balance(seller_id)

    async def cumulative(self, seller_id: str) -> int:
        async with self.session_factory() as db:
            return await SettlementRepository(db).cumulative_earnings(seller_id)

    async def webhook_event(self, event_id: str) -> Optional[WebhookEvent]:
        async with self.session_factory() as db:
            return await SettlementRepository(db).get_webhook_event(event_id)


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        stripe_secret_key="sk_test_fake_key_for_testing",
        stripe_webhook_secret=TEST_WEBHOOK_SECRET,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'settlement.db'}",
        lock_backend="memory",
        lock_acquire_timeout_seconds=5.0,
        payout_dispatch_mode="immediate",
        app_name="marketplace-settlement-test",
        app_env="test",
        log_level="DEBUG",
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    engine = create_engine(test_settings)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
def lock_manager() -> SellerLockManager:
    return SellerLockManager(backend="memory", acquire_timeout=5.0)


@pytest.fixture
def fake_gateway(test_settings: Settings) -> FakeGateway:
    return FakeGateway(test_settings)


@pytest.fixture
def fake_channel() -> FakeDisbursementChannel:
    return FakeDisbursementChannel()


@pytest.fixture
def market(
    session_factory: async_sessionmaker[AsyncSession],
    fake_gateway: FakeGateway,
    fake_channel: FakeDisbursementChannel,
    lock_manager: SellerLockManager,
    test_settings: Settings,
) -> Marketplace:
    return Marketplace(session_factory, fake_gateway, fake_channel, lock_manager, test_settings)


@pytest_asyncio.fixture
async def app(
    test_settings: Settings, fake_gateway: FakeGateway, fake_channel: FakeDisbursementChannel
) -> AsyncGenerator[Any, Any]:
    """Application with its lifespan running (ASGITransport does not run it)."""
    application = create_app(
        test_settings,
        gateway=fake_gateway,
        disbursement_channel=fake_channel,
        configure_logging=False,
    )
    async with application.router.lifespan_context(application):
        yield application


@pytest_asyncio.fixture
async def client(app: Any) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
