"""
Checkout request construction and checkout session creation.

The builder is pure: it turns product, buyer, seller and an optional affiliate
link into a processor-neutral destination-charge request whose metadata
carries the full split. The reconciler later settles from that metadata, so
a fee-table change between checkout and settlement never alters a sale.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..database.models import Transaction, TransactionStatus
from ..database.repository import SettlementRepository
from ..integrations.base import (
    CheckoutSession,
    ExternalCheckoutRequest,
    LineItem,
    PaymentGateway,
)
from ..monitoring.metrics import metrics
from .errors import PaymentGatewayError, SellerNotPayable
from .split_calculator import Percentage, Split, compute_split, validate_amount

logger = structlog.get_logger(__name__)

# Metadata keys shared with the settlement reconciler
META_TRANSACTION_ID = "transaction_id"
META_PRODUCT_ID = "product_id"
META_BUYER_ID = "buyer_id"
META_SELLER_ID = "seller_id"
META_PROMOTER_ID = "promoter_id"
META_PROMOTER_CODE = "promoter_code"
META_GROSS_AMOUNT = "gross_amount"
META_PLATFORM_FEE = "platform_fee"
META_AFFILIATE_COMMISSION = "affiliate_commission"
META_SELLER_NET = "seller_net"
META_SELLER_LEVEL = "seller_level"

NO_PROMOTER = ""


@dataclass(frozen=True)
class ProductRef:
    id: str
    seller_id: str
    title: str
    price: int
    affiliate_commission_percent: Percentage = 0
    description: Optional[str] = None
    image_url: Optional[str] = None


@dataclass(frozen=True)
class BuyerRef:
    id: str
    email: Optional[str] = None


@dataclass(frozen=True)
class SellerRef:
    """Seller as seen at checkout. ``level`` is required, never defaulted."""

    id: str
    level: int
    external_account_id: Optional[str]
    charges_enabled: bool


@dataclass(frozen=True)
class AffiliateLinkRef:
    code: str
    product_id: str
    promoter_id: str
    is_active: bool = True


@dataclass(frozen=True)
class CheckoutPlan:
    """Built request plus the values the pending Transaction is created from."""

    transaction_id: str
    request: ExternalCheckoutRequest
    split: Split
    promoter_id: Optional[str]
    promoter_code: Optional[str]


@dataclass(frozen=True)
class CheckoutResult:
    transaction_id: uuid.UUID
    session_id: str
    checkout_url: Optional[str]
    split: Split


class CheckoutRequestBuilder:
    """Builds destination-charge checkout requests for one currency."""

    def __init__(self, currency: str, success_url: str, cancel_url: str):
        self.currency = currency
        self.success_url = success_url
        self.cancel_url = cancel_url

    @classmethod
    def from_settings(cls, settings: Settings) -> "CheckoutRequestBuilder":
        return cls(
            currency=settings.currency,
            success_url=settings.checkout_success_url,
            cancel_url=settings.checkout_cancel_url,
        )

    @staticmethod
    def resolve_promoter(
        product: ProductRef,
        buyer: BuyerRef,
        promoter_code: Optional[str],
        affiliate_link: Optional[AffiliateLinkRef],
    ) -> Optional[AffiliateLinkRef]:
        """
        Affiliate link to credit, or None.

        A code counts only if its link exists, is active, belongs to this
        product and the promoter is not the buyer. Anything else is ignored
        rather than rejected: the sale goes through without commission.
        """
        if not promoter_code:
            return None
        if affiliate_link is None or affiliate_link.code != promoter_code:
            logger.info("promoter_code_unknown", promoter_code=promoter_code)
            return None
        if not affiliate_link.is_active:
            logger.info("promoter_code_inactive", promoter_code=promoter_code)
            return None
        if affiliate_link.product_id != product.id:
            logger.info(
                "promoter_code_product_mismatch",
                promoter_code=promoter_code,
                product_id=product.id,
            )
            return None
        if affiliate_link.promoter_id == buyer.id:
            logger.info("promoter_code_self_referral", promoter_code=promoter_code)
            return None
        return affiliate_link

    def plan_checkout(
        self,
        product: ProductRef,
        buyer: BuyerRef,
        seller: SellerRef,
        promoter_code: Optional[str] = None,
        affiliate_link: Optional[AffiliateLinkRef] = None,
        transaction_id: Optional[str] = None,
    ) -> CheckoutPlan:
        """
        Validate inputs and compute the split and request.

        Raises:
            SellerNotPayable: If the seller cannot receive charges
            InvalidAmount: If the product price is not a positive integer
            InvalidPercentage: If the product's commission percentage is out of range
        """
        if not seller.external_account_id or not seller.charges_enabled:
            raise SellerNotPayable(
                "Seller cannot receive payments yet",
                seller_id=seller.id,
                has_external_account=bool(seller.external_account_id),
                charges_enabled=seller.charges_enabled,
            )

        gross_amount = validate_amount(product.price, allow_zero=False)
        link = self.resolve_promoter(product, buyer, promoter_code, affiliate_link)

        split = compute_split(
            gross_amount,
            seller.level,
            product.affiliate_commission_percent if link else 0,
        )
        transaction_id = transaction_id or str(uuid.uuid4())

        metadata: Dict[str, str] = {
            META_TRANSACTION_ID: transaction_id,
            META_PRODUCT_ID: str(product.id),
            META_BUYER_ID: str(buyer.id),
            META_SELLER_ID: str(seller.id),
            META_PROMOTER_ID: link.promoter_id if link else NO_PROMOTER,
            META_PROMOTER_CODE: link.code if link else NO_PROMOTER,
            META_GROSS_AMOUNT: str(split.gross_amount),
            META_PLATFORM_FEE: str(split.platform_fee),
            META_AFFILIATE_COMMISSION: str(split.affiliate_commission),
            META_SELLER_NET: str(split.seller_net),
            META_SELLER_LEVEL: str(seller.level),
        }

        request = ExternalCheckoutRequest(
            line_items=(
                LineItem(
                    title=product.title,
                    description=product.description or None,
                    image_url=product.image_url or None,
                    unit_amount=split.gross_amount,
                    quantity=1,
                    currency=self.currency,
                ),
            ),
            destination_account=seller.external_account_id,
            application_fee_amount=split.application_fee_amount,
            currency=self.currency,
            success_url=self.success_url,
            cancel_url=self.cancel_url,
            metadata=metadata,
            customer_email=buyer.email,
        )

        return CheckoutPlan(
            transaction_id=transaction_id,
            request=request,
            split=split,
            promoter_id=link.promoter_id if link else None,
            promoter_code=link.code if link else None,
        )

    def build_checkout_request(
        self,
        product: ProductRef,
        buyer: BuyerRef,
        seller: SellerRef,
        promoter_code: Optional[str] = None,
        affiliate_link: Optional[AffiliateLinkRef] = None,
    ) -> ExternalCheckoutRequest:
        """
        Build the external checkout request for one product sale.

        Args:
            product: Product being bought (price in minor units)
            buyer: Buyer identity
            seller: Seller with level and payout-account status
            promoter_code: Optional referral code from the buyer's link
            affiliate_link: The link stored under promoter_code, if any

        Returns:
            ExternalCheckoutRequest: Destination charge with split metadata

        Raises:
            SellerNotPayable: If the seller cannot receive charges
        """
        return self.plan_checkout(
            product, buyer, seller, promoter_code=promoter_code, affiliate_link=affiliate_link
        ).request


class CheckoutService:
    """
    Creates pending transactions and their checkout sessions.

    The pending Transaction is committed before the processor is called so a
    session can never exist without its record.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        builder: CheckoutRequestBuilder,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.builder = builder

    async def create_checkout(
        self,
        product: ProductRef,
        buyer: BuyerRef,
        promoter_code: Optional[str] = None,
    ) -> CheckoutResult:
        """
        Persist a pending Transaction and open a checkout session for it.

        Returns:
            CheckoutResult: Transaction id, session id and redirect URL

        Raises:
            SellerNotPayable: If the seller is unknown or cannot receive charges
            PaymentGatewayError: If the processor call fails; the
                transaction is marked failed
        """
        async with self.session_factory() as db:
            repo = SettlementRepository(db)
            account = await repo.get_seller(product.seller_id)
            if account is None:
                raise SellerNotPayable(
                    "Seller has no payout account", seller_id=product.seller_id
                )
            seller = SellerRef(
                id=account.seller_id,
                level=account.level,
                external_account_id=account.external_account_id,
                charges_enabled=account.charges_enabled,
            )

            link = None
            if promoter_code:
                stored = await repo.get_affiliate_link(promoter_code)
                if stored is not None:
                    link = AffiliateLinkRef(
                        code=stored.code,
                        product_id=stored.product_id,
                        promoter_id=stored.promoter_id,
                        is_active=stored.is_active,
                    )

            transaction_id = uuid.uuid4()
            plan = self.builder.plan_checkout(
                product,
                buyer,
                seller,
                promoter_code=promoter_code,
                affiliate_link=link,
                transaction_id=str(transaction_id),
            )

            transaction = Transaction(
                id=transaction_id,
                product_id=str(product.id),
                buyer_id=str(buyer.id),
                seller_id=seller.id,
                promoter_id=plan.promoter_id,
                promoter_code=plan.promoter_code,
                gross_amount=plan.split.gross_amount,
                platform_fee=plan.split.platform_fee,
                affiliate_commission=plan.split.affiliate_commission,
                seller_net_amount=plan.split.seller_net,
                fee_percent=plan.split.fee_percent,
                currency=self.builder.currency,
                status=TransactionStatus.PENDING,
            )
            db.add(transaction)
            await db.commit()

            logger.info(
                "checkout_transaction_created",
                transaction_id=str(transaction_id),
                seller_id=seller.id,
                gross_amount=plan.split.gross_amount,
                platform_fee=plan.split.platform_fee,
                affiliate_commission=plan.split.affiliate_commission,
            )

            try:
                session: CheckoutSession = await self.gateway.create_checkout_session(
                    plan.request, idempotency_key=f"checkout:{transaction_id}"
                )
            except PaymentGatewayError as e:
                transaction.status = TransactionStatus.FAILED
                transaction.failure_reason = f"checkout_session_failed: {e.message}"
                transaction.settled_at = datetime.now(timezone.utc)
                await db.commit()
                metrics.record_checkout("failed")
                logger.error(
                    "checkout_session_failed",
                    transaction_id=str(transaction_id),
                    error=e.message,
                    error_type=e.error_type.value,
                )
                raise

            transaction.external_session_id = session.id
            transaction.external_payment_intent_id = session.payment_intent_id
            transaction.checkout_url = session.url
            await db.commit()

        metrics.record_checkout("created", plan.split.gross_amount)
        logger.info(
            "checkout_session_attached",
            transaction_id=str(transaction_id),
            session_id=session.id,
        )

        return CheckoutResult(
            transaction_id=transaction_id,
            session_id=session.id,
            checkout_url=session.url,
            split=plan.split,
        )
