"""SQLAlchemy database models for the settlement core."""
import uuid
from datetime import datetime
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class TransactionStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"

    TERMINAL = frozenset({COMPLETED, FAILED, REFUNDED})


class PayoutStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    # Payouts in these states hold their amount against the balance
    RESERVING = frozenset({PENDING, PROCESSING, COMPLETED})


class Transaction(Base):
    """
    One product sale.

    Created pending when a checkout session is requested and mutated only by
    the settlement reconciler. The split columns always satisfy
    platform_fee + seller_net_amount == gross_amount.
    """

    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    product_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    promoter_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    promoter_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    gross_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    platform_fee: Mapped[int] = mapped_column(BigInteger, nullable=False)
    affiliate_commission: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    seller_net_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    fee_percent: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="eur")
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TransactionStatus.PENDING, index=True
    )
    external_session_id: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True
    )
    external_payment_intent_id: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True
    )
    checkout_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    affiliate_available_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        CheckConstraint("gross_amount >= 0", name="non_negative_gross"),
        CheckConstraint(
            "platform_fee + seller_net_amount = gross_amount", name="split_adds_up"
        ),
        CheckConstraint(
            "affiliate_commission >= 0 AND affiliate_commission <= platform_fee",
            name="commission_within_fee",
        ),
        CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'refunded')",
            name="valid_transaction_status",
        ),
        Index("idx_transactions_seller_status", "seller_id", "status"),
    )

    def __repr__(self) -> str:
        """String representation of Transaction."""
        return (
            f"<Transaction(id={self.id}, seller_id={self.seller_id}, "
            f"gross={self.gross_amount}, status={self.status})>"
        )


class Payout(Base):
    """
    Seller withdrawal request.

    fee + net_amount == amount. Cancellable only while pending.
    """

    __tablename__ = "payouts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    fee: Mapped[int] = mapped_column(BigInteger, nullable=False)
    net_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="eur")
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PayoutStatus.PENDING, index=True
    )
    reference_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    destination_account: Mapped[str | None] = mapped_column(String(255), nullable=True)
    external_payout_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, index=True
    )
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_payout_amount"),
        CheckConstraint("fee >= 0 AND net_amount >= 0", name="non_negative_fee_net"),
        CheckConstraint("fee + net_amount = amount", name="payout_adds_up"),
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed', 'cancelled')",
            name="valid_payout_status",
        ),
        Index("idx_payouts_seller_status", "seller_id", "status"),
    )

    def __repr__(self) -> str:
        """String representation of Payout."""
        return (
            f"<Payout(id={self.id}, seller_id={self.seller_id}, "
            f"amount={self.amount}, status={self.status})>"
        )


class SellerAccount(Base):
    """
    Seller level and payout-account status.

    Balances are never stored here; they are aggregated from transactions and
    payouts on every read.
    """

    __tablename__ = "seller_accounts"

    seller_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    external_account_id: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True
    )
    charges_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payouts_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    onboarding_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (CheckConstraint("level BETWEEN 1 AND 5", name="valid_level"),)

    @property
    def can_receive_payouts(self) -> bool:
        return bool(self.external_account_id) and self.payouts_enabled

    def __repr__(self) -> str:
        return f"<SellerAccount(seller_id={self.seller_id}, level={self.level})>"


class AffiliateLink(Base):
    """Promoter referral code for one product."""

    __tablename__ = "affiliate_links"

    code: Mapped[str] = mapped_column(String(64), primary_key=True)
    product_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    promoter_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    def __repr__(self) -> str:
        return f"<AffiliateLink(code={self.code}, product_id={self.product_id})>"


class WebhookEvent(Base):
    """
    Audit trail of processor notifications.

    One row per external event id; redelivered events update the same row.
    """

    __tablename__ = "webhook_events"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    external_event_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    payload: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivery_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('processing', 'processed', 'ignored', 'duplicate', 'malformed', 'failed')",
            name="valid_webhook_status",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<WebhookEvent(id={self.id}, type={self.event_type}, "
            f"status={self.status})>"
        )
