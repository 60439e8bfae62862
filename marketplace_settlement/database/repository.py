"""
Queries for the settlement tables.

Balances are aggregated on read and never cached; both aggregates filter by
status so a refunded sale or a cancelled payout drops out on its own.
"""
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    AffiliateLink,
    Payout,
    PayoutStatus,
    SellerAccount,
    Transaction,
    TransactionStatus,
    WebhookEvent,
)


class SettlementRepository:
    """Data access for transactions, payouts, sellers and webhook events."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ------------------------------------------------------------------
    # Sellers
    # ------------------------------------------------------------------

    async def get_seller(self, seller_id: str, for_update: bool = False) -> Optional[SellerAccount]:
        """
        Load a seller account.

        Args:
            seller_id: Seller identifier
            for_update: Take a row lock (PostgreSQL); ignored by SQLite

        Returns:
            SellerAccount or None
        """
        stmt = select(SellerAccount).where(SellerAccount.seller_id == seller_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_seller_by_external_account(self, account_id: str) -> Optional[SellerAccount]:
        result = await self.db.execute(
            select(SellerAccount).where(SellerAccount.external_account_id == account_id)
        )
        return result.scalar_one_or_none()

    async def get_or_create_seller(self, seller_id: str, for_update: bool = False) -> SellerAccount:
        seller = await self.get_seller(seller_id, for_update=for_update)
        if seller is None:
            seller = SellerAccount(seller_id=seller_id, level=1)
            self.db.add(seller)
            await self.db.flush()
        return seller

    # ------------------------------------------------------------------
    # Balance aggregates
    # ------------------------------------------------------------------

    async def cumulative_earnings(self, seller_id: str) -> int:
        """Sum of seller_net_amount over completed transactions."""
        result = await self.db.execute(
            select(func.coalesce(func.sum(Transaction.seller_net_amount), 0)).where(
                Transaction.seller_id == seller_id,
                Transaction.status == TransactionStatus.COMPLETED,
            )
        )
        return int(result.scalar_one())

    async def reserved_payouts(self, seller_id: str) -> int:
        """Sum of payout amounts that still hold (or have consumed) balance."""
        result = await self.db.execute(
            select(func.coalesce(func.sum(Payout.amount), 0)).where(
                Payout.seller_id == seller_id,
                Payout.status.in_(PayoutStatus.RESERVING),
            )
        )
        return int(result.scalar_one())

    async def available_balance(self, seller_id: str) -> int:
        return await self.cumulative_earnings(seller_id) - await self.reserved_payouts(seller_id)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def get_transaction(self, transaction_id: uuid.UUID) -> Optional[Transaction]:
        return await self.db.get(Transaction, transaction_id)

    async def get_transaction_by_session(
        self, session_id: str, for_update: bool = False
    ) -> Optional[Transaction]:
        stmt = select(Transaction).where(Transaction.external_session_id == session_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_transaction_by_payment_intent(
        self, payment_intent_id: str, for_update: bool = False
    ) -> Optional[Transaction]:
        stmt = select(Transaction).where(
            Transaction.external_payment_intent_id == payment_intent_id
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_transactions(
        self, seller_id: str, limit: int = 50, offset: int = 0
    ) -> Sequence[Transaction]:
        result = await self.db.execute(
            select(Transaction)
            .where(Transaction.seller_id == seller_id)
            .order_by(Transaction.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return result.scalars().all()

    # ------------------------------------------------------------------
    # Payouts
    # ------------------------------------------------------------------

    async def get_payout(self, payout_id: uuid.UUID, for_update: bool = False) -> Optional[Payout]:
        stmt = select(Payout).where(Payout.id == payout_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_payouts(
        self, seller_id: str, limit: int = 50, offset: int = 0
    ) -> Sequence[Payout]:
        result = await self.db.execute(
            select(Payout)
            .where(Payout.seller_id == seller_id)
            .order_by(Payout.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return result.scalars().all()

    async def due_payout_ids(self, created_before: datetime, limit: int) -> List[uuid.UUID]:
        """Ids of pending payouts created before a cutoff, oldest first."""
        result = await self.db.execute(
            select(Payout.id)
            .where(
                Payout.status == PayoutStatus.PENDING,
                Payout.created_at <= created_before,
            )
            .order_by(Payout.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_payout_by_external_id(self, external_payout_id: str) -> Optional[Payout]:
        result = await self.db.execute(
            select(Payout).where(Payout.external_payout_id == external_payout_id)
        )
        return result.scalar_one_or_none()

    async def unconfirmed_payout_ids(
        self, processed_before: datetime, processed_after: datetime, limit: int
    ) -> List[uuid.UUID]:
        """
        Processing payouts the disbursement channel never confirmed.

        Only payouts handed to the channel inside [processed_after,
        processed_before] are returned, oldest first.
        """
        result = await self.db.execute(
            select(Payout.id)
            .where(
                Payout.status == PayoutStatus.PROCESSING,
                Payout.external_payout_id.is_(None),
                Payout.processed_at <= processed_before,
                Payout.processed_at >= processed_after,
            )
            .order_by(Payout.processed_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_payouts(self, status: str) -> int:
        result = await self.db.execute(
            select(func.count(Payout.id)).where(Payout.status == status)
        )
        return int(result.scalar_one())

    # ------------------------------------------------------------------
    # Affiliate links
    # ------------------------------------------------------------------

    async def get_affiliate_link(self, code: str) -> Optional[AffiliateLink]:
        return await self.db.get(AffiliateLink, code)

    # ------------------------------------------------------------------
    # Webhook events
    # ------------------------------------------------------------------

    async def get_webhook_event(self, external_event_id: str) -> Optional[WebhookEvent]:
        result = await self.db.execute(
            select(WebhookEvent).where(WebhookEvent.external_event_id == external_event_id)
        )
        return result.scalar_one_or_none()

    async def record_webhook_event(
        self,
        external_event_id: str,
        event_type: str,
        status: str,
        payload: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> WebhookEvent:
        """
        Insert or update the audit row for a notification.

        A redelivery bumps delivery_count on the existing row.
        """
        event = await self.get_webhook_event(external_event_id)
        if event is None:
            event = WebhookEvent(
                external_event_id=external_event_id,
                event_type=event_type,
                status=status,
                payload=payload,
                error_message=error_message,
                delivery_count=1,
            )
            self.db.add(event)
        else:
            event.status = status
            event.error_message = error_message
            event.delivery_count += 1
            if payload is not None:
                event.payload = payload
        await self.db.flush()
        return event

    async def count_webhook_events(self, status: str) -> int:
        result = await self.db.execute(
            select(func.count(WebhookEvent.id)).where(WebhookEvent.status == status)
        )
        return int(result.scalar_one())
