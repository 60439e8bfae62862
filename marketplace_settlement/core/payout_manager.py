"""
Seller payout requests and their disbursement lifecycle.

State machine per payout:
    pending -> processing -> completed | failed
    pending -> cancelled

A payout reserves its amount from the moment it is created; cancelling it or
a failed disbursement releases the reservation. Only a definite answer
releases it: when the channel call ends without one (timeout, connection
error, open circuit) the payout stays processing until a retry with the same
idempotency key or a disbursement notification settles it. Every balance read and the
write that depends on it happen inside the seller's critical section.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..database.models import Payout, PayoutStatus
from ..database.repository import SettlementRepository
from ..integrations.base import DisbursementChannel
from ..monitoring.metrics import metrics
from .errors import (
    BelowMinimumThreshold,
    DisbursementError,
    GatewayErrorType,
    InsufficientBalance,
    InvalidState,
    LockTimeout,
    PaymentGatewayError,
    PayoutNotFound,
    SellerNotPayable,
    SettlementError,
)
from .locks import SellerLockManager, seller_key
from .split_calculator import percentage_of, validate_amount, validate_percentage

logger = structlog.get_logger(__name__)

DISBURSEMENT_OUTCOMES = (PayoutStatus.COMPLETED, PayoutStatus.FAILED)

# Stripe keeps idempotency keys for 24 hours; an older unconfirmed payout is
# left for manual reconciliation instead of being re-sent.
RETRY_WINDOW = timedelta(hours=23)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_reference_number(now: Optional[datetime] = None) -> str:
    """Human-readable payout reference, e.g. ``PO-20260118-3F9A0C1B``."""
    now = now or _utcnow()
    return f"PO-{now:%Y%m%d}-{uuid.uuid4().hex[:8].upper()}"


@dataclass(frozen=True)
class PayoutFeeSchedule:
    """
    Payout fee rules.

    Payouts of at least ``min_free_amount`` are free. Smaller payouts pay a
    flat fee or a percentage (round half up, at least one minor unit); the
    fee never exceeds the amount.
    """

    min_free_amount: int = 5000
    fee_mode: str = "flat"
    flat_fee: int = 100
    fee_percent: Decimal = Decimal("2")
    min_net_amount: int = 500
    min_balance: Optional[int] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "PayoutFeeSchedule":
        return cls(
            min_free_amount=settings.payout_min_free_amount,
            fee_mode=settings.payout_fee_mode,
            flat_fee=settings.payout_small_fee,
            fee_percent=validate_percentage(settings.payout_small_fee_percent),
            min_net_amount=settings.payout_min_net_amount,
            min_balance=settings.payout_min_balance,
        )

    def fee_for(self, amount: int) -> int:
        if amount >= self.min_free_amount:
            return 0
        if self.fee_mode == "percent":
            fee = max(percentage_of(amount, self.fee_percent), 1)
        else:
            fee = self.flat_fee
        return min(fee, amount)

    def quote_payout_fee(self, amount: Any) -> Tuple[int, int]:
        """
        Fee and net for a payout amount.

        Args:
            amount: Requested amount in minor units

        Returns:
            (fee, net) with fee + net == amount

        Raises:
            InvalidAmount: If amount is not a positive integer
        """
        amount = validate_amount(amount, allow_zero=False)
        fee = self.fee_for(amount)
        return fee, amount - fee

    def describe(self) -> Dict[str, Any]:
        return {
            "min_free_amount": self.min_free_amount,
            "fee_mode": self.fee_mode,
            "flat_fee": self.flat_fee,
            "fee_percent": str(self.fee_percent),
            "min_net_amount": self.min_net_amount,
            "min_balance": self.min_balance,
        }


class PayoutRequestManager:
    """
    Creates, cancels and disburses seller payouts.

    Args:
        session_factory: Async session factory
        lock_manager: Per-seller critical sections
        fee_schedule: Payout fee rules
        disbursement_channel: Moves funds to the seller's account
        dispatch_mode: "immediate" disburses right after the request,
            "scheduled" leaves pending payouts to the dispatcher worker
        currency: Settlement currency
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lock_manager: SellerLockManager,
        fee_schedule: PayoutFeeSchedule,
        disbursement_channel: Optional[DisbursementChannel] = None,
        dispatch_mode: str = "immediate",
        currency: str = "eur",
    ):
        self.session_factory = session_factory
        self.lock_manager = lock_manager
        self.fee_schedule = fee_schedule
        self.disbursement_channel = disbursement_channel
        self.dispatch_mode = dispatch_mode
        self.currency = currency

    def quote_payout_fee(self, amount: Any) -> Tuple[int, int]:
        return self.fee_schedule.quote_payout_fee(amount)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def request_payout(self, seller_id: str, amount: Any) -> Payout:
        """
        Create a pending payout that reserves ``amount`` from the balance.

        Validation order: positive amount, available balance, payout account,
        thresholds. Nothing is written when validation fails.

        Raises:
            InvalidAmount: Amount is not a positive integer
            InsufficientBalance: Amount exceeds the available balance
            SellerNotPayable: Seller has no account with payouts enabled
            BelowMinimumThreshold: Balance or net amount below the configured minimum
            LockTimeout: Seller critical section busy
        """
        try:
            amount = validate_amount(amount, allow_zero=False)
            async with self.lock_manager.hold(seller_key(seller_id)):
                async with self.session_factory() as db:
                    payout = await self._create_payout(db, seller_id, amount)
        except SettlementError as e:
            metrics.record_payout_rejected(e.error_code)
            logger.info(
                "payout_request_rejected",
                seller_id=seller_id,
                amount=str(amount),
                reason=e.error_code,
            )
            raise

        metrics.record_payout(PayoutStatus.PENDING, payout.amount)
        logger.info(
            "payout_requested",
            payout_id=str(payout.id),
            seller_id=seller_id,
            amount=payout.amount,
            fee=payout.fee,
            net_amount=payout.net_amount,
            reference_number=payout.reference_number,
        )

        if self.dispatch_mode == "immediate" and self.disbursement_channel is not None:
            try:
                payout = await self.initiate_disbursement(payout.id)
            except (PaymentGatewayError, LockTimeout, InvalidState):
                payout = await self.get_payout(payout.id)
        return payout

    async def _create_payout(self, db: AsyncSession, seller_id: str, amount: int) -> Payout:
        repo = SettlementRepository(db)
        seller = await repo.get_seller(seller_id, for_update=True)
        available = await repo.available_balance(seller_id)

        if amount > available:
            raise InsufficientBalance(
                "Requested amount exceeds available balance",
                requested=amount,
                available_balance=available,
            )
        if seller is None or not seller.can_receive_payouts:
            raise SellerNotPayable(
                "Seller cannot receive payouts yet",
                seller_id=seller_id,
            )
        if self.fee_schedule.min_balance is not None and available < self.fee_schedule.min_balance:
            raise BelowMinimumThreshold(
                "Available balance below the payout minimum",
                available_balance=available,
                min_balance=self.fee_schedule.min_balance,
            )

        fee, net = self.fee_schedule.quote_payout_fee(amount)
        if net < self.fee_schedule.min_net_amount:
            raise BelowMinimumThreshold(
                "Payout after fees below the minimum",
                requested=amount,
                fee=fee,
                net_amount=net,
                min_net_amount=self.fee_schedule.min_net_amount,
            )

        payout = Payout(
            seller_id=seller_id,
            amount=amount,
            fee=fee,
            net_amount=net,
            currency=self.currency,
            status=PayoutStatus.PENDING,
            reference_number=generate_reference_number(),
            destination_account=seller.external_account_id,
        )
        db.add(payout)
        await db.commit()
        await db.refresh(payout)
        return payout

    async def get_payout(self, payout_id: uuid.UUID, seller_id: Optional[str] = None) -> Payout:
        """
        Raises:
            PayoutNotFound: Unknown id, or owned by another seller
        """
        async with self.session_factory() as db:
            payout = await SettlementRepository(db).get_payout(payout_id)
        if payout is None or (seller_id is not None and payout.seller_id != seller_id):
            raise PayoutNotFound("Payout not found", payout_id=str(payout_id))
        return payout

    async def list_payouts(self, seller_id: str, limit: int = 50, offset: int = 0) -> List[Payout]:
        async with self.session_factory() as db:
            return list(await SettlementRepository(db).list_payouts(seller_id, limit, offset))

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel_payout(self, payout_id: uuid.UUID, seller_id: Optional[str] = None) -> Payout:
        """
        pending -> cancelled, releasing the reserved amount.

        Raises:
            PayoutNotFound: Unknown payout or seller mismatch
            InvalidState: Payout is no longer pending
        """
        found = await self.get_payout(payout_id, seller_id)

        async with self.lock_manager.hold(seller_key(found.seller_id)):
            async with self.session_factory() as db:
                payout = await SettlementRepository(db).get_payout(payout_id, for_update=True)
                if payout is None:
                    raise PayoutNotFound("Payout not found", payout_id=str(payout_id))
                if payout.status != PayoutStatus.PENDING:
                    logger.warning(
                        "payout_cancel_rejected",
                        payout_id=str(payout_id),
                        status=payout.status,
                    )
                    raise InvalidState(
                        "Only pending payouts can be cancelled",
                        current_status=payout.status,
                        payout_id=str(payout_id),
                    )
                payout.status = PayoutStatus.CANCELLED
                payout.cancelled_at = _utcnow()
                await db.commit()

        metrics.record_payout(PayoutStatus.CANCELLED)
        logger.info(
            "payout_cancelled",
            payout_id=str(payout_id),
            seller_id=payout.seller_id,
            amount=payout.amount,
        )
        return payout

    # ------------------------------------------------------------------
    # Disbursement
    # ------------------------------------------------------------------

    async def initiate_disbursement(self, payout_id: uuid.UUID) -> Payout:
        """
        pending -> processing, then instruct the disbursement channel.

        The processing state is committed before the external call, so a
        concurrent cancel cannot race the payout. The external call itself
        runs outside the critical section.

        Raises:
            PayoutNotFound: Unknown payout
            InvalidState: Payout is not pending
            LockTimeout: Seller critical section busy; the payout stays pending
            PaymentGatewayError: The channel call did not succeed. On a
                PERMANENT error the payout is failed and its reservation
                released; otherwise it stays processing, still reserved
        """
        if self.disbursement_channel is None:
            raise RuntimeError("No disbursement channel configured")

        found = await self.get_payout(payout_id)

        async with self.lock_manager.hold(seller_key(found.seller_id)):
            async with self.session_factory() as db:
                repo = SettlementRepository(db)
                payout = await repo.get_payout(payout_id, for_update=True)
                if payout is None:
                    raise PayoutNotFound("Payout not found", payout_id=str(payout_id))
                if payout.status != PayoutStatus.PENDING:
                    metrics.record_invalid_state("payout")
                    logger.error(
                        "payout_dispatch_invalid_state",
                        payout_id=str(payout_id),
                        status=payout.status,
                    )
                    raise InvalidState(
                        "Only pending payouts can be disbursed",
                        current_status=payout.status,
                        payout_id=str(payout_id),
                    )
                if not payout.destination_account:
                    seller = await repo.get_seller(payout.seller_id)
                    payout.destination_account = seller.external_account_id if seller else None
                payout.status = PayoutStatus.PROCESSING
                payout.processed_at = _utcnow()
                await db.commit()

        metrics.record_payout(PayoutStatus.PROCESSING)
        logger.info("payout_processing", payout_id=str(payout_id), seller_id=payout.seller_id)

        return await self._send_to_channel(payout)

    async def retry_disbursement(self, payout_id: uuid.UUID) -> Payout:
        """
        Re-send an unconfirmed processing payout with its original idempotency key.

        The processor answers a repeated key with the payout it already
        created, so a retry never pays twice. A payout that already has an
        external id is returned unchanged.

        Raises:
            PayoutNotFound: Unknown payout
            InvalidState: Payout is not processing
            PaymentGatewayError: As for initiate_disbursement
        """
        if self.disbursement_channel is None:
            raise RuntimeError("No disbursement channel configured")

        payout = await self.get_payout(payout_id)
        if payout.status != PayoutStatus.PROCESSING:
            raise InvalidState(
                "Only processing payouts can be retried",
                current_status=payout.status,
                payout_id=str(payout_id),
            )
        if payout.external_payout_id:
            return payout

        logger.info("payout_disbursement_retry", payout_id=str(payout_id))
        return await self._send_to_channel(payout)

    async def _send_to_channel(self, payout: Payout) -> Payout:
        payout_id = payout.id
        try:
            if not payout.destination_account:
                raise DisbursementError(
                    "Payout has no destination account",
                    error_type=GatewayErrorType.PERMANENT,
                    payout_id=str(payout_id),
                )
            result = await self.disbursement_channel.create_payout(
                amount=payout.net_amount,
                currency=payout.currency,
                destination=payout.destination_account,
                idempotency_key=f"payout:{payout_id}",
                metadata={
                    "payout_id": str(payout_id),
                    "seller_id": payout.seller_id,
                    "reference_number": payout.reference_number,
                },
            )
        except PaymentGatewayError as e:
            if e.error_type != GatewayErrorType.PERMANENT:
                # Outcome unknown: keep the reservation until it is settled
                metrics.record_payout_unconfirmed(e.error_type.value)
                logger.warning(
                    "payout_disbursement_unconfirmed",
                    payout_id=str(payout_id),
                    error=e.message,
                    error_type=e.error_type.value,
                )
                raise
            logger.error(
                "payout_disbursement_failed",
                payout_id=str(payout_id),
                error=e.message,
            )
            await self._finish(payout_id, PayoutStatus.FAILED, failure_reason=e.message)
            raise

        payout = await self._record_external_id(payout_id, result.id)
        logger.info(
            "payout_disbursement_created",
            payout_id=str(payout_id),
            external_payout_id=result.id,
            net_amount=payout.net_amount,
        )
        return payout

    async def _record_external_id(self, payout_id: uuid.UUID, external_id: str) -> Payout:
        # Touches only the external id, never the balance; no seller lock
        async with self.session_factory() as db:
            payout = await SettlementRepository(db).get_payout(payout_id, for_update=True)
            if payout is None:
                raise PayoutNotFound("Payout not found", payout_id=str(payout_id))
            if payout.external_payout_id is None:
                payout.external_payout_id = external_id
                await db.commit()
            return payout

    async def find_disbursed_payout(
        self, external_id: str, payout_id: Optional[str] = None
    ) -> Optional[Payout]:
        """
        Payout behind a processor payout notification.

        Looks up the ``payout_id`` carried in the processor payout's metadata
        first, then the stored external id. A payout bound to a different
        external id does not match.
        """
        async with self.session_factory() as db:
            repo = SettlementRepository(db)
            payout = None
            if payout_id:
                try:
                    payout = await repo.get_payout(uuid.UUID(str(payout_id)))
                except ValueError:
                    payout = None
            if payout is None:
                payout = await repo.get_payout_by_external_id(external_id)
        if payout is None:
            return None
        if payout.external_payout_id and payout.external_payout_id != external_id:
            return None
        return payout

    async def handle_disbursement_callback(
        self,
        payout_id: uuid.UUID,
        outcome: str,
        failure_reason: Optional[str] = None,
        external_id: Optional[str] = None,
    ) -> Payout:
        """
        processing -> completed | failed as reported by the channel.

        Repeating the outcome a payout already has is a no-op.

        Raises:
            PayoutNotFound: Unknown payout
            ValueError: Outcome is not "completed" or "failed"
            InvalidState: Any other transition
        """
        if outcome not in DISBURSEMENT_OUTCOMES:
            raise ValueError(f"Unknown disbursement outcome: {outcome}")
        return await self._finish(
            payout_id, outcome, failure_reason=failure_reason, external_id=external_id
        )

    async def _finish(
        self,
        payout_id: uuid.UUID,
        outcome: str,
        failure_reason: Optional[str] = None,
        external_id: Optional[str] = None,
    ) -> Payout:
        found = await self.get_payout(payout_id)

        async with self.lock_manager.hold(seller_key(found.seller_id)):
            async with self.session_factory() as db:
                payout = await SettlementRepository(db).get_payout(payout_id, for_update=True)
                if payout is None:
                    raise PayoutNotFound("Payout not found", payout_id=str(payout_id))

                if payout.status == outcome:
                    logger.info(
                        "payout_callback_duplicate",
                        payout_id=str(payout_id),
                        status=payout.status,
                    )
                    return payout
                if payout.status != PayoutStatus.PROCESSING:
                    metrics.record_invalid_state("payout")
                    logger.error(
                        "payout_callback_invalid_state",
                        payout_id=str(payout_id),
                        status=payout.status,
                        outcome=outcome,
                    )
                    raise InvalidState(
                        f"Cannot move payout from {payout.status} to {outcome}",
                        current_status=payout.status,
                        payout_id=str(payout_id),
                    )

                payout.status = outcome
                if external_id and payout.external_payout_id is None:
                    payout.external_payout_id = external_id
                if outcome == PayoutStatus.COMPLETED:
                    payout.completed_at = _utcnow()
                else:
                    payout.failure_reason = failure_reason or "disbursement_failed"
                await db.commit()

        metrics.record_payout(outcome)
        logger.info(
            "payout_finished",
            payout_id=str(payout_id),
            seller_id=payout.seller_id,
            status=outcome,
            failure_reason=payout.failure_reason,
        )
        return payout

    # ------------------------------------------------------------------
    # Scheduled dispatch
    # ------------------------------------------------------------------

    async def dispatch_due_payouts(
        self, hold_seconds: int, batch_size: int, retry_after_seconds: int = 300
    ) -> Dict[str, int]:
        """
        Disburse pending payouts older than the hold period, then re-send
        unconfirmed ones older than ``retry_after_seconds``.

        A payout cancelled between selection and dispatch is skipped, and so
        is one whose seller lock is busy. One payout's error never stops the
        rest of the batch.

        Returns:
            Counts of dispatched, failed, unconfirmed and skipped payouts
        """
        now = _utcnow()
        async with self.session_factory() as db:
            repo = SettlementRepository(db)
            due = await repo.due_payout_ids(now - timedelta(seconds=hold_seconds), batch_size)
            unconfirmed = await repo.unconfirmed_payout_ids(
                processed_before=now - timedelta(seconds=retry_after_seconds),
                processed_after=now - RETRY_WINDOW,
                limit=batch_size,
            )

        metrics.record_dispatch_batch(len(due))
        counts = {"dispatched": 0, "failed": 0, "unconfirmed": 0, "skipped": 0}
        for payout_id in due:
            await self._dispatch_one(self.initiate_disbursement, payout_id, counts)
        for payout_id in unconfirmed:
            await self._dispatch_one(self.retry_disbursement, payout_id, counts)

        if due or unconfirmed:
            logger.info("payout_dispatch_batch_complete", **counts)
        return counts

    async def _dispatch_one(
        self,
        action: Callable[[uuid.UUID], Awaitable[Payout]],
        payout_id: uuid.UUID,
        counts: Dict[str, int],
    ) -> None:
        try:
            await action(payout_id)
            counts["dispatched"] += 1
        except PaymentGatewayError as e:
            if e.error_type == GatewayErrorType.PERMANENT:
                counts["failed"] += 1
            else:
                counts["unconfirmed"] += 1
        except (InvalidState, PayoutNotFound, LockTimeout) as e:
            logger.info("payout_dispatch_skipped", payout_id=str(payout_id), reason=e.message)
            counts["skipped"] += 1
