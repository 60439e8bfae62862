"""
Settlement of processor notifications into Transaction records.

Implements:
- Signature verification before anything is read from the payload
- Event routing by type through a handler table
- Exactly-once settlement: only a pending Transaction can complete, and
  completion runs under the session and seller critical sections
- Audit trail of every verified notification in webhook_events
- Disbursement outcomes of seller payouts (payout.paid, payout.failed)

A duplicate or malformed-but-verified notification is acknowledged as
success so the processor stops redelivering it. InvalidState (for example a
refund that arrives before its completion) propagates so the processor
retries later.
"""
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..database.models import PayoutStatus, SellerAccount, Transaction, TransactionStatus
from ..database.repository import SettlementRepository
from ..integrations.base import NotificationEvent, PaymentGateway
from ..monitoring.metrics import metrics
from . import checkout_builder as meta
from .errors import (
    DuplicateNotification,
    InvalidSignature,
    InvalidState,
    MalformedNotification,
    SellerNotFound,
    SettlementError,
    TransactionNotFound,
)
from .level_tracker import apply_level
from .locks import SellerLockManager, event_key, seller_key, session_key
from .payout_manager import PayoutRequestManager

logger = structlog.get_logger(__name__)


class NotificationStatus:
    PROCESSED = "processed"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"
    MALFORMED = "malformed"
    FAILED = "failed"


@dataclass(frozen=True)
class NotificationResult:
    status: str
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    transaction_id: Optional[str] = None
    message: Optional[str] = None


@dataclass(frozen=True)
class SettledSplit:
    platform_fee: int
    affiliate_commission: int
    seller_net: int


Handler = Callable[[NotificationEvent], Awaitable[NotificationResult]]

PAID_STATUSES = frozenset({"paid", "no_payment_required"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_int(metadata: Mapping[str, Any], key: str) -> int:
    value = metadata.get(key)
    if isinstance(value, bool):
        raise ValueError(key)
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            raise ValueError(key)
    raise ValueError(key)


def settled_split_from_metadata(
    metadata: Optional[Mapping[str, Any]],
    transaction: Transaction,
    session_id: str,
) -> SettledSplit:
    """
    Read and check the split captured in checkout metadata.

    Raises:
        MalformedNotification: If a value is missing or not an integer, the
            split does not add up to the recorded gross, the commission exceeds
            the fee, or the metadata belongs to another transaction
    """
    if not isinstance(metadata, Mapping):
        raise MalformedNotification("Session metadata missing", session_id=session_id)

    try:
        platform_fee = _parse_int(metadata, meta.META_PLATFORM_FEE)
        affiliate_commission = _parse_int(metadata, meta.META_AFFILIATE_COMMISSION)
        seller_net = (
            _parse_int(metadata, meta.META_SELLER_NET)
            if metadata.get(meta.META_SELLER_NET) not in (None, "")
            else transaction.gross_amount - platform_fee
        )
    except ValueError as e:
        raise MalformedNotification(
            "Split metadata is not an integer", session_id=session_id, field=str(e)
        )

    gross_amount = transaction.gross_amount
    if metadata.get(meta.META_GROSS_AMOUNT) not in (None, ""):
        try:
            gross_amount = _parse_int(metadata, meta.META_GROSS_AMOUNT)
        except ValueError:
            raise MalformedNotification(
                "Split metadata is not an integer",
                session_id=session_id,
                field=meta.META_GROSS_AMOUNT,
            )

    transaction_ref = metadata.get(meta.META_TRANSACTION_ID)
    if transaction_ref and str(transaction_ref) != str(transaction.id):
        raise MalformedNotification(
            "Metadata belongs to another transaction",
            session_id=session_id,
            metadata_transaction_id=str(transaction_ref),
        )
    if gross_amount != transaction.gross_amount:
        raise MalformedNotification(
            "Metadata gross amount does not match transaction",
            session_id=session_id,
            metadata_gross=gross_amount,
            recorded_gross=transaction.gross_amount,
        )
    if min(platform_fee, affiliate_commission, seller_net) < 0:
        raise MalformedNotification("Negative split value", session_id=session_id)
    if platform_fee + seller_net != gross_amount:
        raise MalformedNotification(
            "Split does not add up to gross amount",
            session_id=session_id,
            platform_fee=platform_fee,
            seller_net=seller_net,
            gross_amount=gross_amount,
        )
    if affiliate_commission > platform_fee:
        raise MalformedNotification(
            "Affiliate commission exceeds platform fee",
            session_id=session_id,
            affiliate_commission=affiliate_commission,
            platform_fee=platform_fee,
        )

    return SettledSplit(
        platform_fee=platform_fee,
        affiliate_commission=affiliate_commission,
        seller_net=seller_net,
    )


class SettlementReconciler:
    """
    Applies verified processor notifications to transactions and sellers.

    Processor payout events are routed to the payout manager when one is
    given, which settles the disbursement of a processing payout.

    Handlers for additional event types can be added with register_handler.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        lock_manager: SellerLockManager,
        affiliate_clearing_days: int = 7,
        payout_manager: Optional[PayoutRequestManager] = None,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.lock_manager = lock_manager
        self.affiliate_clearing_days = affiliate_clearing_days
        self.payout_manager = payout_manager
        self.event_handlers: Dict[str, Handler] = {
            "checkout.session.completed": self._handle_session_completed,
            "checkout.session.async_payment_succeeded": self._handle_async_payment_succeeded,
            "checkout.session.async_payment_failed": self._handle_session_failed,
            "checkout.session.expired": self._handle_session_failed,
            "charge.refunded": self._handle_charge_refunded,
            "account.updated": self._handle_account_updated,
        }
        if payout_manager is not None:
            self.event_handlers["payout.paid"] = self._handle_payout_outcome
            self.event_handlers["payout.failed"] = self._handle_payout_outcome

    def register_handler(self, event_type: str, handler: Handler) -> None:
        self.event_handlers[event_type] = handler
        logger.info("webhook_handler_registered", event_type=event_type)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def handle_notification(self, raw_payload: bytes, signature: str) -> NotificationResult:
        """
        Verify, record and apply one notification.

        Args:
            raw_payload: Request body exactly as received
            signature: Stripe-Signature header value

        Returns:
            NotificationResult: processed, ignored, duplicate or malformed

        Raises:
            InvalidSignature: Nothing is read or changed
            InvalidState: Illegal transition; the processor should retry
            TransactionNotFound: Refund for a payment not yet settled here
            LockTimeout: Critical section busy
        """
        start = time.monotonic()
        try:
            event = self.gateway.verify_and_parse_notification(raw_payload, signature)
        except InvalidSignature:
            metrics.record_signature_failure()
            raise
        except MalformedNotification as e:
            logger.warning("webhook_malformed", error=e.message, **e.details)
            metrics.record_webhook_event("unknown", NotificationStatus.MALFORMED, time.monotonic() - start)
            return NotificationResult(status=NotificationStatus.MALFORMED, message=e.message)

        log = logger.bind(event_id=event.id, event_type=event.type)

        async with self.lock_manager.hold(event_key(event.id)):
            async with self.session_factory() as db:
                repo = SettlementRepository(db)
                existing = await repo.get_webhook_event(event.id)
                if existing is not None and existing.status == NotificationStatus.PROCESSED:
                    existing.delivery_count += 1
                    await db.commit()
                    log.info("webhook_event_already_processed")
                    metrics.record_webhook_event(
                        event.type, NotificationStatus.DUPLICATE, time.monotonic() - start
                    )
                    return NotificationResult(
                        status=NotificationStatus.DUPLICATE,
                        event_id=event.id,
                        event_type=event.type,
                        message="Event already processed",
                    )
                await repo.record_webhook_event(
                    event.id, event.type, "processing", payload=event.payload
                )
                await db.commit()

            handler = self.event_handlers.get(event.type)
            if handler is None:
                log.debug("webhook_event_ignored")
                result = NotificationResult(
                    status=NotificationStatus.IGNORED, event_id=event.id, event_type=event.type
                )
            else:
                log.info("processing_webhook_event")
                try:
                    result = await handler(event)
                except DuplicateNotification as e:
                    log.info("webhook_duplicate_notification", reason=e.message, **e.details)
                    result = NotificationResult(
                        status=NotificationStatus.DUPLICATE,
                        event_id=event.id,
                        event_type=event.type,
                        message=e.message,
                    )
                except MalformedNotification as e:
                    log.warning("webhook_malformed", error=e.message, **e.details)
                    result = NotificationResult(
                        status=NotificationStatus.MALFORMED,
                        event_id=event.id,
                        event_type=event.type,
                        message=e.message,
                    )
                except InvalidState as e:
                    log.error("settlement_invalid_state", error=e.message, **e.details)
                    metrics.record_invalid_state("transaction")
                    await self._finish_event(event, NotificationStatus.FAILED, e.message)
                    metrics.record_webhook_event(
                        event.type, NotificationStatus.FAILED, time.monotonic() - start
                    )
                    raise
                except SettlementError as e:
                    log.warning("webhook_processing_rejected", error=e.message, **e.details)
                    await self._finish_event(event, NotificationStatus.FAILED, e.message)
                    metrics.record_webhook_event(
                        event.type, NotificationStatus.FAILED, time.monotonic() - start
                    )
                    raise
                except Exception as e:
                    log.error("webhook_processing_failed", error=str(e), exc_info=True)
                    await self._finish_event(event, NotificationStatus.FAILED, str(e))
                    metrics.record_webhook_event(
                        event.type, NotificationStatus.FAILED, time.monotonic() - start
                    )
                    raise

            await self._finish_event(event, result.status, result.message)

        metrics.record_webhook_event(event.type, result.status, time.monotonic() - start)
        return result

    async def _finish_event(
        self, event: NotificationEvent, status: str, message: Optional[str] = None
    ) -> None:
        async with self.session_factory() as db:
            repo = SettlementRepository(db)
            record = await repo.get_webhook_event(event.id)
            if record is None:
                record = await repo.record_webhook_event(event.id, event.type, status)
            record.status = status
            record.error_message = message if status != NotificationStatus.PROCESSED else None
            record.processed_at = _utcnow()
            await db.commit()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load_session_transaction(self, session_id: str) -> Transaction:
        """Pending transaction for a session, or DuplicateNotification."""
        async with self.session_factory() as db:
            transaction = await SettlementRepository(db).get_transaction_by_session(session_id)
        if transaction is None:
            raise DuplicateNotification(
                "No transaction for session", session_id=session_id
            )
        if transaction.status != TransactionStatus.PENDING:
            raise DuplicateNotification(
                "Transaction already settled",
                session_id=session_id,
                transaction_id=str(transaction.id),
                status=transaction.status,
            )
        return transaction

    async def _update_level(self, db: AsyncSession, seller: SellerAccount) -> None:
        """Raise the stored level if cumulative earnings crossed a threshold."""
        await db.flush()
        cumulative = await SettlementRepository(db).cumulative_earnings(seller.seller_id)
        new_level = apply_level(seller.level, cumulative)
        if new_level != seller.level:
            logger.info(
                "seller_level_changed",
                seller_id=seller.seller_id,
                previous_level=seller.level,
                new_level=new_level,
                cumulative_earnings=cumulative,
            )
            metrics.record_level_change(new_level)
            seller.level = new_level

    @staticmethod
    def _session_id(event: NotificationEvent) -> str:
        session_id = event.data_object.get("id")
        if not isinstance(session_id, str) or not session_id:
            raise MalformedNotification("Session object has no id", event_id=event.id)
        return session_id

    # ------------------------------------------------------------------
    # Checkout session events
    # ------------------------------------------------------------------

    async def _handle_session_completed(self, event: NotificationEvent) -> NotificationResult:
        payment_status = event.data_object.get("payment_status")
        session_id = self._session_id(event)

        if payment_status == "unpaid":
            # Delayed payment method; async_payment_succeeded/failed follows
            logger.info("checkout_session_awaiting_payment", session_id=session_id)
            return NotificationResult(
                status=NotificationStatus.IGNORED,
                event_id=event.id,
                event_type=event.type,
                message="Awaiting asynchronous payment",
            )
        if payment_status not in PAID_STATUSES:
            raise MalformedNotification(
                "Unknown payment status",
                session_id=session_id,
                payment_status=str(payment_status),
            )
        return await self._complete_session(event, session_id)

    async def _handle_async_payment_succeeded(self, event: NotificationEvent) -> NotificationResult:
        return await self._complete_session(event, self._session_id(event))

    async def _complete_session(self, event: NotificationEvent, session_id: str) -> NotificationResult:
        """
        pending -> completed, exactly once.

        Settlement values come from the metadata captured at checkout, not
        from the current fee table.
        """
        obj = event.data_object

        async with self.lock_manager.hold(session_key(session_id)):
            pending = await self._load_session_transaction(session_id)
            seller_id = pending.seller_id

            async with self.lock_manager.hold(seller_key(seller_id)):
                async with self.session_factory() as db:
                    repo = SettlementRepository(db)
                    transaction = await repo.get_transaction_by_session(session_id, for_update=True)
                    if transaction is None or transaction.status != TransactionStatus.PENDING:
                        raise DuplicateNotification(
                            "Transaction already settled", session_id=session_id
                        )

                    split = settled_split_from_metadata(obj.get("metadata"), transaction, session_id)
                    seller = await repo.get_or_create_seller(seller_id, for_update=True)

                    now = _utcnow()
                    transaction.platform_fee = split.platform_fee
                    transaction.affiliate_commission = split.affiliate_commission
                    transaction.seller_net_amount = split.seller_net
                    transaction.status = TransactionStatus.COMPLETED
                    transaction.settled_at = now
                    payment_intent = obj.get("payment_intent")
                    if isinstance(payment_intent, str) and payment_intent:
                        transaction.external_payment_intent_id = payment_intent
                    if split.affiliate_commission > 0:
                        transaction.affiliate_available_at = now + timedelta(
                            days=self.affiliate_clearing_days
                        )

                    await self._update_level(db, seller)
                    await db.commit()
                    transaction_id = str(transaction.id)

        metrics.record_settlement(TransactionStatus.COMPLETED, split.platform_fee)
        logger.info(
            "transaction_settled",
            transaction_id=transaction_id,
            session_id=session_id,
            seller_id=seller_id,
            platform_fee=split.platform_fee,
            affiliate_commission=split.affiliate_commission,
            seller_net=split.seller_net,
        )
        return NotificationResult(
            status=NotificationStatus.PROCESSED,
            event_id=event.id,
            event_type=event.type,
            transaction_id=transaction_id,
        )

    async def _handle_session_failed(self, event: NotificationEvent) -> NotificationResult:
        """pending -> failed for expired sessions and failed delayed payments."""
        session_id = self._session_id(event)

        async with self.lock_manager.hold(session_key(session_id)):
            pending = await self._load_session_transaction(session_id)

            async with self.lock_manager.hold(seller_key(pending.seller_id)):
                async with self.session_factory() as db:
                    repo = SettlementRepository(db)
                    transaction = await repo.get_transaction_by_session(session_id, for_update=True)
                    if transaction is None or transaction.status != TransactionStatus.PENDING:
                        raise DuplicateNotification(
                            "Transaction already settled", session_id=session_id
                        )
                    transaction.status = TransactionStatus.FAILED
                    transaction.failure_reason = event.type
                    transaction.settled_at = _utcnow()
                    await db.commit()
                    transaction_id = str(transaction.id)

        metrics.record_settlement(TransactionStatus.FAILED)
        logger.info(
            "transaction_failed",
            transaction_id=transaction_id,
            session_id=session_id,
            reason=event.type,
        )
        return NotificationResult(
            status=NotificationStatus.PROCESSED,
            event_id=event.id,
            event_type=event.type,
            transaction_id=transaction_id,
        )

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    async def _handle_charge_refunded(self, event: NotificationEvent) -> NotificationResult:
        """
        completed -> refunded for fully refunded charges.

        The refunded sale drops out of the balance aggregate by status; the
        seller's level stays where it is.
        """
        obj = event.data_object
        payment_intent = obj.get("payment_intent")
        if not isinstance(payment_intent, str) or not payment_intent:
            raise MalformedNotification("Charge has no payment intent", event_id=event.id)

        if not obj.get("refunded"):
            logger.info(
                "partial_refund_ignored",
                payment_intent_id=payment_intent,
                amount_refunded=obj.get("amount_refunded"),
                amount=obj.get("amount"),
            )
            return NotificationResult(
                status=NotificationStatus.IGNORED,
                event_id=event.id,
                event_type=event.type,
                message="Partial refund",
            )

        async with self.session_factory() as db:
            found = await SettlementRepository(db).get_transaction_by_payment_intent(payment_intent)
        if found is None:
            logger.warning("refund_for_unknown_payment", payment_intent_id=payment_intent)
            raise TransactionNotFound(
                "No settled transaction for payment intent",
                payment_intent_id=payment_intent,
            )

        keys = [seller_key(found.seller_id)]
        if found.external_session_id:
            keys.insert(0, session_key(found.external_session_id))

        async with self.lock_manager.hold(*keys):
            async with self.session_factory() as db:
                repo = SettlementRepository(db)
                transaction = await repo.get_transaction_by_payment_intent(
                    payment_intent, for_update=True
                )
                if transaction is None:
                    raise TransactionNotFound(
                        "No settled transaction for payment intent",
                        payment_intent_id=payment_intent,
                    )
                if transaction.status == TransactionStatus.REFUNDED:
                    raise DuplicateNotification(
                        "Transaction already refunded", transaction_id=str(transaction.id)
                    )
                if transaction.status != TransactionStatus.COMPLETED:
                    raise InvalidState(
                        "Refund for a transaction that is not completed",
                        current_status=transaction.status,
                        transaction_id=str(transaction.id),
                    )

                transaction.status = TransactionStatus.REFUNDED
                seller = await repo.get_or_create_seller(transaction.seller_id, for_update=True)
                await self._update_level(db, seller)
                await db.commit()
                transaction_id = str(transaction.id)

        metrics.record_settlement(TransactionStatus.REFUNDED)
        logger.info(
            "transaction_refunded",
            transaction_id=transaction_id,
            payment_intent_id=payment_intent,
            seller_id=found.seller_id,
        )
        return NotificationResult(
            status=NotificationStatus.PROCESSED,
            event_id=event.id,
            event_type=event.type,
            transaction_id=transaction_id,
        )

    # ------------------------------------------------------------------
    # Connected accounts
    # ------------------------------------------------------------------

    async def _handle_account_updated(self, event: NotificationEvent) -> NotificationResult:
        obj = event.data_object
        account_id = obj.get("id")
        if not isinstance(account_id, str) or not account_id:
            raise MalformedNotification("Account object has no id", event_id=event.id)

        async with self.session_factory() as db:
            seller = await SettlementRepository(db).get_seller_by_external_account(account_id)
        if seller is None:
            logger.info("account_update_for_unknown_seller", account_id=account_id)
            return NotificationResult(
                status=NotificationStatus.IGNORED,
                event_id=event.id,
                event_type=event.type,
                message="Unknown account",
            )

        async with self.lock_manager.hold(seller_key(seller.seller_id)):
            async with self.session_factory() as db:
                seller = await SettlementRepository(db).get_seller(seller.seller_id, for_update=True)
                if seller is None:
                    raise SellerNotFound("Seller not found", account_id=account_id)
                seller.charges_enabled = bool(obj.get("charges_enabled"))
                seller.payouts_enabled = bool(obj.get("payouts_enabled"))
                seller.onboarding_complete = bool(obj.get("details_submitted"))
                await db.commit()

        logger.info(
            "seller_account_updated",
            seller_id=seller.seller_id,
            account_id=account_id,
            charges_enabled=seller.charges_enabled,
            payouts_enabled=seller.payouts_enabled,
        )
        return NotificationResult(
            status=NotificationStatus.PROCESSED,
            event_id=event.id,
            event_type=event.type,
        )

    # ------------------------------------------------------------------
    # Payouts
    # ------------------------------------------------------------------

    async def _handle_payout_outcome(self, event: NotificationEvent) -> NotificationResult:
        """processing -> completed | failed for payouts created by this service."""
        obj = event.data_object
        external_id = obj.get("id")
        if not isinstance(external_id, str) or not external_id:
            raise MalformedNotification("Payout object has no id", event_id=event.id)
        metadata = obj.get("metadata")
        payout_ref = metadata.get("payout_id") if isinstance(metadata, dict) else None

        payout = await self.payout_manager.find_disbursed_payout(external_id, payout_ref)
        if payout is None:
            # Automatic or dashboard payouts on the connected account
            logger.info("payout_event_for_unknown_payout", external_payout_id=external_id)
            return NotificationResult(
                status=NotificationStatus.IGNORED,
                event_id=event.id,
                event_type=event.type,
                message="Unknown payout",
            )

        if event.type == "payout.paid":
            outcome = PayoutStatus.COMPLETED
            failure_reason = None
        else:
            outcome = PayoutStatus.FAILED
            failure_reason = obj.get("failure_message") or obj.get("failure_code")

        await self.payout_manager.handle_disbursement_callback(
            payout.id, outcome, failure_reason=failure_reason, external_id=external_id
        )
        return NotificationResult(
            status=NotificationStatus.PROCESSED,
            event_id=event.id,
            event_type=event.type,
            message=f"Payout {payout.id} {outcome}",
        )
