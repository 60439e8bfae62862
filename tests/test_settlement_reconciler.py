"""
Tests for webhook settlement.

Events are signed with the test webhook secret and verified by the real
Stripe signature check.
"""
import json
import time

import pytest

from marketplace_settlement.core.errors import (
    DisbursementError,
    InvalidSignature,
    InvalidState,
    TransactionNotFound,
)
from marketplace_settlement.core.settlement_reconciler import (
    NotificationStatus,
    settled_split_from_metadata,
)
from marketplace_settlement.core.errors import MalformedNotification
from marketplace_settlement.database.models import PayoutStatus, Transaction, TransactionStatus
from marketplace_settlement.database.repository import SettlementRepository

from conftest import build_event, sign_payload


@pytest.mark.integration
class TestSessionCompleted:
    @pytest.mark.asyncio
    async def test_completion_settles_transaction(self, market: object) -> None:
        await market.add_seller("seller_1")
        checkout = await market.checkout("seller_1", 10000)

        result = await market.deliver(
            market.completion_event(checkout, payment_intent="pi_123", event_id="evt_1")
        )

        assert result.status == NotificationStatus.PROCESSED
        assert result.transaction_id == str(checkout.transaction_id)

        transaction = await market.transaction(checkout.transaction_id)
        assert transaction.status == TransactionStatus.COMPLETED
        assert transaction.platform_fee == 2900
        assert transaction.seller_net_amount == 7100
        assert transaction.external_payment_intent_id == "pi_123"
        assert transaction.settled_at is not None
        assert transaction.affiliate_available_at is None

        assert await market.balance("seller_1") == 7100
        event = await market.webhook_event("evt_1")
        assert event.status == NotificationStatus.PROCESSED
        assert event.event_type == "checkout.session.completed"

    @pytest.mark.asyncio
    async def test_replayed_event_credits_once(self, market: object) -> None:
        await market.add_seller("seller_1")
        checkout = await market.checkout("seller_1", 10000)
        event = market.completion_event(checkout, event_id="evt_replay")

        first = await market.deliver(event)
        second = await market.deliver(event)

        assert first.status == NotificationStatus.PROCESSED
        assert second.status == NotificationStatus.DUPLICATE
        assert await market.balance("seller_1") == 7100
        assert (await market.webhook_event("evt_replay")).delivery_count == 2

    @pytest.mark.asyncio
    async def test_second_completion_for_same_session_is_duplicate(self, market: object) -> None:
        await market.add_seller("seller_1")
        checkout = await market.checkout("seller_1", 10000)

        await market.deliver(market.completion_event(checkout))
        again = await market.deliver(
            market.completion_event(
                checkout, event_type="checkout.session.async_payment_succeeded"
            )
        )

        assert again.status == NotificationStatus.DUPLICATE
        assert await market.cumulative("seller_1") == 7100

    @pytest.mark.asyncio
    async def test_unknown_session_is_duplicate(self, market: object) -> None:
        event = build_event(
            "checkout.session.completed",
            {"id": "cs_unknown", "payment_status": "paid", "metadata": {}},
        )

        result = await market.deliver(event)

        assert result.status == NotificationStatus.DUPLICATE

    @pytest.mark.asyncio
    async def test_split_comes_from_checkout_metadata(self, market: object) -> None:
        await market.add_seller("seller_1", level=1)
        checkout = await market.checkout("seller_1", 10000)

        async with market.session_factory() as db:
            seller = await SettlementRepository(db).get_seller("seller_1")
            seller.level = 5
            await db.commit()

        await market.deliver(market.completion_event(checkout))

        transaction = await market.transaction(checkout.transaction_id)
        assert transaction.platform_fee == 2900
        assert transaction.seller_net_amount == 7100

    @pytest.mark.asyncio
    async def test_affiliate_commission_gets_clearing_date(self, market: object) -> None:
        await market.add_seller("seller_1")
        await market.add_affiliate_link("ANNA10", "prod_1", "promoter_1")
        checkout = await market.checkout(
            "seller_1", 10000, commission_percent=10, promoter_code="ANNA10"
        )

        await market.deliver(market.completion_event(checkout))

        transaction = await market.transaction(checkout.transaction_id)
        assert transaction.affiliate_commission == 1000
        assert transaction.seller_net_amount == 7100
        assert transaction.affiliate_available_at is not None

    @pytest.mark.asyncio
    async def test_settlement_promotes_seller(self, market: object) -> None:
        await market.add_seller("seller_1", level=1)

        # 15000 at 29% leaves 10650, past the level-2 threshold
        await market.sell("seller_1", 15000)

        assert (await market.seller("seller_1")).level == 2

    @pytest.mark.asyncio
    async def test_unpaid_session_waits_for_async_payment(self, market: object) -> None:
        await market.add_seller("seller_1")
        checkout = await market.checkout("seller_1", 10000)

        waiting = await market.deliver(
            market.completion_event(checkout, payment_status="unpaid")
        )
        assert waiting.status == NotificationStatus.IGNORED
        assert (await market.transaction(checkout.transaction_id)).status == TransactionStatus.PENDING

        paid = await market.deliver(
            market.completion_event(
                checkout, event_type="checkout.session.async_payment_succeeded"
            )
        )
        assert paid.status == NotificationStatus.PROCESSED
        assert await market.balance("seller_1") == 7100

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "event_type",
        ["checkout.session.expired", "checkout.session.async_payment_failed"],
    )
    async def test_failed_session_is_terminal(self, market: object, event_type: str) -> None:
        await market.add_seller("seller_1")
        checkout = await market.checkout("seller_1", 10000)

        failed = await market.deliver(market.completion_event(checkout, event_type=event_type))
        late = await market.deliver(market.completion_event(checkout))

        assert failed.status == NotificationStatus.PROCESSED
        assert late.status == NotificationStatus.DUPLICATE
        transaction = await market.transaction(checkout.transaction_id)
        assert transaction.status == TransactionStatus.FAILED
        assert transaction.failure_reason == event_type
        assert await market.balance("seller_1") == 0


@pytest.mark.integration
class TestVerification:
    @pytest.mark.asyncio
    async def test_wrong_secret_rejected_without_side_effects(self, market: object) -> None:
        await market.add_seller("seller_1")
        checkout = await market.checkout("seller_1", 10000)
        payload, _ = market.completion_event(checkout, event_id="evt_forged")
        forged = sign_payload(payload.decode(), secret="whsec_attacker")

        with pytest.raises(InvalidSignature):
            await market.reconciler.handle_notification(payload, forged)

        assert (await market.transaction(checkout.transaction_id)).status == TransactionStatus.PENDING
        assert await market.webhook_event("evt_forged") is None

    @pytest.mark.asyncio
    async def test_tampered_payload_rejected(self, market: object) -> None:
        payload, signature = build_event("checkout.session.completed", {"id": "cs_1"})
        tampered = payload.replace(b"cs_1", b"cs_2")

        with pytest.raises(InvalidSignature):
            await market.reconciler.handle_notification(tampered, signature)

    @pytest.mark.asyncio
    async def test_stale_timestamp_rejected(self, market: object) -> None:
        payload = json.dumps({"id": "evt_old", "type": "ping", "data": {"object": {}}})
        signature = sign_payload(payload, timestamp=int(time.time()) - 3600)

        with pytest.raises(InvalidSignature):
            await market.reconciler.handle_notification(payload.encode(), signature)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("signature", ["", "garbage", "t=1,v1=00"])
    async def test_bad_header_rejected(self, market: object, signature: str) -> None:
        with pytest.raises(InvalidSignature):
            await market.reconciler.handle_notification(b'{"id": "evt_1"}', signature)

    @pytest.mark.asyncio
    async def test_verified_non_json_is_malformed(self, market: object) -> None:
        payload = "this is not json"

        result = await market.reconciler.handle_notification(
            payload.encode(), sign_payload(payload)
        )

        assert result.status == NotificationStatus.MALFORMED

    @pytest.mark.asyncio
    async def test_verified_event_without_object_is_malformed(self, market: object) -> None:
        payload = json.dumps({"id": "evt_1", "type": "checkout.session.completed", "data": {}})

        result = await market.reconciler.handle_notification(
            payload.encode(), sign_payload(payload)
        )

        assert result.status == NotificationStatus.MALFORMED

    @pytest.mark.asyncio
    async def test_unhandled_event_type_ignored(self, market: object) -> None:
        result = await market.deliver(
            build_event("customer.created", {"id": "cus_1"}, event_id="evt_customer")
        )

        assert result.status == NotificationStatus.IGNORED
        assert (await market.webhook_event("evt_customer")).status == NotificationStatus.IGNORED


@pytest.mark.integration
class TestMalformedMetadata:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "changes",
        [
            {"platform_fee": "100"},
            {"platform_fee": "abc"},
            {"affiliate_commission": "3000"},
            {"platform_fee": "-2900", "seller_net": "12900"},
            {"gross_amount": "20000"},
            {"transaction_id": "00000000-0000-0000-0000-000000000000"},
        ],
        ids=["does-not-add-up", "not-int", "commission-over-fee", "negative", "gross", "other-txn"],
    )
    async def test_bad_metadata_leaves_transaction_pending(
        self, market: object, changes: dict
    ) -> None:
        await market.add_seller("seller_1")
        checkout = await market.checkout("seller_1", 10000)
        metadata = dict(market.gateway.request_for(checkout.transaction_id).metadata)
        metadata.update(changes)

        result = await market.deliver(
            market.completion_event(checkout, metadata=metadata, event_id="evt_bad")
        )

        assert result.status == NotificationStatus.MALFORMED
        assert (await market.transaction(checkout.transaction_id)).status == TransactionStatus.PENDING
        assert (await market.webhook_event("evt_bad")).status == NotificationStatus.MALFORMED

    @pytest.mark.asyncio
    async def test_bad_notification_does_not_block_the_next(self, market: object) -> None:
        await market.add_seller("seller_1")
        checkout = await market.checkout("seller_1", 10000)

        bad = await market.deliver(
            market.completion_event(checkout, metadata={"platform_fee": "x"})
        )
        good = await market.deliver(market.completion_event(checkout))

        assert bad.status == NotificationStatus.MALFORMED
        assert good.status == NotificationStatus.PROCESSED

    @pytest.mark.asyncio
    async def test_unknown_payment_status_is_malformed(self, market: object) -> None:
        await market.add_seller("seller_1")
        checkout = await market.checkout("seller_1", 10000)

        result = await market.deliver(
            market.completion_event(checkout, payment_status="mystery")
        )

        assert result.status == NotificationStatus.MALFORMED


@pytest.mark.unit
def test_seller_net_defaults_to_gross_minus_fee() -> None:
    transaction = Transaction(gross_amount=10000)

    split = settled_split_from_metadata(
        {"platform_fee": "2900", "affiliate_commission": "0"}, transaction, "cs_1"
    )

    assert split.seller_net == 7100


@pytest.mark.unit
def test_missing_metadata_is_malformed() -> None:
    with pytest.raises(MalformedNotification):
        settled_split_from_metadata(None, Transaction(gross_amount=10000), "cs_1")


@pytest.mark.integration
class TestRefunds:
    @pytest.mark.asyncio
    async def test_refund_removes_sale_from_balance(self, market: object) -> None:
        await market.add_seller("seller_1")
        checkout = await market.checkout("seller_1", 10000)
        await market.deliver(market.completion_event(checkout, payment_intent="pi_refund"))

        result = await market.deliver(market.refund_event("pi_refund"))

        assert result.status == NotificationStatus.PROCESSED
        assert (await market.transaction(checkout.transaction_id)).status == TransactionStatus.REFUNDED
        assert await market.balance("seller_1") == 0
        assert await market.cumulative("seller_1") == 0

    @pytest.mark.asyncio
    async def test_refund_never_demotes(self, market: object) -> None:
        await market.add_seller("seller_1")
        checkout = await market.checkout("seller_1", 20000)
        await market.deliver(market.completion_event(checkout, payment_intent="pi_big"))
        assert (await market.seller("seller_1")).level == 2

        await market.deliver(market.refund_event("pi_big"))

        assert await market.cumulative("seller_1") == 0
        assert (await market.seller("seller_1")).level == 2

    @pytest.mark.asyncio
    async def test_second_refund_is_duplicate(self, market: object) -> None:
        await market.add_seller("seller_1")
        checkout = await market.checkout("seller_1", 10000)
        await market.deliver(market.completion_event(checkout, payment_intent="pi_twice"))

        await market.deliver(market.refund_event("pi_twice"))
        again = await market.deliver(market.refund_event("pi_twice"))

        assert again.status == NotificationStatus.DUPLICATE

    @pytest.mark.asyncio
    async def test_partial_refund_ignored(self, market: object) -> None:
        await market.add_seller("seller_1")
        checkout = await market.checkout("seller_1", 10000)
        await market.deliver(market.completion_event(checkout, payment_intent="pi_part"))

        result = await market.deliver(market.refund_event("pi_part", refunded=False))

        assert result.status == NotificationStatus.IGNORED
        assert (await market.transaction(checkout.transaction_id)).status == TransactionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_refund_for_unknown_payment_raises(self, market: object) -> None:
        with pytest.raises(TransactionNotFound):
            await market.deliver(market.refund_event("pi_nowhere", event_id="evt_lost"))

        assert (await market.webhook_event("evt_lost")).status == NotificationStatus.FAILED

    @pytest.mark.asyncio
    async def test_refund_before_completion_is_retried(self, market: object) -> None:
        await market.add_seller("seller_1")
        checkout = await market.checkout("seller_1", 10000)
        async with market.session_factory() as db:
            transaction = await SettlementRepository(db).get_transaction_by_session(
                checkout.session_id
            )
            transaction.external_payment_intent_id = "pi_early"
            await db.commit()
        refund = market.refund_event("pi_early", event_id="evt_early_refund")

        with pytest.raises(InvalidState):
            await market.deliver(refund)
        assert (await market.webhook_event("evt_early_refund")).status == NotificationStatus.FAILED

        await market.deliver(market.completion_event(checkout, payment_intent="pi_early"))
        retried = await market.deliver(refund)

        assert retried.status == NotificationStatus.PROCESSED
        assert (await market.transaction(checkout.transaction_id)).status == TransactionStatus.REFUNDED


@pytest.mark.integration
class TestAccountUpdated:
    @pytest.mark.asyncio
    async def test_account_flags_synced(self, market: object) -> None:
        await market.add_seller(
            "seller_1", account_id="acct_sync", charges_enabled=False, payouts_enabled=False
        )

        result = await market.deliver(
            build_event(
                "account.updated",
                {
                    "id": "acct_sync",
                    "object": "account",
                    "charges_enabled": True,
                    "payouts_enabled": True,
                    "details_submitted": True,
                },
            )
        )

        assert result.status == NotificationStatus.PROCESSED
        seller = await market.seller("seller_1")
        assert seller.charges_enabled is True
        assert seller.payouts_enabled is True
        assert seller.onboarding_complete is True

    @pytest.mark.asyncio
    async def test_unknown_account_ignored(self, market: object) -> None:
        result = await market.deliver(
            build_event("account.updated", {"id": "acct_stranger", "charges_enabled": True})
        )

        assert result.status == NotificationStatus.IGNORED


@pytest.mark.integration
class TestPayoutEvents:
    @pytest.mark.asyncio
    async def test_payout_paid_completes_payout(self, market: object) -> None:
        await market.add_seller("seller_1")
        await market.sell("seller_1", 10000)
        payout = await market.payouts.request_payout("seller_1", 5000)
        await market.payouts.initiate_disbursement(payout.id)

        result = await market.deliver(market.payout_event("po_test_1", payout.id))

        assert result.status == NotificationStatus.PROCESSED
        stored = await market.payouts.get_payout(payout.id)
        assert stored.status == PayoutStatus.COMPLETED
        assert stored.completed_at is not None
        assert await market.balance("seller_1") == 2100

    @pytest.mark.asyncio
    async def test_payout_failed_releases_reservation(self, market: object) -> None:
        await market.add_seller("seller_1")
        await market.sell("seller_1", 10000)
        payout = await market.payouts.request_payout("seller_1", 5000)
        await market.payouts.initiate_disbursement(payout.id)

        result = await market.deliver(
            market.payout_event(
                "po_test_1",
                event_type="payout.failed",
                failure_message="The bank account has been closed",
            )
        )

        assert result.status == NotificationStatus.PROCESSED
        stored = await market.payouts.get_payout(payout.id)
        assert stored.status == PayoutStatus.FAILED
        assert stored.failure_reason == "The bank account has been closed"
        assert await market.balance("seller_1") == 7100

    @pytest.mark.asyncio
    async def test_settles_unconfirmed_payout_by_metadata(self, market: object) -> None:
        await market.add_seller("seller_1")
        await market.sell("seller_1", 10000)
        payout = await market.payouts.request_payout("seller_1", 5000)
        market.channel.fail_with = DisbursementError("Timed out")
        with pytest.raises(DisbursementError):
            await market.payouts.initiate_disbursement(payout.id)

        result = await market.deliver(market.payout_event("po_live_9", payout.id))

        assert result.status == NotificationStatus.PROCESSED
        stored = await market.payouts.get_payout(payout.id)
        assert stored.status == PayoutStatus.COMPLETED
        assert stored.external_payout_id == "po_live_9"

    @pytest.mark.asyncio
    async def test_redelivered_payout_event_is_duplicate(self, market: object) -> None:
        await market.add_seller("seller_1")
        await market.sell("seller_1", 10000)
        payout = await market.payouts.request_payout("seller_1", 5000)
        await market.payouts.initiate_disbursement(payout.id)
        event = market.payout_event("po_test_1", payout.id)

        await market.deliver(event)
        repeated = await market.deliver(event)

        assert repeated.status == NotificationStatus.DUPLICATE
        assert (await market.payouts.get_payout(payout.id)).status == PayoutStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unknown_payout_ignored(self, market: object) -> None:
        result = await market.deliver(market.payout_event("po_automatic_1"))

        assert result.status == NotificationStatus.IGNORED

    @pytest.mark.asyncio
    async def test_payout_bound_to_other_external_id_ignored(self, market: object) -> None:
        await market.add_seller("seller_1")
        await market.sell("seller_1", 10000)
        payout = await market.payouts.request_payout("seller_1", 5000)
        await market.payouts.initiate_disbursement(payout.id)

        result = await market.deliver(market.payout_event("po_other", payout.id))

        assert result.status == NotificationStatus.IGNORED
        assert (await market.payouts.get_payout(payout.id)).status == PayoutStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_payout_event_for_pending_payout_is_retried(self, market: object) -> None:
        await market.add_seller("seller_1")
        await market.sell("seller_1", 10000)
        payout = await market.payouts.request_payout("seller_1", 5000)

        with pytest.raises(InvalidState):
            await market.deliver(market.payout_event("po_test_1", payout.id))
