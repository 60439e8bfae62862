"""
Payout dispatcher background worker.

Polls for pending payouts older than the hold period and disburses them, and
re-sends processing payouts whose disbursement was never confirmed. Pending
payouts stay cancellable by the seller until the dispatcher picks them up.
In immediate mode it only picks up payouts the API could not hand over.
"""
import asyncio
import signal
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import structlog

from ..config import Settings, get_settings
from ..core.locks import SellerLockManager
from ..core.payout_manager import PayoutFeeSchedule, PayoutRequestManager
from ..database.connection import create_engine, create_session_factory
from ..integrations.stripe_client import StripeClient
from ..monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


class PayoutDispatcher:
    """Polling loop around PayoutRequestManager.dispatch_due_payouts."""

    def __init__(
        self,
        payout_manager: PayoutRequestManager,
        hold_seconds: int = 3600,
        batch_size: int = 50,
        poll_interval_seconds: float = 60.0,
        retry_after_seconds: int = 300,
    ):
        self.payout_manager = payout_manager
        self.hold_seconds = hold_seconds
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self.retry_after_seconds = retry_after_seconds
        self._running = False
        self._wakeup = asyncio.Event()

        logger.info(
            "payout_dispatcher_initialized",
            hold_seconds=hold_seconds,
            batch_size=batch_size,
            poll_interval_seconds=poll_interval_seconds,
        )

    async def run_once(self) -> Dict[str, int]:
        return await self.payout_manager.dispatch_due_payouts(
            hold_seconds=self.hold_seconds,
            batch_size=self.batch_size,
            retry_after_seconds=self.retry_after_seconds,
        )

    async def start(self) -> None:
        """Run until stop() is called. A failed cycle is logged and retried."""
        self._running = True
        logger.info("payout_dispatcher_started")

        try:
            while self._running:
                try:
                    counts = await self.run_once()
                    # A full batch means more payouts are probably due
                    busy = sum(counts.values()) >= self.batch_size
                except Exception as e:
                    logger.error("payout_dispatcher_error", error=str(e), exc_info=True)
                    busy = False

                if self._running and not busy:
                    try:
                        await asyncio.wait_for(
                            self._wakeup.wait(), timeout=self.poll_interval_seconds
                        )
                    except asyncio.TimeoutError:
                        pass
                    self._wakeup.clear()
        finally:
            logger.info("payout_dispatcher_stopped")

    def stop(self) -> None:
        """Stop after the current cycle."""
        self._running = False
        self._wakeup.set()
        logger.info("payout_dispatcher_stop_requested")


async def start_payout_dispatcher(settings: Optional[Settings] = None) -> None:
    """
    Start the payout dispatcher worker.

    Runs continuously until SIGINT/SIGTERM.
    """
    settings = settings or get_settings()
    setup_logging(settings)

    logger.info("payout_dispatcher_worker_starting")

    engine = create_engine(settings)
    redis_client: Optional[aioredis.Redis] = None
    if settings.lock_backend == "redis":
        redis_client = aioredis.from_url(settings.redis_url, decode_responses=True)
    else:
        logger.warning(
            "payout_dispatcher_memory_locks",
            message="memory locks do not serialize against API workers; use lock_backend=redis",
        )

    stripe_client = StripeClient(settings)
    payout_manager = PayoutRequestManager(
        create_session_factory(engine),
        SellerLockManager(
            backend=settings.lock_backend,
            redis_client=redis_client,
            ttl_seconds=settings.lock_ttl_seconds,
            acquire_timeout=settings.lock_acquire_timeout_seconds,
        ),
        PayoutFeeSchedule.from_settings(settings),
        disbursement_channel=stripe_client,
        dispatch_mode="scheduled",
        currency=settings.currency,
    )
    dispatcher = PayoutDispatcher(
        payout_manager,
        hold_seconds=settings.payout_hold_seconds,
        batch_size=settings.payout_dispatch_batch_size,
        poll_interval_seconds=settings.payout_dispatch_interval_seconds,
        retry_after_seconds=settings.payout_retry_after_seconds,
    )

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("payout_dispatcher_shutdown_signal_received", signal=sig)
        dispatcher.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await dispatcher.start()
    except Exception as e:
        logger.error("payout_dispatcher_worker_error", error=str(e))
        raise
    finally:
        if redis_client is not None:
            await redis_client.aclose()
        await engine.dispose()


def main() -> None:
    """Console entry point."""
    asyncio.run(start_payout_dispatcher())


if __name__ == "__main__":
    main()
