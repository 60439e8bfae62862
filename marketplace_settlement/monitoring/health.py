"""
Health checks for readiness/liveness probes.

Readiness fails when a dependency the settlement flow cannot run without is
down: the database, Redis when it backs the seller locks, or a missing webhook
signing secret. The payout queue and failed webhook counts are reported for
operators but never fail readiness.
"""
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..database.models import PayoutStatus
from ..database.repository import SettlementRepository

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when a required dependency is unavailable."""


class HealthCheck:
    """Dependency and backlog checks for the settlement service."""

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        redis_client: Optional[aioredis.Redis] = None,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.redis_client = redis_client

    async def check_database(self) -> Dict[str, Any]:
        """
        Raises:
            HealthCheckError: If the database does not answer
        """
        try:
            async with self.session_factory() as db:
                await db.execute(text("SELECT 1"))
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")
        return {"status": "healthy", "service": "database"}

    async def check_lock_backend(self) -> Dict[str, Any]:
        """
        Seller locks are in-process unless the redis backend is selected.

        Raises:
            HealthCheckError: If the redis backend is selected and Redis is down
        """
        if self.settings.lock_backend != "redis":
            return {"status": "healthy", "service": "locks", "backend": "memory"}
        if self.redis_client is None:
            raise HealthCheckError("Redis lock backend selected but no client configured")
        try:
            await self.redis_client.ping()
        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {str(e)}")
        return {"status": "healthy", "service": "locks", "backend": "redis"}

    def check_stripe_config(self) -> Dict[str, Any]:
        """
        Raises:
            HealthCheckError: If webhooks cannot be verified
        """
        if not self.settings.stripe_webhook_secret:
            raise HealthCheckError("Stripe webhook signing secret is not configured")
        return {
            "status": "healthy",
            "service": "stripe",
            "mode": "test" if self.settings.is_test_mode else "live",
        }

    async def settlement_backlog(self) -> Dict[str, Any]:
        """Pending payouts and webhook events that failed to apply."""
        async with self.session_factory() as db:
            repo = SettlementRepository(db)
            pending_payouts = await repo.count_payouts(PayoutStatus.PENDING)
            failed_events = await repo.count_webhook_events("failed")
        return {
            "status": "healthy",
            "service": "settlement",
            "dispatch_mode": self.settings.payout_dispatch_mode,
            "pending_payouts": pending_payouts,
            "failed_webhook_events": failed_events,
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall status plus one entry per check
        """
        checks: Dict[str, Any] = {}
        all_healthy = True

        try:
            checks["database"] = await self.check_database()
        except HealthCheckError as e:
            checks["database"] = {"status": "unhealthy", "service": "database", "error": str(e)}
            all_healthy = False

        try:
            checks["locks"] = await self.check_lock_backend()
        except HealthCheckError as e:
            checks["locks"] = {"status": "unhealthy", "service": "locks", "error": str(e)}
            all_healthy = False

        try:
            checks["stripe"] = self.check_stripe_config()
        except HealthCheckError as e:
            checks["stripe"] = {"status": "unhealthy", "service": "stripe", "error": str(e)}
            all_healthy = False

        if checks["database"]["status"] == "healthy":
            checks["settlement"] = await self.settlement_backlog()

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """Liveness probe: the process is up. No dependency checks."""
        return {"status": "alive", "message": "Settlement service is running"}

    async def readiness(self) -> Dict[str, Any]:
        return await self.check_all()
