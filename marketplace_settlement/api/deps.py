"""
FastAPI dependencies.

Services are built once in the application lifespan and kept on app.state;
routes receive them through these functions so tests can build an app with
fake collaborators.
"""
import hmac
from typing import Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..core.checkout_builder import CheckoutService
from ..core.errors import SettlementError
from ..core.locks import SellerLockManager
from ..core.payout_manager import PayoutRequestManager
from ..core.settlement_reconciler import SettlementReconciler
from ..monitoring.health import HealthCheck


class Unauthorized(SettlementError):
    error_code = "unauthorized"
    http_status = 401


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    return request.app.state.session_factory


def get_reconciler(request: Request) -> SettlementReconciler:
    return request.app.state.reconciler


def get_checkout_service(request: Request) -> CheckoutService:
    return request.app.state.checkout_service


def get_payout_manager(request: Request) -> PayoutRequestManager:
    return request.app.state.payout_manager


def get_health_check(request: Request) -> HealthCheck:
    return request.app.state.health_check


def require_admin_key(request: Request) -> None:
    """
    Check the admin API key header.

    Admin routes are open when no key is configured (development only).

    Raises:
        Unauthorized: If a key is configured and the header does not match
    """
    settings: Settings = request.app.state.settings
    expected: Optional[str] = settings.admin_api_key
    if not expected:
        return
    provided = request.headers.get(settings.api_key_header, "")
    if not hmac.compare_digest(provided.encode(), expected.encode()):
        raise Unauthorized("Invalid or missing API key")


def get_lock_manager(request: Request) -> SellerLockManager:
    return request.app.state.lock_manager
