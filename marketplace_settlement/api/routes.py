"""
API routes for checkout, settlement webhooks, payouts and seller balances.

Domain errors are raised as SettlementError and rendered by the exception
handler in main.py; routes only translate between schemas and services.
"""
import uuid
from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends, Header, Query, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..core.checkout_builder import BuyerRef, CheckoutService, ProductRef
from ..core.errors import SellerNotFound, SettlementError
from ..core.fee_tiers import LEVELS
from ..core.level_tracker import level_progress
from ..core.locks import SellerLockManager, seller_key
from ..core.payout_manager import PayoutRequestManager
from ..core.settlement_reconciler import SettlementReconciler
from ..database.models import AffiliateLink
from ..database.repository import SettlementRepository
from ..monitoring.health import HealthCheck
from .deps import (
    get_app_settings,
    get_checkout_service,
    get_health_check,
    get_lock_manager,
    get_payout_manager,
    get_reconciler,
    get_session_factory,
    require_admin_key,
)
from .schemas import (
    AffiliateLinkResponse,
    AffiliateLinkUpdate,
    BalanceResponse,
    CancelPayoutRequest,
    CheckoutResponse,
    CreateCheckoutRequest,
    CreatePayoutRequest,
    DisbursementCallbackRequest,
    HealthCheckResponse,
    LevelSchema,
    PayoutConfigResponse,
    PayoutListResponse,
    PayoutResponse,
    SellerAccountResponse,
    SellerAccountUpdate,
    TransactionListResponse,
    TransactionResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
checkout_router = APIRouter(prefix="/checkout", tags=["checkout"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
payout_router = APIRouter(prefix="/payouts", tags=["payouts"])
seller_router = APIRouter(prefix="/sellers", tags=["sellers"])
admin_router = APIRouter(
    prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin_key)]
)
monitoring_router = APIRouter(tags=["monitoring"])


# ============================================================================
# CHECKOUT
# ============================================================================


@checkout_router.post(
    "/sessions",
    response_model=CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a checkout session",
    description="Create a pending transaction and a destination-charge checkout session",
)
async def create_checkout_session(
    request: CreateCheckoutRequest,
    checkout_service: CheckoutService = Depends(get_checkout_service),
) -> Dict[str, Any]:
    logger.info(
        "api_create_checkout_request",
        product_id=request.product_id,
        seller_id=request.seller_id,
        price=request.price,
        has_promoter_code=bool(request.promoter_code),
    )

    result = await checkout_service.create_checkout(
        product=ProductRef(
            id=request.product_id,
            seller_id=request.seller_id,
            title=request.title,
            price=request.price,
            affiliate_commission_percent=request.affiliate_commission_percent,
            description=request.description,
            image_url=request.image_url,
        ),
        buyer=BuyerRef(id=request.buyer_id, email=request.buyer_email),
        promoter_code=request.promoter_code,
    )

    return {
        "transaction_id": result.transaction_id,
        "session_id": result.session_id,
        "checkout_url": result.checkout_url,
        "gross_amount": result.split.gross_amount,
        "fee_percent": result.split.fee_percent,
        "platform_fee": result.split.platform_fee,
        "affiliate_commission": result.split.affiliate_commission,
        "seller_net": result.split.seller_net,
        "application_fee_amount": result.split.application_fee_amount,
    }


# ============================================================================
# WEBHOOKS
# ============================================================================


@webhook_router.post(
    "/stripe",
    response_model=WebhookResponse,
    summary="Stripe webhook endpoint",
    description="Verify and apply a Stripe event",
)
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(default="", alias="Stripe-Signature"),
    reconciler: SettlementReconciler = Depends(get_reconciler),
) -> Any:
    """
    Handle Stripe webhook events.

    2xx for processed, ignored, duplicate and malformed-but-verified events;
    the status of any other outcome tells Stripe whether to retry.
    """
    body = await request.body()

    try:
        result = await reconciler.handle_notification(body, stripe_signature)
    except SettlementError as e:
        logger.warning("api_webhook_rejected", error_code=e.error_code, error=e.message)
        return JSONResponse(
            status_code=e.http_status,
            content={"received": False, "error": e.error_code},
        )

    logger.info(
        "api_webhook_handled",
        event_id=result.event_id,
        event_type=result.event_type,
        status=result.status,
    )
    return {"received": True}


# ============================================================================
# PAYOUTS
# ============================================================================


@payout_router.post(
    "",
    response_model=PayoutResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Request a payout",
    description="Reserve an amount from the seller's available balance",
)
async def request_payout(
    request: CreatePayoutRequest,
    payout_manager: PayoutRequestManager = Depends(get_payout_manager),
) -> Any:
    logger.info("api_payout_request", seller_id=request.seller_id, amount=str(request.amount))
    return await payout_manager.request_payout(request.seller_id, request.amount)


@payout_router.get(
    "/config",
    response_model=PayoutConfigResponse,
    summary="Levels and payout rules",
)
async def payout_config(
    settings: Settings = Depends(get_app_settings),
    payout_manager: PayoutRequestManager = Depends(get_payout_manager),
) -> Dict[str, Any]:
    return {
        "currency": settings.currency,
        "levels": [
            LevelSchema(
                level=tier.level,
                name=tier.name,
                min_earnings=tier.min_earnings,
                fee_percent=tier.fee_percent,
            )
            for tier in LEVELS
        ],
        "payout_rules": payout_manager.fee_schedule.describe(),
        "processing_days": settings.payout_processing_days,
        "dispatch_mode": settings.payout_dispatch_mode,
    }


@payout_router.post(
    "/{payout_id}/cancel",
    response_model=PayoutResponse,
    summary="Cancel a pending payout",
)
async def cancel_payout(
    payout_id: uuid.UUID,
    request: CancelPayoutRequest | None = None,
    payout_manager: PayoutRequestManager = Depends(get_payout_manager),
) -> Any:
    seller_id = request.seller_id if request else None
    return await payout_manager.cancel_payout(payout_id, seller_id=seller_id)


# ============================================================================
# SELLERS
# ============================================================================


@seller_router.get(
    "/{seller_id}/balance",
    response_model=BalanceResponse,
    summary="Seller level and balance",
)
async def seller_balance(
    seller_id: str,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> Dict[str, Any]:
    async with session_factory() as db:
        repo = SettlementRepository(db)
        seller = await repo.get_seller(seller_id)
        if seller is None:
            raise SellerNotFound("Seller not found", seller_id=seller_id)
        cumulative = await repo.cumulative_earnings(seller_id)
        available = cumulative - await repo.reserved_payouts(seller_id)

    progress = level_progress(cumulative, seller.level)
    return {
        "seller_id": seller_id,
        "level": progress.level,
        "level_name": progress.name,
        "fee_percent": progress.fee_percent,
        "available_balance": available,
        "cumulative_earnings": cumulative,
        "next_level": progress.next_level,
        "next_level_name": progress.next_level_name,
        "amount_to_next": progress.amount_to_next,
        "progress_percent": progress.progress_percent,
    }


@seller_router.get(
    "/{seller_id}/payouts",
    response_model=PayoutListResponse,
    summary="Seller payout history",
)
async def seller_payouts(
    seller_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    payout_manager: PayoutRequestManager = Depends(get_payout_manager),
) -> Dict[str, Any]:
    payouts = await payout_manager.list_payouts(seller_id, limit=limit, offset=offset)
    return {"payouts": payouts}


@seller_router.get(
    "/{seller_id}/transactions",
    response_model=TransactionListResponse,
    summary="Seller sales history",
)
async def seller_transactions(
    seller_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> Dict[str, Any]:
    async with session_factory() as db:
        transactions = await SettlementRepository(db).list_transactions(
            seller_id, limit=limit, offset=offset
        )
    return {"transactions": [TransactionResponse.model_validate(t) for t in transactions]}


# ============================================================================
# ADMIN
# ============================================================================


@admin_router.put(
    "/sellers/{seller_id}",
    response_model=SellerAccountResponse,
    summary="Upsert a seller's payout account status",
)
async def upsert_seller(
    seller_id: str,
    request: SellerAccountUpdate,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    lock_manager: SellerLockManager = Depends(get_lock_manager),
) -> Any:
    async with lock_manager.hold(seller_key(seller_id)):
        async with session_factory() as db:
            seller = await SettlementRepository(db).get_or_create_seller(seller_id, for_update=True)
            seller.external_account_id = request.external_account_id
            seller.charges_enabled = request.charges_enabled
            seller.payouts_enabled = request.payouts_enabled
            seller.onboarding_complete = request.onboarding_complete
            await db.commit()
            await db.refresh(seller)

    logger.info(
        "admin_seller_updated",
        seller_id=seller_id,
        charges_enabled=seller.charges_enabled,
        payouts_enabled=seller.payouts_enabled,
    )
    return seller


@admin_router.put(
    "/affiliate-links/{code}",
    response_model=AffiliateLinkResponse,
    summary="Upsert an affiliate link",
)
async def upsert_affiliate_link(
    code: str,
    request: AffiliateLinkUpdate,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> Any:
    async with session_factory() as db:
        link = await SettlementRepository(db).get_affiliate_link(code)
        if link is None:
            link = AffiliateLink(code=code)
            db.add(link)
        link.product_id = request.product_id
        link.promoter_id = request.promoter_id
        link.is_active = request.is_active
        await db.commit()

    logger.info("admin_affiliate_link_updated", code=code, is_active=request.is_active)
    return link


@admin_router.post(
    "/payouts/{payout_id}/disbursement",
    response_model=PayoutResponse,
    summary="Report a disbursement outcome",
)
async def disbursement_callback(
    payout_id: uuid.UUID,
    request: DisbursementCallbackRequest,
    payout_manager: PayoutRequestManager = Depends(get_payout_manager),
) -> Any:
    return await payout_manager.handle_disbursement_callback(
        payout_id, request.outcome, failure_reason=request.failure_reason
    )


@admin_router.post(
    "/payouts/{payout_id}/dispatch",
    response_model=PayoutResponse,
    summary="Disburse a pending payout now",
)
async def dispatch_payout(
    payout_id: uuid.UUID,
    payout_manager: PayoutRequestManager = Depends(get_payout_manager),
) -> Any:
    return await payout_manager.initiate_disbursement(payout_id)


@admin_router.post(
    "/payouts/{payout_id}/retry",
    response_model=PayoutResponse,
    summary="Re-send an unconfirmed payout with its original idempotency key",
)
async def retry_payout(
    payout_id: uuid.UUID,
    payout_manager: PayoutRequestManager = Depends(get_payout_manager),
) -> Any:
    return await payout_manager.retry_disbursement(payout_id)


# ============================================================================
# MONITORING
# ============================================================================


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Any:
    result = await health_check.readiness()
    if result["status"] != "healthy":
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
