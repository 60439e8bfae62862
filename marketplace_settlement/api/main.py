"""
Main FastAPI application.

Settlement service API with:
- CORS configuration
- Structured error responses for every SettlementError
- Request ID tracking
- Structured logging
- Prometheus metrics

Collaborators (settings, payment gateway, disbursement channel) can be passed
to create_app; anything left out is built from the environment at startup.
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import redis.asyncio as aioredis
import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..config import Settings, get_settings
from ..core.checkout_builder import CheckoutRequestBuilder, CheckoutService
from ..core.errors import SettlementError
from ..core.locks import SellerLockManager
from ..core.payout_manager import PayoutFeeSchedule, PayoutRequestManager
from ..core.settlement_reconciler import SettlementReconciler
from ..database.connection import create_engine, create_session_factory, init_db
from ..integrations.base import DisbursementChannel, PaymentGateway
from ..integrations.stripe_client import StripeClient
from ..monitoring.health import HealthCheck
from ..monitoring.logging import setup_logging
from .routes import (
    admin_router,
    checkout_router,
    monitoring_router,
    payout_router,
    seller_router,
    webhook_router,
)

logger = structlog.get_logger(__name__)


def build_lifespan(
    settings: Settings,
    gateway: Optional[PaymentGateway],
    disbursement_channel: Optional[DisbursementChannel],
) -> Any:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        """
        Application lifespan manager.

        Builds the engine, locks and services once and tears them down on
        shutdown.
        """
        logger.info(
            "application_startup",
            app_name=settings.app_name,
            env=settings.app_env,
            test_mode=settings.is_test_mode,
            lock_backend=settings.lock_backend,
            payout_dispatch_mode=settings.payout_dispatch_mode,
        )

        engine = create_engine(settings)
        try:
            await init_db(engine)
            logger.info("database_initialized")
        except Exception as e:
            logger.error("database_initialization_failed", error=str(e))
            await engine.dispose()
            raise

        session_factory = create_session_factory(engine)

        redis_client: Optional[aioredis.Redis] = None
        if settings.lock_backend == "redis":
            redis_client = aioredis.from_url(settings.redis_url, decode_responses=True)

        lock_manager = SellerLockManager(
            backend=settings.lock_backend,
            redis_client=redis_client,
            ttl_seconds=settings.lock_ttl_seconds,
            acquire_timeout=settings.lock_acquire_timeout_seconds,
        )

        stripe_client: Optional[StripeClient] = None
        if gateway is None or disbursement_channel is None:
            stripe_client = StripeClient(settings)
        payment_gateway = gateway or stripe_client
        channel = disbursement_channel or stripe_client

        app.state.settings = settings
        app.state.session_factory = session_factory
        app.state.lock_manager = lock_manager
        app.state.checkout_service = CheckoutService(
            session_factory,
            payment_gateway,
            CheckoutRequestBuilder.from_settings(settings),
        )
        app.state.payout_manager = PayoutRequestManager(
            session_factory,
            lock_manager,
            PayoutFeeSchedule.from_settings(settings),
            disbursement_channel=channel,
            dispatch_mode=settings.payout_dispatch_mode,
            currency=settings.currency,
        )
        app.state.reconciler = SettlementReconciler(
            session_factory,
            payment_gateway,
            lock_manager,
            affiliate_clearing_days=settings.affiliate_clearing_days,
            payout_manager=app.state.payout_manager,
        )
        app.state.health_check = HealthCheck(settings, session_factory, redis_client)

        yield

        logger.info("application_shutdown")
        try:
            if redis_client is not None:
                await redis_client.aclose()
            await engine.dispose()
            logger.info("database_connections_closed")
        except Exception as e:
            logger.error("shutdown_error", error=str(e))

    return lifespan


async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
    """
    Add request ID to all requests for tracing.

    Also adds timing information and structured logging context.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    start_time = time.time()

    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )

    logger.info(
        "request_started",
        client_host=request.client.host if request.client else None,
    )

    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_seconds=time.time() - start_time,
        )
        return response

    except Exception as e:
        logger.error(
            "request_failed",
            error=str(e),
            duration_seconds=time.time() - start_time,
        )
        raise

    finally:
        structlog.contextvars.clear_contextvars()


async def settlement_error_handler(request: Request, exc: SettlementError) -> JSONResponse:
    """Render a domain error as its structured body and HTTP status."""
    log = logger.error if exc.http_status >= 500 else logger.info
    log(
        "settlement_error",
        error_code=exc.error_code,
        error=exc.message,
        path=request.url.path,
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for unhandled exceptions."""
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": {
                "code": "internal_error",
                "message": "An unexpected error occurred. Please try again later.",
            }
        },
    )


def create_app(
    settings: Optional[Settings] = None,
    gateway: Optional[PaymentGateway] = None,
    disbursement_channel: Optional[DisbursementChannel] = None,
    configure_logging: bool = True,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Settings; read from the environment when omitted
        gateway: Payment gateway; StripeClient when omitted
        disbursement_channel: Disbursement channel; StripeClient when omitted
        configure_logging: Install the JSON logging configuration

    Returns:
        FastAPI: Configured application
    """
    settings = settings or get_settings()
    if configure_logging:
        setup_logging(settings)

    app = FastAPI(
        title="Marketplace Settlement Service",
        description=(
            "Settlement core of a creator marketplace: tiered fee splits, Stripe "
            "destination-charge checkout, exactly-once webhook settlement and seller payouts."
        ),
        version=__version__,
        lifespan=build_lifespan(settings, gateway, disbursement_channel),
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(add_request_id_middleware)
    app.add_exception_handler(SettlementError, settlement_error_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    app.include_router(checkout_router)
    app.include_router(webhook_router)
    app.include_router(payout_router)
    app.include_router(seller_router)
    app.include_router(admin_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": __version__,
            "status": "operational",
            "environment": settings.app_env,
            "test_mode": settings.is_test_mode,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


def run() -> None:
    """Console entry point: serve the API with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "marketplace_settlement.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
