"""Database package for the settlement service."""
from .connection import create_engine, create_session_factory, init_db
from .models import (
    AffiliateLink,
    Base,
    Payout,
    PayoutStatus,
    SellerAccount,
    Transaction,
    TransactionStatus,
    WebhookEvent,
)
from .repository import SettlementRepository

__all__ = [
    "AffiliateLink",
    "Base",
    "Payout",
    "PayoutStatus",
    "SellerAccount",
    "SettlementRepository",
    "Transaction",
    "TransactionStatus",
    "WebhookEvent",
    "create_engine",
    "create_session_factory",
    "init_db",
]
