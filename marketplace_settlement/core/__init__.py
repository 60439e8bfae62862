"""Core settlement logic."""
from .errors import SettlementError
from .fee_tiers import LEVELS, fee_percent
from .level_tracker import apply_level, level_progress, recompute_level
from .split_calculator import Split, compute_split
from .locks import SellerLockManager
from .checkout_builder import CheckoutRequestBuilder, CheckoutService
from .settlement_reconciler import NotificationResult, SettlementReconciler
from .payout_manager import PayoutFeeSchedule, PayoutRequestManager

__all__ = [
    "LEVELS",
    "CheckoutRequestBuilder",
    "CheckoutService",
    "NotificationResult",
    "PayoutFeeSchedule",
    "PayoutRequestManager",
    "SellerLockManager",
    "SettlementError",
    "SettlementReconciler",
    "Split",
    "apply_level",
    "compute_split",
    "fee_percent",
    "level_progress",
    "recompute_level",
]
