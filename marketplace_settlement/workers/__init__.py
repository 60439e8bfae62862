"""Background workers."""
from .payout_dispatcher import PayoutDispatcher, start_payout_dispatcher

__all__ = ["PayoutDispatcher", "start_payout_dispatcher"]
