"""Settlement core for a creator marketplace: revenue splits, checkout, webhooks and payouts."""

__version__ = "0.1.0"
