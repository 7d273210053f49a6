"""eSpazza checkout ledger: purchases, coupons and ticket capacity."""

__version__ = "0.1.0"
