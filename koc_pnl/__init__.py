"""TikTok KOC profit-and-loss reconciliation core."""

__version__ = "0.1.0"
