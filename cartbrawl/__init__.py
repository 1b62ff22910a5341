"""
CartBrawl backend.

Shopify revenue competitions with prize escrow and payout through Whop.
"""

__version__ = "0.1.0"
