"""API routes package."""

from . import competitions, users, shopify, jobs

__all__ = ["competitions", "users", "shopify", "jobs"]
