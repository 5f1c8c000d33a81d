"""
Cart Package

Live cart reads and deletions, SKU matching, and the cart gate that decides
what happens to restricted items in an unverified cart.
"""

from .routes import cart_router

__all__ = [
    "cart_router",
]
