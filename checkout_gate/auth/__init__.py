"""
Verification Flow Package

Drives the bank-backed age verification for a cart.

Modules:
- rp_client: Relying-party client (PAR, token exchange, ID token verification)
- flow: Per-cart flow controller (begin / complete)
- store: In-memory pending and verified records keyed by CartId
- session: Session token issued after a successful verification
- routes: /select-bank, /retrieve-tokens and related endpoints

The verification flow:
1. Storefront posts the chosen bank to /select-bank
2. Shopper consents at the bank
3. Bank redirects back with a code; storefront calls /retrieve-tokens
4. The ID token's age claim decides whether the cart is verified
"""

from .routes import auth_router

__all__ = [
    "auth_router",
]
