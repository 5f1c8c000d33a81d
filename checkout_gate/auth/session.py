"""
Verification Session Token Module
=================================

Handles creation and verification of the opaque session token handed to
the browser after a successful age verification. The token is an HMAC
signed JWT whose subject is the CartId, so a token minted for one cart can
never be presented for another.
"""

import logging
import secrets
from datetime import datetime
from typing import Any, Dict

import jwt
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError

from ..errors import InvalidSessionToken

logger = logging.getLogger(__name__)


DEFAULT_ISSUER = "checkout-age-gate"


class SessionTokenIssuer:
    """
    Signs and verifies verification session tokens.

    Args:
        secret: HMAC secret (at least 32 characters)
        algorithm: HS256, HS384 or HS512
        issuer: Value of the ``iss`` claim
    """

    def __init__(self, secret: str, algorithm: str = "HS256", issuer: str = DEFAULT_ISSUER):
        if not secret:
            raise ValueError("Session token secret not configured")
        self._secret = secret
        self._algorithm = algorithm
        self._issuer = issuer

    def issue(self, cart_id: str, verified_at: datetime, expires_at: datetime) -> str:
        """
        Create a session token bound to a cart.

        Args:
            cart_id: Cart the verification belongs to
            verified_at: Time the verification completed
            expires_at: Time the verification lapses

        Returns:
            Encoded JWT string
        """
        payload = {
            "sub": cart_id,
            "iat": verified_at,
            "exp": expires_at,
            "iss": self._issuer,
            "jti": secrets.token_urlsafe(16),
            "age_verified": True,
        }
        token = jwt.encode(payload, self._secret, algorithm=self._algorithm)

        logger.debug(
            "Issued verification session token",
            extra={"cart_id": cart_id, "expires_at": expires_at.isoformat()},
        )
        return token

    def verify(self, token: str, cart_id: str) -> Dict[str, Any]:
        """
        Verify a session token and check it belongs to ``cart_id``.

        Returns:
            Decoded claims

        Raises:
            InvalidSessionToken: If the token is missing, expired, forged,
                or minted for a different cart
        """
        if not token:
            raise InvalidSessionToken("No session token provided")

        try:
            decoded = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                issuer=self._issuer,
                options={"require": ["exp", "iat", "sub", "iss"]},
            )
        except ExpiredSignatureError:
            raise InvalidSessionToken("Session token has expired")
        except InvalidTokenError as e:
            logger.warning(f"Invalid session token: {e}")
            raise InvalidSessionToken("Invalid session token")

        if decoded.get("sub") != cart_id:
            logger.warning(
                "Session token presented for a different cart",
                extra={"cart_id": cart_id},
            )
            raise InvalidSessionToken("Session token does not belong to this cart")

        return decoded


__all__ = ["SessionTokenIssuer", "DEFAULT_ISSUER"]
