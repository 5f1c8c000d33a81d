"""
Error taxonomy for the checkout gate.

Every failure that crosses a component boundary is one of these classes.
The app factory registers a handler that turns them into the standard
JSON error body (``error``, ``message``, ``details``).
"""

from typing import Any, Dict, Optional


class CheckoutGateError(Exception):
    """Base exception for all checkout gate errors"""

    status_code: int = 500
    error: str = "internal_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.error, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


# =============================================================================
# Client errors
# =============================================================================

class ValidationError(CheckoutGateError):
    """A required request field is missing or malformed."""

    status_code = 400
    error = "validation_error"


class MissingAuthorizationCode(ValidationError):
    error = "missing_authorization_code"


class MissingSessionCookies(ValidationError):
    """The flow cookies were lost (cross-site cookie policy) or have expired."""

    error = "missing_session_cookies"


class SessionMismatch(CheckoutGateError):
    """State, nonce, verifier or CartId do not correlate with the pending flow."""

    status_code = 400
    error = "session_mismatch"


class AgeRequirementNotMet(CheckoutGateError):
    status_code = 400
    error = "age_requirement_not_met"


class InvalidSessionToken(CheckoutGateError):
    status_code = 401
    error = "invalid_session_token"


class NotFound(CheckoutGateError):
    status_code = 404
    error = "not_found"


class CartNotFound(NotFound):
    error = "cart_not_found"


# =============================================================================
# Upstream errors
# =============================================================================

class UpstreamUnavailable(CheckoutGateError):
    """An external dependency failed, timed out or returned a non-2xx response."""

    status_code = 500
    error = "upstream_unavailable"

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        upstream_status: Optional[int] = None,
    ):
        details = dict(details or {})
        if upstream_status is not None:
            details.setdefault("upstream_status", upstream_status)
        super().__init__(message, details or None)
        self.upstream_status = upstream_status


class CatalogUnavailable(UpstreamUnavailable):
    error = "catalog_unavailable"


class StorefrontTokenRejected(CatalogUnavailable):
    """The storefront GraphQL API rejected the bearer token (usually expired)."""


class CartServiceUnavailable(UpstreamUnavailable):
    error = "cart_service_unavailable"


__all__ = [
    "CheckoutGateError",
    "ValidationError",
    "MissingAuthorizationCode",
    "MissingSessionCookies",
    "SessionMismatch",
    "AgeRequirementNotMet",
    "InvalidSessionToken",
    "NotFound",
    "CartNotFound",
    "UpstreamUnavailable",
    "CatalogUnavailable",
    "StorefrontTokenRejected",
    "CartServiceUnavailable",
]
