"""
Data Models Module

Pydantic models for request validation and response serialization.
The storefront scripts speak camelCase, so wire names are aliases and the
Python side keeps snake_case.

Models are organized by functional area:
- Verification flow (select bank, retrieve tokens, status, reset)
- Cart gate (validate cart, restricted items)
- Diagnostics (compliance logs)
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# BigCommerce cart ids are UUIDs; the id is also used as a management API path segment
CART_ID_PATTERN = r"^[A-Za-z0-9-]+$"


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ============================================================================
# Verification Flow Models
# ============================================================================

class CartRequest(CamelModel):
    """Request body that only identifies a cart."""
    cart_id: str = Field(
        ...,
        alias="cartId",
        min_length=1,
        pattern=CART_ID_PATTERN,
        description="Storefront cart identifier",
    )


class SelectBankRequest(CartRequest):
    """Request model for starting an age verification with a bank."""
    authorisation_server_id: str = Field(
        ...,
        alias="authorisationServerId",
        min_length=1,
        description="Authorisation server of the chosen identity provider",
    )
    purpose: Optional[str] = Field(
        None,
        min_length=3,
        max_length=300,
        description="Purpose shown on the consent screen",
    )


class SelectBankResponse(CamelModel):
    auth_url: str = Field(..., alias="authUrl", description="URL to redirect the shopper to")


class IdTokenPayload(BaseModel):
    decoded: Dict[str, Any] = Field(..., description="Verified ID token claims")
    raw: str = Field(..., description="Encoded ID token")


class RetrieveTokensResponse(CamelModel):
    """Response model for a completed age verification."""
    claims: Dict[str, Any] = Field(..., description="Claims released by the identity provider")
    token: str = Field(..., description="Session token bound to the cart")
    id_token: IdTokenPayload = Field(..., alias="idToken")
    expires_at: datetime = Field(..., alias="expiresAt", description="When the verification lapses")
    x_fapi_interaction_id: str = Field("Unknown", alias="xFapiInteractionId")


class TokenCheckRequest(CartRequest):
    token: str = Field(..., min_length=1, description="Session token returned by /retrieve-tokens")


class MessageResponse(BaseModel):
    message: str


class VerificationStatusResponse(CamelModel):
    cart_id: str = Field(..., alias="cartId")
    status: str = Field(..., description="NONE, PENDING or VERIFIED")
    expires_at: Optional[datetime] = Field(None, alias="expiresAt")


# ============================================================================
# Cart Gate Models
# ============================================================================

class CartRegistrationResponse(CamelModel):
    """Response model for a cart registered with /set-cart-id."""
    message: str
    cart_id: str = Field(..., alias="cartId")
    item_count: int = Field(..., alias="itemCount", description="Line items currently in the cart")


class RestrictedItemsRequest(CartRequest):
    code: Optional[str] = Field(None, description="Bypass code")


class RemovedItem(BaseModel):
    id: Optional[str] = None
    sku: Optional[str] = None
    name: Optional[str] = None


class FailedItem(BaseModel):
    id: str
    sku: Optional[str] = None
    error: str


class ValidateCartResponse(CamelModel):
    message: str
    removed_items: List[RemovedItem] = Field(default_factory=list, alias="removedItems")
    failed_items: List[FailedItem] = Field(default_factory=list, alias="failedItems")
    skipped: bool = False


class RestrictedItemsResponse(CamelModel):
    restricted_skus: List[str] = Field(default_factory=list, alias="restrictedSKUs")
    message: Optional[str] = None
    skipped: bool = False


class CatalogRefreshResponse(CamelModel):
    restricted_skus: List[str] = Field(default_factory=list, alias="restrictedSKUs")
    count: int


# ============================================================================
# Diagnostics Models
# ============================================================================

class LogEntry(BaseModel):
    type: str = Field(..., description="Success, Error or Skipped")
    message: str
    timestamp: str


class LogsResponse(BaseModel):
    logs: List[LogEntry]


# ============================================================================
# Error Models
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response model."""
    error: str = Field(..., description="Error type or code")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details")
