"""
Cart gate routes.

- ``POST /validate-cart`` removes restricted items from an unverified cart
- ``POST /set-cart-id`` checks that a cart exists and remembers it for the callback
- ``POST /restricted-items`` reports restricted items without touching the cart
- ``GET /restricted-items`` and ``POST /restricted-items/refresh`` expose the
  restricted SKU cache
"""

import logging

from fastapi import APIRouter, Depends, Response

from ..auth.routes import CART_COOKIE, set_flow_cookie
from ..catalog.cache import CatalogCache
from ..config import Settings
from ..dependencies import get_app_settings, get_cart_client, get_catalog, get_gate
from ..errors import CartNotFound, ValidationError
from ..models import (
    CartRegistrationResponse,
    CartRequest,
    CatalogRefreshResponse,
    FailedItem,
    RemovedItem,
    RestrictedItemsRequest,
    RestrictedItemsResponse,
    ValidateCartResponse,
)
from .client import CartClient
from .gate import CartGate, GateMode, SkipReason

logger = logging.getLogger(__name__)


cart_router = APIRouter(tags=["cart"])


VALIDATED_MESSAGE = "Cart checked and updated for restricted items."
VERIFIED_MESSAGE = "Age verified, restricted items are allowed."
BYPASS_MESSAGE = "Bypass code accepted, restricted items are allowed."
CART_REGISTERED_MESSAGE = "Cart ID validated and stored successfully"


@cart_router.post("/set-cart-id", response_model=CartRegistrationResponse)
async def set_cart_id(
    body: CartRequest,
    response: Response,
    cart_client: CartClient = Depends(get_cart_client),
    settings: Settings = Depends(get_app_settings),
) -> CartRegistrationResponse:
    """
    Confirm the cart exists and set the cart_id cookie.

    The cookie is the fallback CartId for /retrieve-tokens when the bank
    redirect does not carry one.
    """
    try:
        items = await cart_client.get_line_items(body.cart_id)
    except CartNotFound:
        logger.warning("Rejected unknown cart", extra={"cart_id": body.cart_id})
        raise ValidationError(
            "Invalid cartId or cart does not exist",
            details={"cart_id": body.cart_id},
        )

    set_flow_cookie(response, CART_COOKIE, body.cart_id, settings.CART_COOKIE_MAX_AGE_SECONDS)
    logger.info("Cart registered", extra={"cart_id": body.cart_id, "item_count": len(items)})

    return CartRegistrationResponse(
        message=CART_REGISTERED_MESSAGE,
        cart_id=body.cart_id,
        item_count=len(items),
    )


@cart_router.post("/validate-cart", response_model=ValidateCartResponse)
async def validate_cart(
    body: CartRequest,
    gate: CartGate = Depends(get_gate),
) -> ValidateCartResponse:
    """Remove every restricted line item unless the cart is verified."""
    result = await gate.check_cart(body.cart_id, GateMode.FILTER_RESTRICTED)

    if result.skipped:
        return ValidateCartResponse(message=VERIFIED_MESSAGE, skipped=True)

    return ValidateCartResponse(
        message=VALIDATED_MESSAGE,
        removed_items=[RemovedItem(id=i.id, sku=i.sku, name=i.name) for i in result.removed_items],
        failed_items=[FailedItem(**failed) for failed in result.failed_items],
    )


@cart_router.post("/restricted-items", response_model=RestrictedItemsResponse)
async def restricted_items_in_cart(
    body: RestrictedItemsRequest,
    gate: CartGate = Depends(get_gate),
) -> RestrictedItemsResponse:
    """Report restricted SKUs in the cart; an accepted bypass code skips the check."""
    result = await gate.check_cart(body.cart_id, GateMode.BLOCK_IF_UNVERIFIED, bypass_code=body.code)

    if result.skipped:
        message = BYPASS_MESSAGE if result.reason == SkipReason.BYPASS else VERIFIED_MESSAGE
        return RestrictedItemsResponse(message=message, skipped=True)

    return RestrictedItemsResponse(restricted_skus=result.restricted_skus)


@cart_router.get("/restricted-items", response_model=RestrictedItemsResponse)
async def list_restricted_items(
    catalog: CatalogCache = Depends(get_catalog),
) -> RestrictedItemsResponse:
    return RestrictedItemsResponse(restricted_skus=catalog.snapshot())


@cart_router.post("/restricted-items/refresh", response_model=CatalogRefreshResponse)
async def refresh_restricted_items(
    catalog: CatalogCache = Depends(get_catalog),
) -> CatalogRefreshResponse:
    skus = await catalog.refresh()
    return CatalogRefreshResponse(restricted_skus=sorted(skus), count=len(skus))
