"""
Cart gate: decides whether restricted SKUs may stay in a cart.

Two modes share one decision path:

- ``blockIfUnverified`` reports the offending SKUs and never touches the cart
- ``filterRestricted`` deletes every offending line item

A verified cart, or a caller presenting a configured bypass code, skips the
check entirely.
"""

import hmac
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from ..auth.store import VerificationSessionStore
from ..catalog.cache import CatalogCache
from ..errors import CheckoutGateError
from .client import CartClient, CartLineItem
from .restrictions import find_restricted_items, normalize_sku

logger = logging.getLogger(__name__)


class GateMode(str, Enum):
    BLOCK_IF_UNVERIFIED = "blockIfUnverified"
    FILTER_RESTRICTED = "filterRestricted"


class SkipReason:
    VERIFIED = "verified"
    BYPASS = "bypass"


@dataclass
class GateResult:
    skipped: bool = False
    reason: Optional[str] = None
    restricted_skus: List[str] = field(default_factory=list)
    removed_items: List[CartLineItem] = field(default_factory=list)
    failed_items: List[Dict[str, Any]] = field(default_factory=list)


class CartGate:
    """
    Composition root of the restricted-item decision.

    Args:
        store: Verification session store (read only here)
        catalog: Restricted SKU cache
        cart_client: Live cart reads and deletions
        bypass_codes: Codes that skip the check; empty disables bypass
    """

    def __init__(
        self,
        store: VerificationSessionStore,
        catalog: CatalogCache,
        cart_client: CartClient,
        bypass_codes: Iterable[str] = (),
    ):
        self._store = store
        self._catalog = catalog
        self._cart = cart_client
        self._bypass_codes = [code for code in bypass_codes if code]

    def _bypass_accepted(self, code: Optional[str]) -> bool:
        if not code or not self._bypass_codes:
            return False
        presented = code.encode("utf-8")
        return any(hmac.compare_digest(presented, c.encode("utf-8")) for c in self._bypass_codes)

    async def check_cart(
        self,
        cart_id: str,
        mode: GateMode,
        bypass_code: Optional[str] = None,
    ) -> GateResult:
        """
        Evaluate ``cart_id`` against the restricted set.

        Raises:
            CatalogUnavailable: The restricted set could not be loaded
            CartNotFound: The cart does not exist
            CartServiceUnavailable: The cart could not be read
        """
        if await self._store.is_verified(cart_id):
            logger.info("Cart verified, skipping restricted item check", extra={"cart_id": cart_id})
            return GateResult(skipped=True, reason=SkipReason.VERIFIED)

        if self._bypass_accepted(bypass_code):
            logger.info("Bypass code accepted, skipping restricted item check", extra={"cart_id": cart_id})
            return GateResult(skipped=True, reason=SkipReason.BYPASS)

        restricted = await self._catalog.ensure_loaded()
        items = await self._cart.get_line_items(cart_id)
        offending = find_restricted_items(items, restricted)

        result = GateResult(
            restricted_skus=sorted({normalize_sku(item.sku) for item in offending}),
        )

        if mode == GateMode.BLOCK_IF_UNVERIFIED or not offending:
            logger.info(
                "Restricted item check complete",
                extra={"cart_id": cart_id, "mode": mode.value, "restricted": len(offending)},
            )
            return result

        for item in offending:
            try:
                await self._cart.delete_line_item(cart_id, item.id)
            except CheckoutGateError as e:
                logger.error(
                    f"Failed to remove restricted item: {e.message}",
                    extra={"cart_id": cart_id, "item_id": item.id, "sku": item.sku},
                )
                result.failed_items.append({"id": item.id, "sku": item.sku, "error": e.error})
            else:
                result.removed_items.append(item)

        logger.info(
            "Restricted items removed from cart",
            extra={
                "cart_id": cart_id,
                "removed": len(result.removed_items),
                "failed": len(result.failed_items),
            },
        )
        return result


__all__ = ["CartGate", "GateMode", "GateResult", "SkipReason"]
