"""
Restricted SKU cache.

The set of normalized SKUs in the restricted category is rebuilt from the
catalog as a whole and swapped in atomically. Readers never observe a
partially-built set, and a failed refresh leaves the previous set in place.
"""

import asyncio
import logging
from typing import FrozenSet, List, Optional, Set

from ..errors import CatalogUnavailable, StorefrontTokenRejected
from .client import CatalogClient, normalize_sku
from .tokens import StorefrontTokenProvider

logger = logging.getLogger(__name__)


MAX_PAGES = 1000


class CatalogCache:
    """
    Process-wide cache of restricted SKUs.

    Args:
        client: Storefront catalog client
        tokens: Provider of the storefront bearer token
        category_id: Category whose products and variants are restricted
    """

    def __init__(self, client: CatalogClient, tokens: StorefrontTokenProvider, category_id: int):
        self._client = client
        self._tokens = tokens
        self._category_id = category_id

        self._skus: FrozenSet[str] = frozenset()
        self._lock = asyncio.Lock()

    async def refresh(self) -> FrozenSet[str]:
        """
        Rebuild the restricted set from every page of the category.

        A rejected storefront token is refreshed once and the same page is
        retried once.

        Raises:
            CatalogUnavailable: The catalog or token service failed, or the
                token was rejected twice
        """
        async with self._lock:
            collected: Set[str] = set()
            after: Optional[str] = None
            pages = 0

            while True:
                pages += 1
                if pages > MAX_PAGES:
                    raise CatalogUnavailable("Catalog pagination did not terminate")

                page = None
                for attempt in range(2):
                    token = await self._tokens.get_token()
                    try:
                        page = await self._client.fetch_page(self._category_id, after, token)
                        break
                    except StorefrontTokenRejected:
                        if attempt == 1:
                            logger.error("Storefront token rejected after refresh")
                            raise CatalogUnavailable(
                                "Storefront token rejected after refresh",
                                upstream_status=401,
                            )
                        logger.warning("Storefront token rejected, refreshing")
                        await self._tokens.refresh()

                for sku in page.skus:
                    normalized = normalize_sku(sku)
                    if normalized:
                        collected.add(normalized)

                if not page.has_next_page:
                    break
                after = page.end_cursor

            if not collected:
                logger.error(
                    "No SKUs fetched for the restricted category, keeping previous set",
                    extra={"category_id": self._category_id, "previous_count": len(self._skus)},
                )
                return self._skus

            self._skus = frozenset(collected)

        logger.info(
            "Restricted SKUs refreshed",
            extra={"category_id": self._category_id, "count": len(self._skus), "pages": pages},
        )
        return self._skus

    async def ensure_loaded(self) -> FrozenSet[str]:
        if not self._skus:
            return await self.refresh()
        return self._skus

    def is_restricted(self, sku: Optional[str]) -> bool:
        return normalize_sku(sku) in self._skus

    def snapshot(self) -> List[str]:
        return sorted(self._skus)


__all__ = ["CatalogCache"]
