"""
Storefront GraphQL client for the products of one category.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from ..errors import CatalogUnavailable, StorefrontTokenRejected

logger = logging.getLogger(__name__)


PAGE_SIZE = 50

PRODUCTS_IN_CATEGORY_QUERY = """
query ProductsInCategory($categoryId: Int!, $after: String) {
  site {
    category(entityId: $categoryId) {
      name
      products(first: %d, after: $after) {
        pageInfo {
          hasNextPage
          endCursor
        }
        edges {
          node {
            sku
            variants {
              edges {
                node {
                  sku
                }
              }
            }
          }
        }
      }
    }
  }
}
""" % PAGE_SIZE


def normalize_sku(sku: Optional[str]) -> str:
    """Trim and upper-case a SKU; ``None`` normalizes to the empty string."""
    if not sku:
        return ""
    return sku.strip().upper()


@dataclass
class CatalogPage:
    skus: List[str] = field(default_factory=list)
    has_next_page: bool = False
    end_cursor: Optional[str] = None


def parse_products_page(body: Dict[str, Any]) -> CatalogPage:
    """
    Pull base and variant SKUs out of one ProductsInCategory response.

    A missing category yields an empty final page.
    """
    category = ((body.get("data") or {}).get("site") or {}).get("category")
    if not category:
        return CatalogPage()

    products = category.get("products") or {}
    page_info = products.get("pageInfo") or {}

    skus: List[str] = []
    for edge in products.get("edges") or []:
        node = (edge or {}).get("node") or {}
        if node.get("sku"):
            skus.append(node["sku"])
        for variant_edge in (node.get("variants") or {}).get("edges") or []:
            variant_sku = ((variant_edge or {}).get("node") or {}).get("sku")
            if variant_sku:
                skus.append(variant_sku)

    has_next = bool(page_info.get("hasNextPage"))
    end_cursor = page_info.get("endCursor")
    if has_next and not end_cursor:
        raise CatalogUnavailable("Catalog reported another page without a cursor")

    return CatalogPage(skus=skus, has_next_page=has_next, end_cursor=end_cursor)


class CatalogClient:
    """Fetches pages of the ProductsInCategory query."""

    def __init__(self, http_client: httpx.AsyncClient, graphql_url: str, timeout: float = 10.0):
        self._http = http_client
        self._url = graphql_url
        self._timeout = httpx.Timeout(timeout)

    async def fetch_page(self, category_id: int, after: Optional[str], token: str) -> CatalogPage:
        """
        Raises:
            StorefrontTokenRejected: HTTP 401 from the storefront API
            CatalogUnavailable: Any other failure
        """
        try:
            response = await self._http.post(
                self._url,
                json={
                    "query": PRODUCTS_IN_CATEGORY_QUERY,
                    "variables": {"categoryId": category_id, "after": after},
                },
                headers={"Authorization": f"Bearer {token}"},
                timeout=self._timeout,
            )
        except httpx.TimeoutException:
            logger.error("Catalog request timed out", extra={"category_id": category_id})
            raise CatalogUnavailable("Catalog request timed out")
        except httpx.HTTPError as e:
            logger.error(f"Catalog request failed: {e}", extra={"category_id": category_id})
            raise CatalogUnavailable(f"Unable to reach catalog: {e}")

        if response.status_code == 401:
            raise StorefrontTokenRejected("Storefront token rejected", upstream_status=401)

        if not response.is_success:
            logger.error(
                f"Catalog returned {response.status_code}",
                extra={"category_id": category_id},
            )
            raise CatalogUnavailable("Catalog request failed", upstream_status=response.status_code)

        try:
            body = response.json()
        except ValueError:
            raise CatalogUnavailable("Malformed JSON from catalog")

        if not isinstance(body, dict):
            raise CatalogUnavailable("Malformed catalog response")

        if body.get("errors"):
            logger.error("Catalog query returned errors", extra={"errors": body["errors"]})
            raise CatalogUnavailable("Catalog query returned errors")

        return parse_products_page(body)


__all__ = ["CatalogClient", "CatalogPage", "normalize_sku", "parse_products_page", "PRODUCTS_IN_CATEGORY_QUERY", "PAGE_SIZE"]
