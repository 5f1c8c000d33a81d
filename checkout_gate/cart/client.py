"""
BigCommerce cart API client.

Cart contents are always read live; nothing here is cached.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from ..errors import CartNotFound, CartServiceUnavailable

logger = logging.getLogger(__name__)


LINE_ITEM_GROUPS = ("physical_items", "digital_items", "gift_certificates", "custom_items")


@dataclass(frozen=True)
class CartLineItem:
    id: str
    sku: Optional[str]
    name: Optional[str]
    quantity: int = 1
    product_id: Optional[int] = None
    variant_id: Optional[int] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "CartLineItem":
        return cls(
            id=str(data.get("id")),
            sku=data.get("sku"),
            name=data.get("name"),
            quantity=int(data.get("quantity") or 1),
            product_id=data.get("product_id"),
            variant_id=data.get("variant_id"),
        )


def flatten_line_items(cart: Dict[str, Any]) -> List[CartLineItem]:
    line_items = (cart.get("data") or {}).get("line_items") or {}
    items: List[CartLineItem] = []
    for group in LINE_ITEM_GROUPS:
        for raw in line_items.get(group) or []:
            items.append(CartLineItem.from_api(raw))
    return items


def _path_segment(value: str, cart_id: str) -> str:
    # "?", "#" and "/" are escaped; dot segments would still be resolved by the URL parser
    if value in ("", ".", ".."):
        raise CartNotFound("Cart not found", details={"cart_id": cart_id})
    return quote(value, safe="")


class CartClient:
    """
    Reads and mutates carts through the management API.

    Args:
        http_client: Shared async HTTP client
        store_url: Management API base (``.../stores/{hash}``)
        access_token: Sent as ``X-Auth-Token``
        timeout: Request timeout in seconds
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        store_url: str,
        access_token: str,
        timeout: float = 10.0,
    ):
        self._http = http_client
        self._store_url = store_url
        self._headers = {
            "X-Auth-Token": access_token,
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        self._timeout = httpx.Timeout(timeout)

    async def get_line_items(self, cart_id: str) -> List[CartLineItem]:
        """
        Fetch every line item in the cart, across all item groups.

        Raises:
            CartNotFound: The cart does not exist
            CartServiceUnavailable: Network failure or non-2xx response
        """
        response = await self._send("GET", self._cart_url(cart_id), cart_id)

        try:
            body = response.json()
        except ValueError:
            raise CartServiceUnavailable("Malformed JSON from cart service")

        items = flatten_line_items(body if isinstance(body, dict) else {})
        logger.debug("Fetched cart items", extra={"cart_id": cart_id, "count": len(items)})
        return items

    async def delete_line_item(self, cart_id: str, item_id: str) -> None:
        url = f"{self._cart_url(cart_id)}/items/{_path_segment(item_id, cart_id)}"
        await self._send("DELETE", url, cart_id)
        logger.info("Removed cart item", extra={"cart_id": cart_id, "item_id": item_id})

    def _cart_url(self, cart_id: str) -> str:
        return f"{self._store_url}/v3/carts/{_path_segment(cart_id, cart_id)}"

    async def _send(self, method: str, url: str, cart_id: str) -> httpx.Response:
        try:
            response = await self._http.request(
                method, url, headers=self._headers, timeout=self._timeout
            )
        except httpx.TimeoutException:
            logger.error("Cart service timed out", extra={"cart_id": cart_id})
            raise CartServiceUnavailable("Cart service timed out")
        except httpx.HTTPError as e:
            logger.error(f"Cart service network error: {e}", extra={"cart_id": cart_id})
            raise CartServiceUnavailable(f"Unable to reach cart service: {e}")

        if response.status_code == 404:
            raise CartNotFound("Cart not found", details={"cart_id": cart_id})

        if not response.is_success:
            logger.error(
                f"Cart service returned {response.status_code}",
                extra={"cart_id": cart_id, "method": method},
            )
            raise CartServiceUnavailable(
                "Cart service request failed",
                upstream_status=response.status_code,
            )

        return response


__all__ = ["CartClient", "CartLineItem", "flatten_line_items", "LINE_ITEM_GROUPS"]
