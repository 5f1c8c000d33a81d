"""Pure helpers for matching cart SKUs against the restricted set."""

from typing import AbstractSet, Iterable, List

from ..catalog.client import normalize_sku
from .client import CartLineItem


def find_restricted_items(
    items: Iterable[CartLineItem],
    restricted: AbstractSet[str],
) -> List[CartLineItem]:
    """
    Return the line items whose normalized SKU is in ``restricted``.

    Items without a SKU (gift certificates, some custom items) never match.
    """
    matches = []
    for item in items:
        sku = normalize_sku(item.sku)
        if sku and sku in restricted:
            matches.append(item)
    return matches


__all__ = ["normalize_sku", "find_restricted_items"]
