"""
Domain: catalog product as seen by the checkout pipeline.

The catalog itself (CRUD, search, images) lives outside this service. The
checkout only needs the fields that decide whether a product can be bought,
at what price, and how many units are left.

Eligibility rules:
- A base product is purchasable iff it is published.
- A variant is purchasable when its base product exists and is published; the
  variant row itself may be unpublished (it is reached through its base).
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Mapping, Optional


@dataclass(frozen=True, slots=True)
class Product:
    product_id: str
    name: str
    price: int  # minor units
    stock: int
    is_published: bool = True
    is_variant: bool = False
    base_product_id: Optional[str] = None

    def __post_init__(self) -> None:
        if self.price < 0:
            raise ValueError("price must be >= 0")
        if self.stock < 0:
            raise ValueError("stock must be >= 0")

    def with_stock(self, stock: int) -> "Product":
        return replace(self, stock=stock)

    def is_purchasable(self, catalog: Mapping[str, "Product"]) -> bool:
        """Check eligibility against a catalog snapshot that includes base products."""

        if not self.is_variant:
            return self.is_published

        if not self.base_product_id:
            return False
        base = catalog.get(self.base_product_id)
        return base is not None and base.is_published
