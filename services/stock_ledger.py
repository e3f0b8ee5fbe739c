"""
Stock ledger for checkout reservations.

Enforces the non-negative stock invariant:
- Validation is pure: it compares requested quantities against a catalog
  snapshot supplied by the caller, so validation and decrement observe the same
  point-in-time view.
- Decrement runs inside the caller's unit of work, then re-reads the resulting
  stock and fails hard if anything went negative.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Protocol, Tuple

from domain.product import Product
from repositories.store import UnitOfWork

logger = logging.getLogger(__name__)


class StockRequest(Protocol):
    product_id: str
    quantity: int


class StockInvariantError(RuntimeError):
    """
    Raised when a decrement leaves stock negative.

    Unreachable while validation and decrement share a snapshot; seeing it
    means the storage isolation is broken. The enclosing unit of work must be
    rolled back.
    """

    def __init__(self, negative: Mapping[str, int]):
        self.negative = dict(negative)
        super().__init__(
            "Stock decrement resulted in negative values for: "
            + ", ".join(f"{pid}={stock}" for pid, stock in sorted(self.negative.items()))
        )


@dataclass(frozen=True, slots=True)
class StockItemError:
    product_id: str
    name: str
    requested: int
    available: int

    @property
    def message(self) -> str:
        return f"{self.name}: Insufficient stock. Available: {self.available}, Requested: {self.requested}"


@dataclass(frozen=True, slots=True)
class StockValidation:
    ok: bool
    errors: List[StockItemError] = field(default_factory=list)


def requested_quantities(items: Iterable[StockRequest]) -> Dict[str, int]:
    """Total quantity per product; the same product may appear on several cart lines."""

    totals: Dict[str, int] = {}
    for item in items:
        totals[item.product_id] = totals.get(item.product_id, 0) + item.quantity
    return totals


def validate_availability(
    items: Iterable[StockRequest],
    catalog_snapshot: Mapping[str, Product],
) -> StockValidation:
    """
    Check requested quantities against a pre-fetched catalog snapshot.

    Does not touch storage. Products missing from the snapshot are reported with
    zero availability.
    """

    errors: List[StockItemError] = []
    for product_id, quantity in requested_quantities(items).items():
        product = catalog_snapshot.get(product_id)
        available = product.stock if product is not None else 0
        if available < quantity:
            errors.append(
                StockItemError(
                    product_id=product_id,
                    name=product.name if product is not None else product_id,
                    requested=quantity,
                    available=available,
                )
            )

    return StockValidation(ok=not errors, errors=errors)


def decrement(items: Iterable[StockRequest], unit_of_work: UnitOfWork) -> Dict[str, int]:
    """
    Apply `stock -= quantity` for every product inside `unit_of_work`.

    Returns the resulting stock per product.

    Raises:
        StockInvariantError: if any resulting stock is negative
    """

    totals: List[Tuple[str, int]] = sorted(requested_quantities(items).items())
    for product_id, quantity in totals:
        unit_of_work.decrement_stock(product_id, quantity)

    resulting = unit_of_work.read_stock(product_id for product_id, _ in totals)
    negative = {pid: stock for pid, stock in resulting.items() if stock < 0}
    if negative:
        logger.error(
            f"Stock went negative after decrement for {len(negative)} product(s)",
            extra={"negative_stock": negative},
        )
        raise StockInvariantError(negative)

    logger.info(f"Stock decremented for {len(totals)} product(s)")
    return resulting


__all__ = [
    "StockInvariantError",
    "StockItemError",
    "StockValidation",
    "decrement",
    "requested_quantities",
    "validate_availability",
]
