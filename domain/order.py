"""
Domain: Orders and the checkout snapshot they are built from.

Contract excerpts implemented here:
- An Order is created only after payment is confirmed; it is never created by
  the checkout path directly.
- Order items, shipping info and totals are copied verbatim from the snapshot
  captured at checkout time (OrderSnapshot), never from the current catalog.
- A line item with size CUSTOM must carry custom measurements (waist, hip,
  length); any other size must not.

This module contains only pure domain entities/value objects: no I/O, no
database, no frameworks.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple
from uuid import UUID, uuid4

from domain.time import require_utc_timestamp

REQUIRED_MEASUREMENTS: Tuple[str, ...] = ("waist", "hip", "length")


class OrderSize(str, Enum):
    XS = "XS"
    S = "S"
    M = "M"
    L = "L"
    XL = "XL"
    XXL = "XXL"
    CUSTOM = "CUSTOM"


class OrderStatus(str, Enum):
    """Fulfillment stage, independent of payment."""

    ACCEPTED = "accepted"
    PROCESSING = "processing"
    READY = "ready"
    ENROUTE_PICKUP = "enroute_pickup"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    ARRIVED = "arrived"


class PaymentStatus(str, Enum):
    PAID = "paid"
    REFUNDED = "refunded"
    PENDING = "pending"


@dataclass(frozen=True, slots=True)
class OrderItem:
    product_id: str
    quantity: int
    unit_price: int  # minor units, taken from the catalog at checkout
    size: OrderSize
    custom_size: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        if self.quantity < 1:
            raise ValueError("quantity must be >= 1")
        if self.unit_price < 0:
            raise ValueError("unit_price must be >= 0")

        if self.size is OrderSize.CUSTOM:
            if not self.custom_size:
                raise ValueError("custom_size is required when size is CUSTOM")
            missing = [m for m in REQUIRED_MEASUREMENTS if not self.custom_size.get(m)]
            if missing:
                raise ValueError(f"custom_size is missing measurements: {', '.join(missing)}")
        elif self.custom_size is not None:
            raise ValueError("custom_size is only allowed when size is CUSTOM")

    @property
    def line_total(self) -> int:
        return self.unit_price * self.quantity

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "size": self.size.value,
            "custom_size": dict(self.custom_size) if self.custom_size is not None else None,
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "OrderItem":
        custom_size = data.get("custom_size")
        return OrderItem(
            product_id=str(data["product_id"]),
            quantity=int(data["quantity"]),
            unit_price=int(data["unit_price"]),
            size=OrderSize(str(data["size"])),
            custom_size=dict(custom_size) if custom_size is not None else None,
        )


@dataclass(frozen=True, slots=True)
class ShippingInfo:
    full_name: str
    email: str
    phone: str
    delivery_address: str
    delivery_notes: str = ""

    def __post_init__(self) -> None:
        # Normalize the way the storefront always has: trimmed, email lower-cased.
        object.__setattr__(self, "full_name", self.full_name.strip())
        object.__setattr__(self, "email", self.email.strip().lower())
        object.__setattr__(self, "phone", self.phone.strip())
        object.__setattr__(self, "delivery_address", self.delivery_address.strip())
        object.__setattr__(self, "delivery_notes", (self.delivery_notes or "").strip())

        for name in ("full_name", "email", "phone", "delivery_address"):
            if not getattr(self, name):
                raise ValueError(f"shipping {name} is required")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "full_name": self.full_name,
            "email": self.email,
            "phone": self.phone,
            "delivery_address": self.delivery_address,
            "delivery_notes": self.delivery_notes,
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "ShippingInfo":
        return ShippingInfo(
            full_name=str(data["full_name"]),
            email=str(data["email"]),
            phone=str(data["phone"]),
            delivery_address=str(data["delivery_address"]),
            delivery_notes=str(data.get("delivery_notes") or ""),
        )


@dataclass(frozen=True, slots=True)
class OrderFees:
    express_service: bool = False
    express_fee: int = 0

    def __post_init__(self) -> None:
        if self.express_fee < 0:
            raise ValueError("express_fee must be >= 0")


@dataclass(frozen=True, slots=True)
class OrderSnapshot:
    """
    Immutable record of what was bought, captured at checkout time.

    This is the authoritative source used to build the Order after payment is
    confirmed, independent of later catalog changes.
    """

    items: Tuple[OrderItem, ...]
    shipping_info: ShippingInfo
    total_price: int
    fees: OrderFees = field(default_factory=OrderFees)

    def __post_init__(self) -> None:
        if not self.items:
            raise ValueError("snapshot must contain at least one item")
        if self.total_price != sum(item.line_total for item in self.items):
            raise ValueError("total_price must equal the sum of line totals")

    @property
    def amount_due(self) -> int:
        """Amount charged through the gateway: items plus fees."""
        return self.total_price + self.fees.express_fee

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [item.to_dict() for item in self.items],
            "shipping_info": self.shipping_info.to_dict(),
            "total_price": self.total_price,
            "fees": {
                "express_service": self.fees.express_service,
                "express_fee": self.fees.express_fee,
            },
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "OrderSnapshot":
        fees = data.get("fees") or {}
        return OrderSnapshot(
            items=tuple(OrderItem.from_dict(item) for item in data["items"]),
            shipping_info=ShippingInfo.from_dict(data["shipping_info"]),
            total_price=int(data["total_price"]),
            fees=OrderFees(
                express_service=bool(fees.get("express_service", False)),
                express_fee=int(fees.get("express_fee", 0)),
            ),
        )


@dataclass(frozen=True, slots=True)
class Order:
    """
    Fulfillment record created only by settlement.

    payment_reference equals the reference of the Transaction that paid for
    this order; persistence keeps it unique.
    """

    order_id: UUID
    user_id: str
    items: Tuple[OrderItem, ...]
    shipping_info: ShippingInfo
    total_price: int
    payment_reference: str
    created_at: datetime
    express_service: bool = False
    express_fee: int = 0
    status: OrderStatus = OrderStatus.ACCEPTED
    payment_status: PaymentStatus = PaymentStatus.PAID

    def __post_init__(self) -> None:
        require_utc_timestamp("created_at", self.created_at)

    @staticmethod
    def from_snapshot(
        *,
        user_id: str,
        snapshot: OrderSnapshot,
        payment_reference: str,
        created_at: datetime,
        order_id: Optional[UUID] = None,
    ) -> "Order":
        return Order(
            order_id=order_id or uuid4(),
            user_id=user_id,
            items=snapshot.items,
            shipping_info=snapshot.shipping_info,
            total_price=snapshot.total_price,
            express_service=snapshot.fees.express_service,
            express_fee=snapshot.fees.express_fee,
            payment_reference=payment_reference,
            created_at=created_at,
        )

    def item_dicts(self) -> List[Dict[str, Any]]:
        return [item.to_dict() for item in self.items]
