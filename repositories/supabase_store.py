"""
Supabase-backed checkout store (persistence).

Reads go straight to the `products`, `transactions` and `orders` tables.
Writes that must be atomic are staged by SupabaseUnitOfWork and committed in a
single call to the `apply_unit_of_work()` PostgreSQL function (see
sql/checkout_schema.sql), which:
- Locks the affected product rows (FOR UPDATE)
- Re-validates stock and decrements it, refusing to go negative
- Inserts the transaction / order rows
- Settles a transaction only if it is still pending with no order attached
All in a single database transaction.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional
from uuid import UUID

from domain.money import Currency, to_minor_units
from domain.order import Order, OrderItem, OrderSnapshot, OrderStatus, PaymentStatus, ShippingInfo
from domain.product import Product
from domain.time import parse_utc_datetime, require_utc_timestamp, utc_now
from domain.transaction import Transaction, TransactionStatus
from repositories.store import (
    CheckoutStore,
    SettlementConflictError,
    StockConflictError,
    StoreError,
    UnitOfWork,
)

# Supabase table names.
# Keep these aligned with sql/checkout_schema.sql.
_PRODUCTS_TABLE: str = "products"
_TRANSACTIONS_TABLE: str = "transactions"
_ORDERS_TABLE: str = "orders"
_APPLY_FUNCTION: str = "apply_unit_of_work"


def _to_iso_utc(dt: datetime, *, name: str) -> str:
    """Serialize a UTC datetime to ISO-8601 (timezone-aware, offset 0)."""

    require_utc_timestamp(name, dt)
    return dt.astimezone(timezone.utc).isoformat()


def _rows(response: Any, action: str) -> List[Mapping[str, Any]]:
    error = getattr(response, "error", None)
    if error:
        raise StoreError(f"Failed to {action}: {error}")
    return getattr(response, "data", None) or []


def _row_to_product(row: Mapping[str, Any]) -> Product:
    base_id = row.get("base_product_id")
    return Product(
        product_id=str(row["id"]),
        name=str(row.get("name") or row["id"]),
        price=to_minor_units(row["price"]),
        stock=int(row["stock"]),
        is_published=bool(row.get("is_published", False)),
        is_variant=bool(row.get("is_variant", False)),
        base_product_id=str(base_id) if base_id else None,
    )


def _row_to_transaction(row: Mapping[str, Any]) -> Transaction:
    order_id = row.get("order_id")
    updated_at = row.get("updated_at_utc")
    return Transaction(
        transaction_id=UUID(str(row["transaction_id"])),
        reference=str(row["reference"]),
        user_id=str(row["user_id"]),
        amount=int(row["amount"]),
        currency=Currency(str(row["currency"])),
        status=TransactionStatus(str(row["status"])),
        order_data=OrderSnapshot.from_dict(row["order_data"]),
        gateway_response=row.get("gateway_response"),
        order_id=UUID(str(order_id)) if order_id else None,
        created_at=parse_utc_datetime(row["created_at_utc"]),
        updated_at=parse_utc_datetime(updated_at) if updated_at else None,
    )


def _transaction_to_row(transaction: Transaction) -> Dict[str, Any]:
    return {
        "transaction_id": str(transaction.transaction_id),
        "reference": transaction.reference,
        "user_id": transaction.user_id,
        "amount": transaction.amount,
        "currency": transaction.currency.value,
        "status": transaction.status.value,
        "order_data": transaction.order_data.to_dict(),
        "gateway_response": dict(transaction.gateway_response) if transaction.gateway_response else None,
        "order_id": str(transaction.order_id) if transaction.order_id else None,
        "created_at_utc": _to_iso_utc(transaction.created_at, name="created_at"),
    }


def _row_to_order(row: Mapping[str, Any]) -> Order:
    return Order(
        order_id=UUID(str(row["order_id"])),
        user_id=str(row["user_id"]),
        items=tuple(OrderItem.from_dict(item) for item in row["items"]),
        shipping_info=ShippingInfo.from_dict(row["shipping_info"]),
        total_price=int(row["total_price"]),
        express_service=bool(row.get("express_service", False)),
        express_fee=int(row.get("express_fee") or 0),
        status=OrderStatus(str(row.get("status", OrderStatus.ACCEPTED.value))),
        payment_reference=str(row["payment_reference"]),
        payment_status=PaymentStatus(str(row.get("payment_status", PaymentStatus.PAID.value))),
        created_at=parse_utc_datetime(row["created_at_utc"]),
    )


def _order_to_row(order: Order) -> Dict[str, Any]:
    return {
        "order_id": str(order.order_id),
        "user_id": order.user_id,
        "items": order.item_dicts(),
        "shipping_info": order.shipping_info.to_dict(),
        "total_price": order.total_price,
        "express_service": order.express_service,
        "express_fee": order.express_fee,
        "status": order.status.value,
        "payment_reference": order.payment_reference,
        "payment_status": order.payment_status.value,
        "created_at_utc": _to_iso_utc(order.created_at, name="created_at"),
    }


class SupabaseUnitOfWork(UnitOfWork):
    """
    Stages writes and commits them through one RPC call.

    Reads inside the unit return committed values with this unit's own staged
    writes applied on top; the database function repeats the stock check under
    row locks, so a concurrent checkout that slipped in between is rejected at
    commit time with StockConflictError.
    """

    def __init__(self, store: "SupabaseCheckoutStore"):
        self._store = store
        self._operations: List[Dict[str, Any]] = []
        self._decrements: Dict[str, int] = {}
        self._transactions: Dict[str, Transaction] = {}
        self._active = False

    def begin(self) -> None:
        self._operations = []
        self._decrements = {}
        self._transactions = {}
        self._active = True

    def rollback(self) -> None:
        # Nothing has been written yet; dropping the staged operations is enough.
        self._operations = []
        self._decrements = {}
        self._transactions = {}
        self._active = False

    def commit(self) -> None:
        operations = list(self._operations)
        self.rollback()
        if not operations:
            return
        self._apply(operations)

    def _apply(self, operations: List[Dict[str, Any]]) -> None:
        from postgrest.exceptions import APIError

        client = self._store.client
        try:
            response = client.rpc(_APPLY_FUNCTION, {"p_operations": operations}).execute()
            error = getattr(response, "error", None)
            if error:
                raise StoreError(f"Failed to apply unit of work: {error}")
            result = response.data or {}
        except APIError as e:
            # supabase-py raises APIError when a PostgreSQL function returns JSON,
            # for success and error payloads alike.
            try:
                result = e.json() if callable(getattr(e, "json", None)) else {}
            except ValueError:
                result = {}
            if not result:
                raise StoreError(f"Failed to apply unit of work: {e}") from e

        if result.get("success") is True:
            return
        self._raise_for_result(result)

    @staticmethod
    def _raise_for_result(result: Mapping[str, Any]) -> None:
        code = result.get("error")
        message = result.get("message")
        details = result.get("details") or {}

        if code == "INSUFFICIENT_STOCK":
            raise StockConflictError(details.get("shortages") or {}, message)
        if code in ("ALREADY_SETTLED", "DUPLICATE_ORDER"):
            raise SettlementConflictError(str(details.get("reference") or ""), message)
        raise StoreError(f"Unit of work rejected ({code}): {message}")

    def read_stock(self, product_ids: Iterable[str]) -> Dict[str, int]:
        ids = sorted(set(product_ids))
        if not ids:
            return {}
        response = (
            self._store.client.table(_PRODUCTS_TABLE)
            .select("id, stock")
            .in_("id", ids)
            .execute()
        )
        rows = _rows(response, "read stock")
        return {
            str(row["id"]): int(row["stock"]) - self._decrements.get(str(row["id"]), 0)
            for row in rows
        }

    def decrement_stock(self, product_id: str, quantity: int) -> None:
        self._decrements[product_id] = self._decrements.get(product_id, 0) + quantity
        self._operations.append(
            {"op": "decrement_stock", "product_id": product_id, "quantity": quantity}
        )

    def insert_transaction(self, transaction: Transaction) -> None:
        self._transactions[transaction.reference] = transaction
        self._operations.append({"op": "insert_transaction", "row": _transaction_to_row(transaction)})

    def get_transaction(self, reference: str) -> Optional[Transaction]:
        staged = self._transactions.get(reference)
        if staged is not None:
            return staged
        return self._store.get_transaction(reference)

    def settle_transaction(
        self,
        reference: str,
        order_id: UUID,
        gateway_response: Optional[Mapping[str, Any]],
    ) -> None:
        current = self.get_transaction(reference)
        if current is None:
            raise StoreError(f"Unknown transaction: {reference}")
        if current.status is not TransactionStatus.PENDING or current.order_id is not None:
            raise SettlementConflictError(reference)

        self._transactions[reference] = current.transition(
            TransactionStatus.SUCCESS, at=utc_now(), order_id=order_id, gateway_response=gateway_response
        )
        self._operations.append(
            {
                "op": "settle_transaction",
                "reference": reference,
                "order_id": str(order_id),
                "gateway_response": dict(gateway_response) if gateway_response else None,
                "updated_at_utc": utc_now().isoformat(),
            }
        )

    def insert_order(self, order: Order) -> None:
        self._operations.append({"op": "insert_order", "row": _order_to_row(order)})


class SupabaseCheckoutStore(CheckoutStore):
    def __init__(self, client: Any = None):
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            from repositories.client import get_supabase

            self._client = get_supabase()
        return self._client

    def load_products(self, product_ids: Iterable[str]) -> Dict[str, Product]:
        ids = sorted(set(product_ids))
        if not ids:
            return {}

        response = self.client.table(_PRODUCTS_TABLE).select("*").in_("id", ids).execute()
        products = {p.product_id: p for p in map(_row_to_product, _rows(response, "load products"))}

        base_ids = sorted(
            {p.base_product_id for p in products.values() if p.is_variant and p.base_product_id}
            - set(products)
        )
        if base_ids:
            response = self.client.table(_PRODUCTS_TABLE).select("*").in_("id", base_ids).execute()
            for product in map(_row_to_product, _rows(response, "load base products")):
                products[product.product_id] = product

        return products

    def get_transaction(self, reference: str) -> Optional[Transaction]:
        response = (
            self.client.table(_TRANSACTIONS_TABLE)
            .select("*")
            .eq("reference", reference)
            .limit(1)
            .execute()
        )
        rows = _rows(response, "get transaction")
        return _row_to_transaction(rows[0]) if rows else None

    def list_transactions_by_user(self, user_id: str, page: int = 1, limit: int = 10) -> List[Transaction]:
        start = (max(page, 1) - 1) * limit
        response = (
            self.client.table(_TRANSACTIONS_TABLE)
            .select("*")
            .eq("user_id", user_id)
            .order("created_at_utc", desc=True)
            .range(start, start + limit - 1)
            .execute()
        )
        return [_row_to_transaction(row) for row in _rows(response, "list transactions")]

    def count_transactions_by_user(self, user_id: str) -> int:
        response = (
            self.client.table(_TRANSACTIONS_TABLE)
            .select("transaction_id", count="exact")
            .eq("user_id", user_id)
            .execute()
        )
        _rows(response, "count transactions")
        return getattr(response, "count", 0) or 0

    def list_stale_pending_transactions(self, older_than: datetime, limit: int = 100) -> List[Transaction]:
        response = (
            self.client.table(_TRANSACTIONS_TABLE)
            .select("*")
            .eq("status", TransactionStatus.PENDING.value)
            .lt("created_at_utc", _to_iso_utc(older_than, name="older_than"))
            .order("created_at_utc")
            .limit(limit)
            .execute()
        )
        return [_row_to_transaction(row) for row in _rows(response, "list pending transactions")]

    def close_transaction(
        self,
        reference: str,
        status: TransactionStatus,
        gateway_response: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        if status not in (TransactionStatus.FAILED, TransactionStatus.ABANDONED):
            raise ValueError(f"close_transaction cannot set status {status.value}")

        payload: Dict[str, Any] = {
            "status": status.value,
            "updated_at_utc": utc_now().isoformat(),
        }
        if gateway_response is not None:
            payload["gateway_response"] = dict(gateway_response)

        # Conditional update: only a still-pending transaction may be closed.
        response = (
            self.client.table(_TRANSACTIONS_TABLE)
            .update(payload)
            .eq("reference", reference)
            .eq("status", TransactionStatus.PENDING.value)
            .execute()
        )
        return bool(_rows(response, "close transaction"))

    def record_gateway_response(self, reference: str, gateway_response: Mapping[str, Any]) -> None:
        response = (
            self.client.table(_TRANSACTIONS_TABLE)
            .update({"gateway_response": dict(gateway_response), "updated_at_utc": utc_now().isoformat()})
            .eq("reference", reference)
            .execute()
        )
        _rows(response, "record gateway response")

    def get_order(self, order_id: UUID) -> Optional[Order]:
        response = (
            self.client.table(_ORDERS_TABLE)
            .select("*")
            .eq("order_id", str(order_id))
            .limit(1)
            .execute()
        )
        rows = _rows(response, "get order")
        return _row_to_order(rows[0]) if rows else None

    def get_order_by_payment_reference(self, reference: str) -> Optional[Order]:
        response = (
            self.client.table(_ORDERS_TABLE)
            .select("*")
            .eq("payment_reference", reference)
            .limit(1)
            .execute()
        )
        rows = _rows(response, "get order by payment reference")
        return _row_to_order(rows[0]) if rows else None

    def list_orders_by_user(self, user_id: str, page: int = 1, limit: int = 10) -> List[Order]:
        start = (max(page, 1) - 1) * limit
        response = (
            self.client.table(_ORDERS_TABLE)
            .select("*")
            .eq("user_id", user_id)
            .order("created_at_utc", desc=True)
            .range(start, start + limit - 1)
            .execute()
        )
        return [_row_to_order(row) for row in _rows(response, "list orders")]

    def count_orders_by_user(self, user_id: str) -> int:
        response = (
            self.client.table(_ORDERS_TABLE)
            .select("order_id", count="exact")
            .eq("user_id", user_id)
            .execute()
        )
        _rows(response, "count orders")
        return getattr(response, "count", 0) or 0

    def unit_of_work(self) -> UnitOfWork:
        return SupabaseUnitOfWork(self)


__all__ = ["SupabaseCheckoutStore", "SupabaseUnitOfWork"]
