"""
In-memory checkout store.

Used for local development (STORAGE_BACKEND=memory) and by the test-suite.
Units of work are fully serialised behind one process-wide re-entrant lock and
operate on a private working copy that is swapped in on commit, which gives
them serializable isolation: a second checkout racing for the same product
either sees the decremented stock or is rejected.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional
from uuid import UUID

from domain.order import Order
from domain.product import Product
from domain.time import utc_now
from domain.transaction import Transaction, TransactionStatus
from repositories.store import (
    CheckoutStore,
    SettlementConflictError,
    StoreError,
    UnitOfWork,
)


class InMemoryUnitOfWork(UnitOfWork):
    def __init__(self, store: "InMemoryCheckoutStore"):
        self._store = store
        self._active = False
        self._stock: Dict[str, int] = {}
        self._transactions: Dict[str, Transaction] = {}
        self._orders: Dict[UUID, Order] = {}

    def begin(self) -> None:
        if self._active:
            raise StoreError("Unit of work already started")
        self._store._lock.acquire()
        self._active = True
        self._stock = {pid: p.stock for pid, p in self._store._products.items()}
        self._transactions = {}
        self._orders = {}

    def commit(self) -> None:
        self._require_active()
        try:
            negative = sorted(pid for pid, stock in self._stock.items() if stock < 0)
            if negative:
                raise StoreError(f"Refusing to commit negative stock for: {', '.join(negative)}")

            for pid, stock in self._stock.items():
                product = self._store._products[pid]
                if product.stock != stock:
                    self._store._products[pid] = product.with_stock(stock)
            self._store._transactions.update(self._transactions)
            for order in self._orders.values():
                self._store._orders[order.order_id] = order
                self._store._orders_by_reference[order.payment_reference] = order.order_id
        finally:
            self._release()

    def rollback(self) -> None:
        if self._active:
            self._release()

    def _release(self) -> None:
        self._active = False
        self._stock = {}
        self._transactions = {}
        self._orders = {}
        self._store._lock.release()

    def _require_active(self) -> None:
        if not self._active:
            raise StoreError("Unit of work is not active")

    def read_stock(self, product_ids: Iterable[str]) -> Dict[str, int]:
        self._require_active()
        return {pid: self._stock[pid] for pid in product_ids if pid in self._stock}

    def decrement_stock(self, product_id: str, quantity: int) -> None:
        self._require_active()
        if product_id not in self._stock:
            raise StoreError(f"Unknown product: {product_id}")
        self._stock[product_id] -= quantity

    def insert_transaction(self, transaction: Transaction) -> None:
        self._require_active()
        if self.get_transaction(transaction.reference) is not None:
            raise StoreError(f"Duplicate transaction reference: {transaction.reference}")
        self._transactions[transaction.reference] = transaction

    def get_transaction(self, reference: str) -> Optional[Transaction]:
        self._require_active()
        staged = self._transactions.get(reference)
        if staged is not None:
            return staged
        return self._store._transactions.get(reference)

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
            TransactionStatus.SUCCESS,
            at=utc_now(),
            order_id=order_id,
            gateway_response=gateway_response,
        )

    def insert_order(self, order: Order) -> None:
        self._require_active()
        reference = order.payment_reference
        if reference in self._store._orders_by_reference or any(
            o.payment_reference == reference for o in self._orders.values()
        ):
            raise SettlementConflictError(reference, f"An order already exists for {reference}")
        self._orders[order.order_id] = order


class InMemoryCheckoutStore(CheckoutStore):
    def __init__(self, products: Iterable[Product] = ()):
        self._lock = threading.RLock()
        self._products: Dict[str, Product] = {}
        self._transactions: Dict[str, Transaction] = {}
        self._orders: Dict[UUID, Order] = {}
        self._orders_by_reference: Dict[str, UUID] = {}
        for product in products:
            self.add_product(product)

    def add_product(self, product: Product) -> None:
        with self._lock:
            self._products[product.product_id] = product

    def get_product(self, product_id: str) -> Optional[Product]:
        with self._lock:
            return self._products.get(product_id)

    def load_products(self, product_ids: Iterable[str]) -> Dict[str, Product]:
        with self._lock:
            found = {pid: self._products[pid] for pid in set(product_ids) if pid in self._products}
            for product in list(found.values()):
                base_id = product.base_product_id
                if product.is_variant and base_id and base_id in self._products:
                    found.setdefault(base_id, self._products[base_id])
            return found

    def get_transaction(self, reference: str) -> Optional[Transaction]:
        with self._lock:
            return self._transactions.get(reference)

    def list_transactions_by_user(self, user_id: str, page: int = 1, limit: int = 10) -> List[Transaction]:
        with self._lock:
            owned = [t for t in self._transactions.values() if t.user_id == user_id]
        owned.sort(key=lambda t: t.created_at, reverse=True)
        start = (max(page, 1) - 1) * limit
        return owned[start:start + limit]

    def count_transactions_by_user(self, user_id: str) -> int:
        with self._lock:
            return sum(1 for t in self._transactions.values() if t.user_id == user_id)

    def list_stale_pending_transactions(self, older_than: datetime, limit: int = 100) -> List[Transaction]:
        with self._lock:
            stale = [
                t for t in self._transactions.values()
                if t.status is TransactionStatus.PENDING and t.created_at < older_than
            ]
        stale.sort(key=lambda t: t.created_at)
        return stale[:limit]

    def close_transaction(
        self,
        reference: str,
        status: TransactionStatus,
        gateway_response: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        if status not in (TransactionStatus.FAILED, TransactionStatus.ABANDONED):
            raise ValueError(f"close_transaction cannot set status {status.value}")
        with self._lock:
            current = self._transactions.get(reference)
            if current is None or current.status is not TransactionStatus.PENDING:
                return False
            self._transactions[reference] = current.transition(
                status, at=utc_now(), gateway_response=gateway_response
            )
            return True

    def record_gateway_response(self, reference: str, gateway_response: Mapping[str, Any]) -> None:
        with self._lock:
            current = self._transactions.get(reference)
            if current is None:
                raise StoreError(f"Unknown transaction: {reference}")
            self._transactions[reference] = replace(
                current, gateway_response=dict(gateway_response), updated_at=utc_now()
            )

    def get_order(self, order_id: UUID) -> Optional[Order]:
        with self._lock:
            return self._orders.get(order_id)

    def get_order_by_payment_reference(self, reference: str) -> Optional[Order]:
        with self._lock:
            order_id = self._orders_by_reference.get(reference)
            return self._orders.get(order_id) if order_id is not None else None

    def list_orders_by_user(self, user_id: str, page: int = 1, limit: int = 10) -> List[Order]:
        with self._lock:
            owned = [o for o in self._orders.values() if o.user_id == user_id]
        owned.sort(key=lambda o: o.created_at, reverse=True)
        start = (max(page, 1) - 1) * limit
        return owned[start:start + limit]

    def count_orders_by_user(self, user_id: str) -> int:
        with self._lock:
            return sum(1 for o in self._orders.values() if o.user_id == user_id)

    def unit_of_work(self) -> UnitOfWork:
        return InMemoryUnitOfWork(self)


__all__ = ["InMemoryCheckoutStore", "InMemoryUnitOfWork"]
