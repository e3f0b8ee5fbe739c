"""
Storage contracts for the checkout-to-settlement pipeline.

This module contains *only* interfaces. Backends (Supabase, in-memory) live in
their own modules and must honour these guarantees:

- A UnitOfWork is atomic: every write staged through it is committed together
  or not at all. Leaving the `with` block normally commits; leaving it with an
  exception rolls back.
- Stock reads made inside a UnitOfWork observe the same point-in-time view the
  decrement is applied to (snapshot or stricter isolation).
- `settle_transaction` is a conditional write: pending -> success only if the
  transaction is still pending and has no order attached. Losing that race
  raises SettlementConflictError and the whole unit is rolled back.
- Orders are unique per payment_reference.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from types import TracebackType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Type
from uuid import UUID

from domain.order import Order
from domain.product import Product
from domain.transaction import Transaction, TransactionStatus


class StoreError(RuntimeError):
    """Raised when the storage backend rejects or fails an operation."""


class SettlementConflictError(StoreError):
    """Raised when a transaction was settled concurrently by another caller."""

    def __init__(self, reference: str, message: Optional[str] = None):
        self.reference = reference
        super().__init__(message or f"Transaction {reference} is already settled")


class StockConflictError(StoreError):
    """
    Raised by a backend when its own atomic re-check finds insufficient stock.

    `shortages` maps product_id -> (requested, available).
    """

    def __init__(self, shortages: Mapping[str, Any], message: Optional[str] = None):
        self.shortages = dict(shortages)
        super().__init__(message or f"Insufficient stock for: {', '.join(sorted(self.shortages))}")


class UnitOfWork(ABC):
    """A set of storage operations committed or rolled back together."""

    def __enter__(self) -> "UnitOfWork":
        self.begin()
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        if exc_type is None:
            self.commit()
        else:
            self.rollback()

    @abstractmethod
    def begin(self) -> None: ...

    @abstractmethod
    def commit(self) -> None: ...

    @abstractmethod
    def rollback(self) -> None: ...

    # Stock
    @abstractmethod
    def read_stock(self, product_ids: Iterable[str]) -> Dict[str, int]:
        """Current stock per product as seen by this unit (including its own writes)."""

    @abstractmethod
    def decrement_stock(self, product_id: str, quantity: int) -> None: ...

    # Transactions
    @abstractmethod
    def insert_transaction(self, transaction: Transaction) -> None: ...

    @abstractmethod
    def get_transaction(self, reference: str) -> Optional[Transaction]: ...

    @abstractmethod
    def settle_transaction(
        self,
        reference: str,
        order_id: UUID,
        gateway_response: Optional[Mapping[str, Any]],
    ) -> None: ...

    # Orders
    @abstractmethod
    def insert_order(self, order: Order) -> None: ...


class TransactionLedger(ABC):
    """Persistence of payment-intent records keyed by reference."""

    @abstractmethod
    def get_transaction(self, reference: str) -> Optional[Transaction]: ...

    @abstractmethod
    def list_transactions_by_user(self, user_id: str, page: int = 1, limit: int = 10) -> List[Transaction]:
        """Newest first."""

    @abstractmethod
    def count_transactions_by_user(self, user_id: str) -> int: ...

    @abstractmethod
    def list_stale_pending_transactions(self, older_than: datetime, limit: int = 100) -> List[Transaction]: ...

    @abstractmethod
    def close_transaction(
        self,
        reference: str,
        status: TransactionStatus,
        gateway_response: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """
        Conditionally move a pending transaction to failed or abandoned.

        Returns True if this call performed the transition, False if the
        transaction was missing or no longer pending.
        """

    @abstractmethod
    def record_gateway_response(self, reference: str, gateway_response: Mapping[str, Any]) -> None: ...


class CheckoutStore(TransactionLedger):
    """Everything the checkout and settlement services need from storage."""

    @abstractmethod
    def load_products(self, product_ids: Iterable[str]) -> Dict[str, Product]:
        """
        Load catalog rows for `product_ids` plus the base products of any
        variants among them. Unknown ids are simply absent from the result.
        """

    @abstractmethod
    def get_order(self, order_id: UUID) -> Optional[Order]: ...

    @abstractmethod
    def get_order_by_payment_reference(self, reference: str) -> Optional[Order]: ...

    @abstractmethod
    def list_orders_by_user(self, user_id: str, page: int = 1, limit: int = 10) -> List[Order]:
        """Newest first."""

    @abstractmethod
    def count_orders_by_user(self, user_id: str) -> int: ...

    @abstractmethod
    def unit_of_work(self) -> UnitOfWork: ...


__all__ = [
    "CheckoutStore",
    "SettlementConflictError",
    "StockConflictError",
    "StoreError",
    "TransactionLedger",
    "UnitOfWork",
]
