"""
Tests for `repositories/supabase_store.py` against a mocked Supabase client.

Covers:
- Row mapping (decimal catalog prices, UTC timestamps, snapshot JSON).
- Conditional close of pending transactions.
- Units of work are sent as one `apply_unit_of_work` RPC call and its error
  codes map to the store exceptions.
"""

from __future__ import annotations

from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Any, Dict, List
from unittest.mock import MagicMock
from uuid import UUID

import pytest
from postgrest.exceptions import APIError

from domain.transaction import TransactionStatus
from repositories.store import SettlementConflictError, StockConflictError, StoreError
from repositories.supabase_store import SupabaseCheckoutStore

REFERENCE = "ORD_1735732800000_user_1_ABC123"


class FakeQuery:
    """Chainable stand-in for a postgrest request builder."""

    def __init__(self, data: Any = None, count: int = None, error: Any = None):
        self.calls: List[tuple] = []
        self._response = SimpleNamespace(data=data, count=count, error=error)

    def __getattr__(self, name: str):
        def method(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            return self

        return method

    def execute(self):
        return self._response


def _client(*queries: FakeQuery) -> MagicMock:
    client = MagicMock()
    client.table.side_effect = list(queries)
    return client


def _transaction_row(**overrides: Any) -> Dict[str, Any]:
    row = {
        "transaction_id": "00000000-0000-0000-0000-000000000001",
        "reference": REFERENCE,
        "user_id": "user_1",
        "amount": 2000,
        "currency": "GHS",
        "status": "pending",
        "order_data": {
            "items": [{"product_id": "P", "quantity": 2, "unit_price": 1000, "size": "M", "custom_size": None}],
            "shipping_info": {
                "full_name": "Ama Mensah",
                "email": "ama@example.com",
                "phone": "0201234567",
                "delivery_address": "Accra",
                "delivery_notes": "",
            },
            "total_price": 2000,
            "fees": {"express_service": False, "express_fee": 0},
        },
        "gateway_response": None,
        "order_id": None,
        "created_at_utc": "2025-01-01T12:00:00Z",
        "updated_at_utc": None,
    }
    row.update(overrides)
    return row


def test_get_transaction_maps_row() -> None:
    query = FakeQuery(data=[_transaction_row()])
    store = SupabaseCheckoutStore(client=_client(query))

    transaction = store.get_transaction(REFERENCE)

    assert transaction.transaction_id == UUID("00000000-0000-0000-0000-000000000001")
    assert transaction.status is TransactionStatus.PENDING
    assert transaction.created_at == datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
    assert transaction.order_data.items[0].unit_price == 1000
    assert ("eq", ("reference", REFERENCE), {}) in query.calls


def test_get_transaction_missing_returns_none() -> None:
    store = SupabaseCheckoutStore(client=_client(FakeQuery(data=[])))

    assert store.get_transaction("nope") is None


def test_response_error_raises_store_error() -> None:
    store = SupabaseCheckoutStore(client=_client(FakeQuery(error="permission denied")))

    with pytest.raises(StoreError, match="permission denied"):
        store.get_transaction(REFERENCE)


def test_load_products_converts_prices_and_fetches_base_products() -> None:
    variants = FakeQuery(
        data=[
            {"id": "V", "name": "Shirt / Blue", "price": "12.50", "stock": 4,
             "is_published": False, "is_variant": True, "base_product_id": "B"},
        ]
    )
    bases = FakeQuery(data=[{"id": "B", "name": "Shirt", "price": 12, "stock": 0, "is_published": True}])
    store = SupabaseCheckoutStore(client=_client(variants, bases))

    products = store.load_products(["V"])

    assert products["V"].price == 1250
    assert products["B"].price == 1200
    assert products["V"].is_purchasable(products)
    assert ("in_", ("id", ["B"]), {}) in bases.calls


def test_close_transaction_only_updates_pending() -> None:
    closed = FakeQuery(data=[_transaction_row(status="failed")])
    untouched = FakeQuery(data=[])
    store = SupabaseCheckoutStore(client=_client(closed, untouched))

    assert store.close_transaction(REFERENCE, TransactionStatus.FAILED, {"status": "failed"}) is True
    assert store.close_transaction(REFERENCE, TransactionStatus.ABANDONED) is False

    assert ("eq", ("status", "pending"), {}) in closed.calls
    with pytest.raises(ValueError):
        store.close_transaction(REFERENCE, TransactionStatus.SUCCESS)


def test_count_transactions_uses_exact_count() -> None:
    query = FakeQuery(data=[], count=7)
    store = SupabaseCheckoutStore(client=_client(query))

    assert store.count_transactions_by_user("user_1") == 7
    assert query.calls[0] == ("select", ("transaction_id",), {"count": "exact"})


def _order_row(**overrides: Any) -> Dict[str, Any]:
    row = {
        "order_id": "00000000-0000-0000-0000-0000000000aa",
        "user_id": "user_1",
        "items": [{"product_id": "P", "quantity": 2, "unit_price": 1000, "size": "M", "custom_size": None}],
        "shipping_info": {
            "full_name": "Ama Mensah",
            "email": "ama@example.com",
            "phone": "0201234567",
            "delivery_address": "Accra",
            "delivery_notes": "",
        },
        "total_price": 2000,
        "express_service": False,
        "express_fee": 0,
        "status": "accepted",
        "payment_reference": REFERENCE,
        "payment_status": "paid",
        "created_at_utc": "2025-01-01T12:05:00Z",
    }
    row.update(overrides)
    return row


def test_list_orders_by_user_pages_newest_first() -> None:
    query = FakeQuery(data=[_order_row()])
    store = SupabaseCheckoutStore(client=_client(query))

    orders = store.list_orders_by_user("user_1", page=3, limit=5)

    assert [o.order_id for o in orders] == [UUID("00000000-0000-0000-0000-0000000000aa")]
    assert orders[0].created_at == datetime(2025, 1, 1, 12, 5, tzinfo=timezone.utc)
    assert ("eq", ("user_id", "user_1"), {}) in query.calls
    assert ("order", ("created_at_utc",), {"desc": True}) in query.calls
    assert ("range", (10, 14), {}) in query.calls


def test_count_orders_uses_exact_count() -> None:
    query = FakeQuery(data=[], count=4)
    store = SupabaseCheckoutStore(client=_client(query))

    assert store.count_orders_by_user("user_1") == 4
    assert query.calls[0] == ("select", ("order_id",), {"count": "exact"})


def test_unit_of_work_commits_through_one_rpc() -> None:
    stock = FakeQuery(data=[{"id": "P", "stock": 3}])
    client = _client(stock)
    client.rpc.return_value = FakeQuery(data={"success": True})
    store = SupabaseCheckoutStore(client=client)

    with store.unit_of_work() as uow:
        uow.decrement_stock("P", 2)
        assert uow.read_stock(["P"]) == {"P": 1}

    client.rpc.assert_called_once()
    name, params = client.rpc.call_args.args
    assert name == "apply_unit_of_work"
    assert params["p_operations"] == [{"op": "decrement_stock", "product_id": "P", "quantity": 2}]


def test_unit_of_work_rolls_back_without_calling_database() -> None:
    client = _client()
    store = SupabaseCheckoutStore(client=client)

    with pytest.raises(RuntimeError):
        with store.unit_of_work() as uow:
            uow.decrement_stock("P", 1)
            raise RuntimeError("boom")

    client.rpc.assert_not_called()


def test_insufficient_stock_result_raises_stock_conflict() -> None:
    client = _client()
    client.rpc.return_value = FakeQuery(
        data={
            "success": False,
            "error": "INSUFFICIENT_STOCK",
            "message": "Insufficient stock",
            "details": {"shortages": {"P": [2, 1]}},
        }
    )
    store = SupabaseCheckoutStore(client=client)

    with pytest.raises(StockConflictError) as exc_info:
        with store.unit_of_work() as uow:
            uow.decrement_stock("P", 2)

    assert exc_info.value.shortages == {"P": [2, 1]}


def test_already_settled_result_raises_settlement_conflict() -> None:
    client = _client(FakeQuery(data=[_transaction_row()]))
    client.rpc.side_effect = APIError(
        {"success": False, "error": "ALREADY_SETTLED", "message": "already settled",
         "details": {"reference": REFERENCE}}
    )
    store = SupabaseCheckoutStore(client=client)

    with pytest.raises(SettlementConflictError) as exc_info:
        with store.unit_of_work() as uow:
            uow.settle_transaction(REFERENCE, UUID("00000000-0000-0000-0000-0000000000aa"), None)

    assert exc_info.value.reference == REFERENCE


def test_settle_is_rejected_locally_when_not_pending() -> None:
    client = _client(FakeQuery(data=[_transaction_row(status="failed")]))
    store = SupabaseCheckoutStore(client=client)

    with pytest.raises(SettlementConflictError):
        with store.unit_of_work() as uow:
            uow.settle_transaction(REFERENCE, UUID("00000000-0000-0000-0000-0000000000aa"), None)

    client.rpc.assert_not_called()
