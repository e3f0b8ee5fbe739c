"""
Tests for `services/checkout_service.py`.

Covers contract rules:
- Nothing is written when validation fails (empty cart, unpublished product,
  short stock, bad custom size).
- Prices come from the catalog, never from the client.
- Stock decrement and the pending transaction commit together.
- Concurrent checkouts never oversell: at most floor(S/Q) succeed.
- A gateway failure after the local commit leaves the transaction pending.
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from domain.order import OrderSize
from domain.product import Product
from domain.transaction import TransactionStatus
from repositories.memory_store import InMemoryCheckoutStore
from repositories.store import StockConflictError
from services.checkout_service import (
    CartItem,
    CheckoutOrchestrator,
    CheckoutRequest,
    CheckoutValidationError,
    EmptyCartError,
    GatewayUnavailableError,
    InsufficientStockError,
    ProductUnavailableError,
)


def test_checkout_reserves_stock_and_opens_pending_transaction(
    orchestrator, store, fake_gateway, make_checkout_request
) -> None:
    result = orchestrator.initiate_checkout(make_checkout_request(("P", 2)))

    assert result.amount == 2000
    assert result.redirect_url.endswith(result.reference)
    assert store.get_product("P").stock == 1

    transaction = store.get_transaction(result.reference)
    assert transaction.status is TransactionStatus.PENDING
    assert transaction.amount == 2000
    assert transaction.order_id is None
    assert transaction.order_data.shipping_info.email == "ama@example.com"
    assert transaction.gateway_response is not None
    assert fake_gateway.intents[result.reference]["amount"] == 2000

    # No order exists until payment is confirmed.
    assert store.list_orders() == []


def test_submitted_price_is_ignored(orchestrator, store, make_checkout_request) -> None:
    cheap = CartItem(product_id="P", quantity=1, size=OrderSize.M, submitted_price=1)

    result = orchestrator.initiate_checkout(make_checkout_request(cheap))

    transaction = store.get_transaction(result.reference)
    assert transaction.order_data.items[0].unit_price == 1000
    assert result.amount == 1000


def test_express_fee_is_added_to_amount(orchestrator, store, make_checkout_request) -> None:
    result = orchestrator.initiate_checkout(make_checkout_request(("P", 1), express_service=True))

    transaction = store.get_transaction(result.reference)
    assert result.amount == 1500
    assert transaction.order_data.total_price == 1000
    assert transaction.order_data.fees.express_fee == 500


def test_empty_cart_is_rejected(orchestrator, store, make_checkout_request) -> None:
    request = make_checkout_request()
    empty = CheckoutRequest(
        user_id=request.user_id,
        email=request.email,
        items=[],
        shipping_info=request.shipping_info,
    )

    with pytest.raises(EmptyCartError):
        orchestrator.initiate_checkout(empty)


def test_unpublished_product_is_rejected(orchestrator, store, fake_gateway, make_checkout_request) -> None:
    store.add_product(Product(product_id="D", name="Draft", price=500, stock=10, is_published=False))

    with pytest.raises(ProductUnavailableError) as exc_info:
        orchestrator.initiate_checkout(make_checkout_request(("P", 1), ("D", 1), ("missing", 1)))

    assert exc_info.value.product_ids == ["D", "missing"]
    assert store.get_product("P").stock == 3
    assert fake_gateway.requests == []


def test_variant_of_published_base_can_be_bought(orchestrator, store, make_checkout_request) -> None:
    store.add_product(
        Product(
            product_id="V", name="Shirt / Blue", price=1200, stock=2,
            is_published=False, is_variant=True, base_product_id="P",
        )
    )

    result = orchestrator.initiate_checkout(make_checkout_request(("V", 2)))

    assert result.amount == 2400
    assert store.get_product("V").stock == 0
    assert store.get_product("P").stock == 3


def test_insufficient_stock_mutates_nothing(orchestrator, store, fake_gateway, make_checkout_request) -> None:
    store.add_product(Product(product_id="Q", name="Scarf", price=300, stock=5))

    with pytest.raises(InsufficientStockError) as exc_info:
        orchestrator.initiate_checkout(make_checkout_request(("Q", 1), ("P", 2), ("P", 2)))

    assert exc_info.value.errors == ["Product P: Insufficient stock. Available: 3, Requested: 4"]
    assert store.get_product("P").stock == 3
    assert store.get_product("Q").stock == 5
    assert store.count_transactions_by_user("user_1") == 0
    assert fake_gateway.requests == []


def test_custom_size_without_measurements_is_a_validation_error(orchestrator, store, make_checkout_request) -> None:
    item = CartItem(product_id="P", quantity=1, size=OrderSize.CUSTOM)

    with pytest.raises(CheckoutValidationError):
        orchestrator.initiate_checkout(make_checkout_request(item))

    assert store.get_product("P").stock == 3


def test_gateway_failure_leaves_transaction_pending(orchestrator, store, fake_gateway, make_checkout_request) -> None:
    fake_gateway.fail_initialize = True

    with pytest.raises(GatewayUnavailableError) as exc_info:
        orchestrator.initiate_checkout(make_checkout_request(("P", 1)))

    transaction = store.get_transaction(exc_info.value.reference)
    assert transaction.status is TransactionStatus.PENDING
    assert store.get_product("P").stock == 2
    # Exactly one attempt: no retry during checkout.
    assert fake_gateway.count("POST", "/transaction/initialize") == 1


def test_backend_stock_conflict_maps_to_insufficient_stock(store, gateway, make_checkout_request) -> None:
    class RacingStore(InMemoryCheckoutStore):
        def unit_of_work(self):
            uow = super().unit_of_work()

            def commit():
                uow.rollback()
                raise StockConflictError({"P": (2, 1)})

            uow.commit = commit
            return uow

    racing = RacingStore([store.get_product("P")])
    orchestrator = CheckoutOrchestrator(store=racing, gateway=gateway)

    with pytest.raises(InsufficientStockError) as exc_info:
        orchestrator.initiate_checkout(make_checkout_request(("P", 2)))

    assert exc_info.value.errors == ["Product P: Insufficient stock. Available: 1, Requested: 2"]
    assert racing.get_product("P").stock == 3


@pytest.mark.parametrize("stock,quantity", [(5, 2), (3, 1), (4, 4)])
def test_concurrent_checkouts_never_oversell(gateway, make_checkout_request, stock, quantity) -> None:
    store = InMemoryCheckoutStore([Product(product_id="P", name="P", price=100, stock=stock)])
    orchestrator = CheckoutOrchestrator(store=store, gateway=gateway)
    attempts = 10
    barrier = threading.Barrier(attempts)

    def attempt(i: int) -> bool:
        barrier.wait()
        try:
            orchestrator.initiate_checkout(make_checkout_request(("P", quantity), user_id=f"user_{i}"))
        except InsufficientStockError:
            return False
        return True

    with ThreadPoolExecutor(max_workers=attempts) as pool:
        outcomes = list(pool.map(attempt, range(attempts)))

    assert sum(outcomes) == stock // quantity
    assert store.get_product("P").stock == stock - (stock // quantity) * quantity
    assert store.get_product("P").stock >= 0
