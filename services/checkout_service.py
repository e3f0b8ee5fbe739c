"""
Checkout service: validate a cart, reserve stock and open a payment intent.

Handles:
- Catalog eligibility (published base products, variants of published bases)
- Server-side pricing (client-submitted prices are never trusted)
- All-or-nothing reservation: stock decrement and the pending Transaction are
  committed in one unit of work
- Payment intent creation with the gateway, outside the unit of work

Gateway failures after the local commit are not retried here. The pending
Transaction (and its reserved stock) is left for the verify endpoint or the
reconciliation sweep (scripts/reconcile_pending_transactions.py).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence
from uuid import uuid4

from domain.money import Currency
from domain.order import OrderFees, OrderItem, OrderSize, OrderSnapshot, ShippingInfo
from domain.product import Product
from domain.time import utc_now
from domain.transaction import Transaction, generate_reference
from repositories.store import CheckoutStore, StockConflictError
from services import stock_ledger
from services.payment_gateway import GatewayError, PaymentGatewayClient

logger = logging.getLogger(__name__)


class CheckoutError(Exception):
    """Base class for checkout failures."""

    status_code: int = 500


class CheckoutValidationError(CheckoutError):
    """Raised for carts that can be fixed by the caller. Nothing is mutated."""

    status_code = 400

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        self.errors = errors or []
        super().__init__(message)


class EmptyCartError(CheckoutValidationError):
    def __init__(self) -> None:
        super().__init__("Cart is empty")


class ProductUnavailableError(CheckoutValidationError):
    def __init__(self, product_ids: Sequence[str]):
        self.product_ids = list(product_ids)
        super().__init__(
            "Some products are not available or unpublished",
            [f"Product not available: {pid}" for pid in self.product_ids],
        )


class InsufficientStockError(CheckoutValidationError):
    def __init__(self, item_errors: Sequence[stock_ledger.StockItemError]):
        self.item_errors = list(item_errors)
        super().__init__(
            "Stock validation failed",
            [error.message for error in self.item_errors],
        )


class GatewayUnavailableError(CheckoutError):
    """Raised when the payment intent could not be created after the local commit."""

    status_code = 502

    def __init__(self, reference: str, cause: Exception):
        self.reference = reference
        super().__init__(f"Payment initialization failed for {reference}: {cause}")


@dataclass(frozen=True, slots=True)
class CartItem:
    """
    One cart line as submitted by the client.

    submitted_price is accepted for compatibility and ignored.
    """
    product_id: str
    quantity: int
    size: OrderSize
    custom_size: Optional[Mapping[str, Any]] = None
    submitted_price: Optional[int] = None


@dataclass(frozen=True, slots=True)
class CheckoutRequest:
    user_id: str
    email: str
    items: List[CartItem]
    shipping_info: ShippingInfo
    express_service: bool = False


@dataclass(frozen=True, slots=True)
class CheckoutResult:
    redirect_url: str
    reference: str
    amount: int
    currency: Currency
    access_code: Optional[str] = None


@dataclass
class CheckoutOrchestrator:
    store: CheckoutStore
    gateway: PaymentGatewayClient
    currency: Currency = Currency.GHS
    express_fee: int = 0
    reference_prefix: str = "ORD"
    clock: Callable[[], datetime] = field(default=utc_now)

    def initiate_checkout(self, request: CheckoutRequest) -> CheckoutResult:
        """
        Execute a checkout.

        Process:
        1. Reject an empty cart
        2. Load catalog rows and check every product can be bought
        3. Price every line from the catalog
        4. In one unit of work: read stock, validate, decrement, insert the
           pending Transaction
        5. Create the payment intent with the gateway
        6. Return the redirect URL and reference

        Raises:
            CheckoutValidationError: empty cart, unavailable product, short stock
            GatewayUnavailableError: intent creation failed (transaction stays pending)
        """
        if not request.items:
            raise EmptyCartError()

        catalog = self._load_catalog(request.items)
        snapshot = self._build_snapshot(request, catalog)
        transaction = self._reserve(request, catalog, snapshot)

        try:
            intent = self.gateway.create_intent(
                request.email,
                transaction.amount,
                transaction.reference,
                {
                    "user_id": request.user_id,
                    "transaction_id": str(transaction.transaction_id),
                    "items": len(snapshot.items),
                },
            )
        except GatewayError as e:
            logger.error(
                f"Payment intent creation failed; transaction {transaction.reference} left pending",
                extra={"reference": transaction.reference, "user_id": request.user_id},
            )
            raise GatewayUnavailableError(transaction.reference, e) from e

        try:
            self.store.record_gateway_response(transaction.reference, intent.raw)
        except Exception:
            # Audit copy only; the intent exists and the caller still needs the redirect.
            logger.exception(f"Could not store gateway response for {transaction.reference}")

        logger.info(
            f"Checkout initialized: {transaction.reference} ({transaction.amount} {self.currency.value})"
        )
        return CheckoutResult(
            redirect_url=intent.redirect_url,
            reference=transaction.reference,
            amount=transaction.amount,
            currency=self.currency,
            access_code=intent.access_code,
        )

    def _load_catalog(self, items: Sequence[CartItem]) -> Dict[str, Product]:
        requested_ids = list(dict.fromkeys(item.product_id for item in items))
        catalog = self.store.load_products(requested_ids)

        unavailable = [
            pid for pid in requested_ids
            if pid not in catalog or not catalog[pid].is_purchasable(catalog)
        ]
        if unavailable:
            logger.info(f"Checkout rejected, unavailable products: {unavailable}")
            raise ProductUnavailableError(unavailable)
        return catalog

    def _build_snapshot(self, request: CheckoutRequest, catalog: Mapping[str, Product]) -> OrderSnapshot:
        try:
            items = tuple(
                OrderItem(
                    product_id=item.product_id,
                    quantity=item.quantity,
                    unit_price=catalog[item.product_id].price,
                    size=item.size,
                    custom_size=item.custom_size,
                )
                for item in request.items
            )
        except ValueError as e:
            raise CheckoutValidationError(str(e), [str(e)]) from e

        express_fee = self.express_fee if request.express_service else 0
        return OrderSnapshot(
            items=items,
            shipping_info=request.shipping_info,
            total_price=sum(item.line_total for item in items),
            fees=OrderFees(express_service=request.express_service, express_fee=express_fee),
        )

    def _reserve(
        self,
        request: CheckoutRequest,
        catalog: Mapping[str, Product],
        snapshot: OrderSnapshot,
    ) -> Transaction:
        if snapshot.amount_due < 1:
            raise CheckoutValidationError("Order total must be greater than zero")

        now = self.clock()
        transaction = Transaction(
            transaction_id=uuid4(),
            reference=generate_reference(request.user_id, prefix=self.reference_prefix, now=now),
            user_id=request.user_id,
            amount=snapshot.amount_due,
            currency=self.currency,
            order_data=snapshot,
            created_at=now,
        )

        try:
            with self.store.unit_of_work() as uow:
                # Validate against the stock seen by this unit of work so the
                # decrement applies to the same snapshot.
                stock = uow.read_stock(catalog.keys())
                current = {
                    pid: product.with_stock(max(stock.get(pid, 0), 0))
                    for pid, product in catalog.items()
                }
                validation = stock_ledger.validate_availability(snapshot.items, current)
                if not validation.ok:
                    raise InsufficientStockError(validation.errors)

                stock_ledger.decrement(snapshot.items, uow)
                uow.insert_transaction(transaction)
        except StockConflictError as e:
            # The backend's own locked re-check lost a race with another checkout.
            raise InsufficientStockError(
                [
                    stock_ledger.StockItemError(
                        product_id=pid,
                        name=catalog[pid].name if pid in catalog else pid,
                        requested=int(counts[0]),
                        available=int(counts[1]),
                    )
                    for pid, counts in sorted(e.shortages.items())
                ]
            ) from e

        logger.info(
            f"Reserved stock and opened transaction {transaction.reference}",
            extra={"reference": transaction.reference, "amount": transaction.amount},
        )
        return transaction


__all__ = [
    "CartItem",
    "CheckoutError",
    "CheckoutOrchestrator",
    "CheckoutRequest",
    "CheckoutResult",
    "CheckoutValidationError",
    "EmptyCartError",
    "GatewayUnavailableError",
    "InsufficientStockError",
    "ProductUnavailableError",
]
