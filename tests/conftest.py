"""
Pytest configuration and shared fixtures.

This file adds the parent directory to the Python path so that tests
can import from the domain, repositories, services and api modules.

The payment gateway is faked at the HTTP layer with `httpx.MockTransport`, so
the real PaymentGatewayClient (headers, URL building, error mapping) is
exercised by every service test.
"""

import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
import pytest

# Add the project root to the Python path
# so tests can import domain, repositories, etc.
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from domain.money import Currency  # noqa: E402
from domain.order import Order, OrderSize, ShippingInfo  # noqa: E402
from domain.product import Product  # noqa: E402
from repositories.memory_store import InMemoryCheckoutStore  # noqa: E402
from services.checkout_service import CartItem, CheckoutOrchestrator, CheckoutRequest  # noqa: E402
from services.notification_service import OrderNotifier  # noqa: E402
from services.payment_gateway import GatewayConfig, PaymentGatewayClient  # noqa: E402
from services.settlement_service import SettlementProcessor  # noqa: E402

GATEWAY_SECRET = "sk_test_secret"
GATEWAY_BASE_URL = "https://gateway.test"


class FakeGateway:
    """
    In-process stand-in for the gateway's HTTP API.

    Tracks initialized references and lets a test decide what `verify`
    reports for each of them.
    """

    def __init__(self) -> None:
        self.intents: Dict[str, Dict[str, Any]] = {}
        self.requests: List[httpx.Request] = []
        self.fail_initialize = False
        self.fail_verify = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.headers.get("Authorization") != f"Bearer {GATEWAY_SECRET}":
            return httpx.Response(401, json={"status": False, "message": "Invalid key"})

        path = request.url.path
        if request.method == "POST" and path == "/transaction/initialize":
            if self.fail_initialize:
                return httpx.Response(503, json={"status": False, "message": "Service unavailable"})
            payload = json.loads(request.content)
            reference = payload["reference"]
            self.intents[reference] = {
                "reference": reference,
                "amount": payload["amount"],
                "currency": payload["currency"],
                "status": "ongoing",
            }
            return httpx.Response(
                200,
                json={
                    "status": True,
                    "message": "Authorization URL created",
                    "data": {
                        "authorization_url": f"https://checkout.gateway.test/{reference}",
                        "access_code": f"ac_{reference[-6:]}",
                        "reference": reference,
                    },
                },
            )

        if request.method == "GET" and path.startswith("/transaction/verify/"):
            if self.fail_verify:
                return httpx.Response(500, json={"status": False, "message": "Internal error"})
            reference = path.rsplit("/", 1)[-1]
            intent = self.intents.get(reference)
            if intent is None:
                return httpx.Response(404, json={"status": False, "message": "Transaction reference not found"})
            data = dict(intent)
            if data["status"] == "success":
                data.setdefault("paid_at", "2025-01-01T12:00:00.000Z")
            return httpx.Response(200, json={"status": True, "message": "Verification successful", "data": data})

        return httpx.Response(404, json={"status": False, "message": "Not found"})

    def set_status(self, reference: str, status: str, amount: Optional[int] = None) -> None:
        self.intents[reference]["status"] = status
        if amount is not None:
            self.intents[reference]["amount"] = amount

    def pay(self, reference: str) -> None:
        self.set_status(reference, "success")

    def count(self, method: str, prefix: str) -> int:
        return sum(1 for r in self.requests if r.method == method and r.url.path.startswith(prefix))


class InspectableCheckoutStore(InMemoryCheckoutStore):
    """In-memory store with the extra reads and writes the tests need."""

    def list_orders(self) -> List[Order]:
        with self._lock:
            return list(self._orders.values())

    def insert_order_unchecked(self, order: Order) -> None:
        """Persist an order outside a unit of work, as a partial write would leave it."""
        with self._lock:
            self._orders[order.order_id] = order
            self._orders_by_reference[order.payment_reference] = order.order_id


def make_product(product_id: str = "P", *, price: int = 1000, stock: int = 3, **kwargs: Any) -> Product:
    return Product(product_id=product_id, name=kwargs.pop("name", f"Product {product_id}"), price=price, stock=stock, **kwargs)


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def gateway(fake_gateway: FakeGateway) -> PaymentGatewayClient:
    http_client = httpx.Client(base_url=GATEWAY_BASE_URL, transport=httpx.MockTransport(fake_gateway.handler))
    client = PaymentGatewayClient(
        GatewayConfig(secret_key=GATEWAY_SECRET, base_url=GATEWAY_BASE_URL, currency=Currency.GHS),
        http_client=http_client,
    )
    yield client
    client.close()


@pytest.fixture
def store() -> InspectableCheckoutStore:
    return InspectableCheckoutStore([make_product("P", price=1000, stock=3)])


@pytest.fixture
def sent_notifications() -> List[Any]:
    return []


@pytest.fixture
def notifier(sent_notifications: List[Any]) -> OrderNotifier:
    notifier = OrderNotifier(sender=sent_notifications.append)
    yield notifier
    notifier.shutdown(wait=True)


@pytest.fixture
def orchestrator(store: InMemoryCheckoutStore, gateway: PaymentGatewayClient) -> CheckoutOrchestrator:
    return CheckoutOrchestrator(store=store, gateway=gateway, currency=Currency.GHS, express_fee=500)


@pytest.fixture
def processor(
    store: InMemoryCheckoutStore,
    gateway: PaymentGatewayClient,
    notifier: OrderNotifier,
) -> SettlementProcessor:
    return SettlementProcessor(store=store, gateway=gateway, notifier=notifier)


@pytest.fixture
def shipping_info() -> ShippingInfo:
    return ShippingInfo(
        full_name="Ama Mensah",
        email="Ama@Example.com ",
        phone="+233201234567",
        delivery_address="12 Ring Road, Accra",
    )


@pytest.fixture
def make_checkout_request(shipping_info: ShippingInfo):
    """Build a CheckoutRequest; items are (product_id, quantity) pairs or CartItems."""

    def _make(*items: Any, user_id: str = "user_1", express_service: bool = False) -> CheckoutRequest:
        cart = [
            item if isinstance(item, CartItem) else CartItem(product_id=item[0], quantity=item[1], size=OrderSize.M)
            for item in (items or (("P", 2),))
        ]
        return CheckoutRequest(
            user_id=user_id,
            email="ama@example.com",
            items=cart,
            shipping_info=shipping_info,
            express_service=express_service,
        )

    return _make


@pytest.fixture
def signed_webhook(gateway: PaymentGatewayClient):
    """Serialise a webhook payload and sign it with the gateway secret."""

    def _sign(event: str, reference: str, amount: Optional[int], **data: Any):
        body = json.dumps({"event": event, "data": {"reference": reference, "amount": amount, **data}}).encode()
        return body, gateway.sign(body)

    return _sign
