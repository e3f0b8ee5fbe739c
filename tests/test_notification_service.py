"""
Tests for `services/notification_service.py`.

Notifications are fire-and-forget: dispatch never blocks the caller and a
failing sender is only logged.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone

from domain.order import Order, OrderItem, OrderSize, OrderSnapshot, ShippingInfo
from services.notification_service import OrderNotifier


def _order() -> Order:
    snapshot = OrderSnapshot(
        items=(OrderItem(product_id="P", quantity=1, unit_price=1000, size=OrderSize.M),),
        shipping_info=ShippingInfo(
            full_name="Ama Mensah",
            email="ama@example.com",
            phone="0201234567",
            delivery_address="Accra",
        ),
        total_price=1000,
    )
    return Order.from_snapshot(
        user_id="user_1",
        snapshot=snapshot,
        payment_reference="ORD_1_user_1_ABCDEF",
        created_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
    )


def test_order_created_does_not_wait_for_sender() -> None:
    release = threading.Event()
    delivered = []

    def slow_sender(order: Order) -> None:
        release.wait(timeout=5)
        delivered.append(order.order_id)

    notifier = OrderNotifier(sender=slow_sender)
    order = _order()

    future = notifier.order_created(order)
    assert not future.done()

    release.set()
    notifier.shutdown(wait=True)
    assert delivered == [order.order_id]


def test_sender_failure_is_logged(caplog) -> None:
    def broken_sender(order: Order) -> None:
        raise RuntimeError("smtp down")

    notifier = OrderNotifier(sender=broken_sender)

    with caplog.at_level(logging.ERROR, logger="services.notification_service"):
        future = notifier.order_created(_order())
        notifier.shutdown(wait=True)

    assert isinstance(future.exception(), RuntimeError)
    assert "smtp down" in caplog.text


def test_default_sender_logs_new_order(caplog) -> None:
    notifier = OrderNotifier()

    with caplog.at_level(logging.INFO, logger="services.notification_service"):
        notifier.order_created(_order()).result(timeout=5)
        notifier.shutdown(wait=True)

    assert "New order" in caplog.text
