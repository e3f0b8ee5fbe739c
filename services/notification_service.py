"""
Fire-and-forget notifications after settlement.

Dispatch happens only after the order has been committed. Delivery is
at-most-once and non-blocking: a failing sender is logged and never rolls
anything back. Email transport itself lives outside this service; the default
sender only logs.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional

from domain.order import Order

logger = logging.getLogger(__name__)

OrderSender = Callable[[Order], None]


def log_new_order(order: Order) -> None:
    logger.info(
        f"New order {order.order_id} for {order.shipping_info.full_name}",
        extra={
            "order_id": str(order.order_id),
            "payment_reference": order.payment_reference,
            "total_price": order.total_price,
        },
    )


class OrderNotifier:
    def __init__(self, sender: Optional[OrderSender] = None, max_workers: int = 2):
        self._sender = sender or log_new_order
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="order-notify")

    def order_created(self, order: Order) -> Future:
        """Queue the new-order notification and return immediately."""

        future = self._executor.submit(self._sender, order)
        future.add_done_callback(lambda f: self._log_failure(f, order))
        logger.info(f"Admin notification queued for order {order.order_id}")
        return future

    @staticmethod
    def _log_failure(future: Future, order: Order) -> None:
        error = future.exception()
        if error is not None:
            logger.error(f"Admin notification failed for order {order.order_id}: {error}")

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


__all__ = ["OrderNotifier", "log_new_order"]
