"""
Tests for `domain/transaction.py`.

Covers contract rules:
- amount is a positive integer equal to the snapshot total plus fees.
- Status moves only out of pending; terminal states never change.
- Success always carries the order id.
- References follow <PREFIX>_<millis>_<user>_<6 upper alnum>.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from uuid import UUID, uuid4

import pytest

from domain.money import Currency
from domain.order import OrderFees, OrderItem, OrderSize, OrderSnapshot, ShippingInfo
from domain.transaction import (
    InvalidTransitionError,
    Transaction,
    TransactionStatus,
    generate_reference,
)

NOW = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def _snapshot(express_fee: int = 0) -> OrderSnapshot:
    return OrderSnapshot(
        items=(OrderItem(product_id="P", quantity=2, unit_price=1000, size=OrderSize.M),),
        shipping_info=ShippingInfo(
            full_name="Ama Mensah",
            email="ama@example.com",
            phone="0201234567",
            delivery_address="Accra",
        ),
        total_price=2000,
        fees=OrderFees(express_service=express_fee > 0, express_fee=express_fee),
    )


def _transaction(**overrides) -> Transaction:
    values = dict(
        transaction_id=UUID("00000000-0000-0000-0000-000000000001"),
        reference="ORD_1735732800000_user_1_ABC123",
        user_id="user_1",
        amount=2000,
        currency=Currency.GHS,
        order_data=_snapshot(),
        created_at=NOW,
    )
    values.update(overrides)
    return Transaction(**values)


def test_generate_reference_format() -> None:
    reference = generate_reference("user_1", prefix="ORD", now=NOW)

    assert re.fullmatch(r"ORD_1735732800000_user_1_[A-Z0-9]{6}", reference)


def test_amount_must_match_snapshot_plus_fees() -> None:
    with pytest.raises(ValueError):
        _transaction(amount=1999)

    transaction = _transaction(amount=2500, order_data=_snapshot(express_fee=500))
    assert transaction.amount == 2500


def test_created_at_must_be_utc() -> None:
    with pytest.raises(ValueError):
        _transaction(created_at=datetime(2025, 1, 1))


def test_success_requires_order_id() -> None:
    transaction = _transaction()

    with pytest.raises(InvalidTransitionError):
        transaction.transition(TransactionStatus.SUCCESS, at=NOW)

    order_id = uuid4()
    settled = transaction.transition(TransactionStatus.SUCCESS, at=NOW, order_id=order_id)
    assert settled.status is TransactionStatus.SUCCESS
    assert settled.order_id == order_id
    assert settled.is_terminal and settled.is_settled
    assert transaction.status is TransactionStatus.PENDING


@pytest.mark.parametrize(
    "terminal",
    [TransactionStatus.FAILED, TransactionStatus.ABANDONED],
)
def test_terminal_transactions_never_change(terminal: TransactionStatus) -> None:
    closed = _transaction().transition(terminal, at=NOW)

    with pytest.raises(InvalidTransitionError):
        closed.transition(TransactionStatus.SUCCESS, at=NOW, order_id=uuid4())
    with pytest.raises(InvalidTransitionError):
        closed.transition(TransactionStatus.FAILED, at=NOW)


def test_cannot_return_to_pending() -> None:
    with pytest.raises(InvalidTransitionError):
        _transaction().transition(TransactionStatus.PENDING, at=NOW)
