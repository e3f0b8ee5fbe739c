"""
Domain: Transaction (one payment attempt).

Contract excerpts implemented here:
- A Transaction is created in `pending` by checkout and mutated only by
  settlement.
- Status moves pending -> {success, failed, abandoned}; terminal states are
  immutable once reached.
- `order_id` is set exactly once, together with the move to `success`.
- Transactions are never deleted (audit trail).
"""

from __future__ import annotations

import secrets
import string
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, FrozenSet, Mapping, Optional
from uuid import UUID

from domain.money import Currency
from domain.order import OrderSnapshot
from domain.time import require_utc_timestamp

_REFERENCE_ALPHABET = string.ascii_uppercase + string.digits


class TransactionStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    ABANDONED = "abandoned"


TERMINAL_STATUSES: FrozenSet[TransactionStatus] = frozenset(
    {TransactionStatus.SUCCESS, TransactionStatus.FAILED, TransactionStatus.ABANDONED}
)


class InvalidTransitionError(ValueError):
    """Raised when a terminal transaction would change status."""


def generate_reference(user_id: str, *, prefix: str, now: datetime) -> str:
    """
    Build a collision-resistant transaction reference.

    Format: <PREFIX>_<epoch millis>_<user id>_<6 random upper-case alnum>
    """

    millis = int(now.timestamp() * 1000)
    suffix = "".join(secrets.choice(_REFERENCE_ALPHABET) for _ in range(6))
    return f"{prefix}_{millis}_{user_id}_{suffix}"


@dataclass(frozen=True, slots=True)
class Transaction:
    transaction_id: UUID
    reference: str
    user_id: str
    amount: int  # minor units
    currency: Currency
    order_data: OrderSnapshot
    created_at: datetime
    status: TransactionStatus = TransactionStatus.PENDING
    gateway_response: Optional[Mapping[str, Any]] = None
    order_id: Optional[UUID] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.amount < 1:
            raise ValueError("amount must be at least 1 minor unit")
        if self.amount != self.order_data.amount_due:
            raise ValueError("amount must equal the snapshot total plus fees")
        if not self.reference:
            raise ValueError("reference is required")
        require_utc_timestamp("created_at", self.created_at)
        if self.updated_at is not None:
            require_utc_timestamp("updated_at", self.updated_at)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_settled(self) -> bool:
        return self.status is TransactionStatus.SUCCESS or self.order_id is not None

    def transition(
        self,
        status: TransactionStatus,
        *,
        at: datetime,
        order_id: Optional[UUID] = None,
        gateway_response: Optional[Mapping[str, Any]] = None,
    ) -> "Transaction":
        """Return a copy moved to `status`; terminal transactions cannot move."""

        if self.is_terminal:
            raise InvalidTransitionError(
                f"Transaction {self.reference} is already {self.status.value}"
            )
        if status is TransactionStatus.PENDING:
            raise InvalidTransitionError("Cannot transition back to pending")
        if status is TransactionStatus.SUCCESS and order_id is None:
            raise InvalidTransitionError("A successful transaction must reference its order")

        return replace(
            self,
            status=status,
            order_id=order_id if order_id is not None else self.order_id,
            gateway_response=gateway_response if gateway_response is not None else self.gateway_response,
            updated_at=at,
        )
