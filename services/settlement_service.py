"""
Settlement service: turn confirmed payments into exactly one Order.

Two entry points converge on the same finalize routine:
- Webhook push: authenticate the signature over the raw body, parse the event,
  cross-check the amount, re-verify with the gateway, finalize.
- Client poll: if the Transaction is still pending, ask the gateway and
  finalize on success.

State machine per Transaction:
    pending --(signature ok, amount matches, gateway verify success)--> success
    pending --(amount mismatch OR gateway verify failure)--> failed
    pending --(explicit failure event)--> failed
    pending --(reconciliation: abandoned / unknown at gateway)--> abandoned
    success / failed / abandoned are terminal

Finalize is idempotent. Duplicate webhooks, or a webhook racing a poll, are
resolved by (1) skipping transactions that are already settled, (2) attaching an
order that already exists for the reference, and (3) the storage layer's
conditional pending -> success write, whose loser simply observes the settled
result.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, List, Mapping, Optional

from domain.order import Order
from domain.time import utc_now
from domain.transaction import Transaction, TransactionStatus
from repositories.store import CheckoutStore, SettlementConflictError
from services.notification_service import OrderNotifier
from services.payment_gateway import (
    GatewayError,
    GatewayVerification,
    PaymentGatewayClient,
    UnknownReferenceError,
)

logger = logging.getLogger(__name__)

SUCCESS_EVENT = "charge.success"
FAILURE_EVENT = "charge.failed"

# Gateway statuses that are a definitive "this payment did not happen".
_FAILED_REMOTE_STATUSES = frozenset({"failed", "reversed"})


class InvalidSignatureError(Exception):
    """Raised when a webhook signature is missing or does not match the raw body."""


class MalformedNotificationError(Exception):
    """Raised when an authenticated webhook body cannot be understood."""


class TransactionNotFoundError(LookupError):
    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"Transaction not found: {reference}")


class SettlementAction(str, Enum):
    SETTLED = "settled"
    ALREADY_SETTLED = "already_settled"
    FAILED = "failed"
    ABANDONED = "abandoned"
    STILL_PENDING = "still_pending"
    IGNORED = "ignored"
    UNKNOWN_REFERENCE = "unknown_reference"


@dataclass(frozen=True, slots=True)
class WebhookEvent:
    event: str
    reference: Optional[str]
    amount: Optional[int]
    data: Mapping[str, Any]


@dataclass(frozen=True, slots=True)
class SettlementResult:
    action: SettlementAction
    reference: Optional[str]
    order_id: Optional[Any] = None
    reason: Optional[str] = None


@dataclass(frozen=True, slots=True)
class PaymentStatusView:
    """What the verify endpoint reports back to the client."""
    transaction: Transaction
    order: Optional[Order]


@dataclass
class ReconciliationReport:
    examined: int = 0
    settled: int = 0
    failed: int = 0
    abandoned: int = 0
    still_pending: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class SettlementProcessor:
    store: CheckoutStore
    gateway: PaymentGatewayClient
    notifier: Optional[OrderNotifier] = None
    clock: Callable[[], datetime] = field(default=utc_now)

    # ------------------------------------------------------------------
    # Webhook path
    # ------------------------------------------------------------------

    def authenticate_notification(self, signature_header: Optional[str], raw_body: bytes) -> WebhookEvent:
        """
        Verify the signature over the exact bytes received, then parse.

        Raises:
            InvalidSignatureError: missing or mismatching signature (no state change)
            MalformedNotificationError: body is not a JSON event envelope
        """
        if not self.gateway.verify_signature(signature_header, raw_body):
            logger.warning(
                "Rejected webhook with invalid signature",
                extra={
                    "security_event": "webhook_signature_invalid",
                    "signature_present": bool(signature_header),
                    "body_length": len(raw_body),
                },
            )
            raise InvalidSignatureError("Invalid webhook signature")

        try:
            payload = json.loads(raw_body)
        except ValueError as e:
            raise MalformedNotificationError("Webhook body is not valid JSON") from e
        if not isinstance(payload, dict) or not isinstance(payload.get("event"), str):
            raise MalformedNotificationError("Webhook body has no event type")

        data = payload.get("data") or {}
        if not isinstance(data, dict):
            raise MalformedNotificationError("Webhook data must be an object")

        # Minor units; a float such as 2000.9 must not be truncated into a match.
        amount = data.get("amount")
        if amount is not None and (isinstance(amount, bool) or not isinstance(amount, int)):
            raise MalformedNotificationError("Webhook amount is not an integer")

        logger.info(f"Received payment webhook event: {payload['event']}")
        return WebhookEvent(
            event=payload["event"],
            reference=str(data["reference"]) if data.get("reference") else None,
            amount=amount,
            data=data,
        )

    def handle_notification(self, signature_header: Optional[str], raw_body: bytes) -> SettlementResult:
        """Authenticate and fully process a webhook delivery synchronously."""

        return self.process_event(self.authenticate_notification(signature_header, raw_body))

    def process_event(self, event: WebhookEvent) -> SettlementResult:
        """
        Apply an authenticated gateway event.

        Gateway errors during the second verification propagate and leave the
        transaction pending for a later retry.
        """
        if event.reference is None:
            logger.warning(f"Webhook event {event.event} carried no reference")
            return SettlementResult(SettlementAction.IGNORED, None, reason="missing reference")

        if event.event == SUCCESS_EVENT:
            return self._handle_success_event(event)
        if event.event == FAILURE_EVENT:
            return self._handle_failure_event(event)

        logger.info(f"Unhandled webhook event type: {event.event}")
        return SettlementResult(SettlementAction.IGNORED, event.reference, reason=f"unhandled event {event.event}")

    def _handle_success_event(self, event: WebhookEvent) -> SettlementResult:
        reference = event.reference
        transaction = self.store.get_transaction(reference)
        if transaction is None:
            # Acknowledge anyway: retries from the gateway cannot fix this.
            logger.warning(f"Transaction not found for reference: {reference}")
            return SettlementResult(SettlementAction.UNKNOWN_REFERENCE, reference)

        if transaction.is_terminal:
            return self._terminal_result(transaction)

        if event.amount != transaction.amount:
            logger.warning(
                f"Amount mismatch for reference: {reference}. "
                f"Expected: {transaction.amount}, Received: {event.amount}",
                extra={"security_event": "webhook_amount_mismatch", "reference": reference},
            )
            return self._fail(transaction, dict(event.data), "amount mismatch")

        verification = self.gateway.verify(reference)
        if not self._confirms(verification, transaction):
            logger.warning(
                f"Gateway verification failed for reference: {reference} "
                f"(status={verification.remote_status}, amount={verification.amount})"
            )
            return self._fail(transaction, verification.raw, "gateway verification failed")

        return self.finalize(transaction, verification.raw)

    def _handle_failure_event(self, event: WebhookEvent) -> SettlementResult:
        transaction = self.store.get_transaction(event.reference)
        if transaction is None:
            logger.warning(f"Transaction not found for reference: {event.reference}")
            return SettlementResult(SettlementAction.UNKNOWN_REFERENCE, event.reference)
        if transaction.is_terminal:
            return self._terminal_result(transaction)

        logger.info(f"Payment failed for transaction: {event.reference}")
        return self._fail(transaction, dict(event.data), "gateway reported failure")

    # ------------------------------------------------------------------
    # Poll path
    # ------------------------------------------------------------------

    def verify_and_settle(self, reference: str, user_id: Optional[str] = None) -> PaymentStatusView:
        """
        Report a transaction's state, settling it first if the gateway says it is paid.

        Terminal transactions are returned unchanged. Gateway errors are
        logged and the current (pending) state is returned.

        Raises:
            TransactionNotFoundError: unknown reference, or owned by another user
        """
        transaction = self.store.get_transaction(reference)
        if transaction is None or (user_id is not None and transaction.user_id != user_id):
            raise TransactionNotFoundError(reference)

        if transaction.status is TransactionStatus.PENDING:
            try:
                verification = self.gateway.verify(reference)
            except GatewayError as e:
                logger.warning(f"Error verifying transaction {reference}: {e}")
            else:
                self._apply_verification(transaction, verification)

        return self._status_view(reference)

    def _apply_verification(self, transaction: Transaction, verification: GatewayVerification) -> SettlementResult:
        if verification.success:
            if self._confirms(verification, transaction):
                return self.finalize(transaction, verification.raw)
            logger.warning(
                f"Gateway amount {verification.amount} disagrees with transaction "
                f"{transaction.reference} amount {transaction.amount}"
            )
            return self._fail(transaction, verification.raw, "amount mismatch")

        if verification.remote_status in _FAILED_REMOTE_STATUSES:
            return self._fail(transaction, verification.raw, f"gateway status {verification.remote_status}")

        return SettlementResult(
            SettlementAction.STILL_PENDING, transaction.reference, reason=verification.remote_status
        )

    def _status_view(self, reference: str) -> PaymentStatusView:
        transaction = self.store.get_transaction(reference)
        if transaction is None:
            raise TransactionNotFoundError(reference)
        order = self.store.get_order(transaction.order_id) if transaction.order_id else None
        return PaymentStatusView(transaction=transaction, order=order)

    # ------------------------------------------------------------------
    # Finalize
    # ------------------------------------------------------------------

    def finalize(self, transaction: Transaction, gateway_response: Optional[Mapping[str, Any]]) -> SettlementResult:
        """
        Create the Order for a confirmed transaction, at most once.

        The order is built from the checkout snapshot only; current catalog
        prices are never consulted.
        """
        reference = transaction.reference
        if transaction.is_settled:
            return SettlementResult(SettlementAction.ALREADY_SETTLED, reference, transaction.order_id)

        existing = self.store.get_order_by_payment_reference(reference)
        if existing is not None:
            return self._attach_existing_order(transaction, existing, gateway_response)

        order = Order.from_snapshot(
            user_id=transaction.user_id,
            snapshot=transaction.order_data,
            payment_reference=reference,
            created_at=self.clock(),
        )

        try:
            with self.store.unit_of_work() as uow:
                current = uow.get_transaction(reference)
                if current is None or current.is_settled:
                    raise SettlementConflictError(reference)
                if current.status is not TransactionStatus.PENDING:
                    raise SettlementConflictError(reference, f"Transaction {reference} is {current.status.value}")
                uow.insert_order(order)
                uow.settle_transaction(reference, order.order_id, gateway_response)
        except SettlementConflictError:
            settled = self.store.get_transaction(reference)
            logger.info(f"Transaction {reference} was settled concurrently; skipping order creation")
            return SettlementResult(
                SettlementAction.ALREADY_SETTLED,
                reference,
                settled.order_id if settled is not None else None,
            )

        logger.info(f"Order created successfully for transaction: {reference}, Order: {order.order_id}")
        if self.notifier is not None:
            self.notifier.order_created(order)
        return SettlementResult(SettlementAction.SETTLED, reference, order.order_id)

    def _attach_existing_order(
        self,
        transaction: Transaction,
        order: Order,
        gateway_response: Optional[Mapping[str, Any]],
    ) -> SettlementResult:
        # An earlier attempt persisted the order but not the status update.
        logger.warning(
            f"Order {order.order_id} already exists for {transaction.reference}; attaching it"
        )
        try:
            with self.store.unit_of_work() as uow:
                uow.settle_transaction(transaction.reference, order.order_id, gateway_response)
        except SettlementConflictError:
            pass
        return SettlementResult(SettlementAction.ALREADY_SETTLED, transaction.reference, order.order_id)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile_pending(self, older_than: timedelta, limit: int = 100) -> ReconciliationReport:
        """
        Sweep transactions that stayed pending longer than `older_than`.

        success -> finalize; failed/reversed -> failed; abandoned or unknown at
        the gateway -> abandoned; gateway errors are recorded and the
        transaction is left pending for the next sweep.
        """
        report = ReconciliationReport()
        cutoff = self.clock() - older_than

        for transaction in self.store.list_stale_pending_transactions(cutoff, limit):
            report.examined += 1
            reference = transaction.reference
            try:
                verification = self.gateway.verify(reference)
            except UnknownReferenceError:
                # The intent was never created (checkout's gateway call failed).
                result = self._close(transaction, TransactionStatus.ABANDONED, None, "unknown at gateway")
            except GatewayError as e:
                report.errors.append(f"{reference}: {e}")
                continue
            else:
                if verification.remote_status == "abandoned":
                    result = self._close(
                        transaction, TransactionStatus.ABANDONED, verification.raw, "abandoned at gateway"
                    )
                else:
                    result = self._apply_verification(transaction, verification)

            if result.action is SettlementAction.SETTLED:
                report.settled += 1
            elif result.action is SettlementAction.FAILED:
                report.failed += 1
            elif result.action is SettlementAction.ABANDONED:
                report.abandoned += 1
            elif result.action is SettlementAction.STILL_PENDING:
                report.still_pending += 1

        logger.info(
            f"Reconciliation examined {report.examined} transaction(s): "
            f"{report.settled} settled, {report.failed} failed, {report.abandoned} abandoned, "
            f"{report.still_pending} pending, {len(report.errors)} error(s)"
        )
        return report

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _confirms(verification: GatewayVerification, transaction: Transaction) -> bool:
        return (
            verification.success
            and verification.reference == transaction.reference
            and (verification.amount is None or verification.amount == transaction.amount)
        )

    def _fail(
        self,
        transaction: Transaction,
        gateway_response: Optional[Mapping[str, Any]],
        reason: str,
    ) -> SettlementResult:
        return self._close(transaction, TransactionStatus.FAILED, gateway_response, reason)

    def _close(
        self,
        transaction: Transaction,
        status: TransactionStatus,
        gateway_response: Optional[Mapping[str, Any]],
        reason: str,
    ) -> SettlementResult:
        changed = self.store.close_transaction(transaction.reference, status, gateway_response)
        if not changed:
            current = self.store.get_transaction(transaction.reference)
            if current is not None and current.is_terminal:
                return self._terminal_result(current)

        logger.info(f"Transaction {transaction.reference} marked {status.value}: {reason}")
        action = SettlementAction.FAILED if status is TransactionStatus.FAILED else SettlementAction.ABANDONED
        return SettlementResult(action, transaction.reference, reason=reason)

    @staticmethod
    def _terminal_result(transaction: Transaction) -> SettlementResult:
        if transaction.status is TransactionStatus.SUCCESS:
            return SettlementResult(SettlementAction.ALREADY_SETTLED, transaction.reference, transaction.order_id)
        return SettlementResult(
            SettlementAction.IGNORED,
            transaction.reference,
            reason=f"transaction already {transaction.status.value}",
        )


__all__ = [
    "FAILURE_EVENT",
    "InvalidSignatureError",
    "MalformedNotificationError",
    "PaymentStatusView",
    "ReconciliationReport",
    "SUCCESS_EVENT",
    "SettlementAction",
    "SettlementProcessor",
    "SettlementResult",
    "TransactionNotFoundError",
    "WebhookEvent",
]
