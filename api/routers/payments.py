"""
Payments API Endpoints.

Webhook intake from the payment gateway, client-side payment verification and
the user's transaction history.
"""

import logging
import math
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Query, Request

from api.dependencies import SessionUser, get_current_user, get_settlement_processor, get_store
from api.models import (
    OrderResponse,
    PaymentStatusResponse,
    TransactionListResponse,
    TransactionResponse,
    WebhookAck,
)
from repositories.store import CheckoutStore
from services.payment_gateway import GatewayError
from services.settlement_service import (
    InvalidSignatureError,
    MalformedNotificationError,
    SettlementProcessor,
    TransactionNotFoundError,
    WebhookEvent,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def settle_in_background(processor: SettlementProcessor, event: WebhookEvent) -> None:
    """Run settlement after the webhook has been acknowledged."""
    try:
        result = processor.process_event(event)
    except GatewayError as e:
        # Left pending; the verify endpoint or reconciliation picks it up.
        logger.warning(f"Deferred settlement for {event.reference}: {e}")
        return
    except Exception:
        logger.exception(f"Error processing webhook for {event.reference}")
        return
    logger.info(f"Webhook for {event.reference} processed: {result.action.value}")


@router.post(
    "/payment/webhook/provider",
    response_model=WebhookAck,
    summary="Payment Gateway Webhook",
    description="Receive signed payment notifications from the gateway."
)
async def payment_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_signature: Optional[str] = Header(default=None),
    processor: SettlementProcessor = Depends(get_settlement_processor),
):
    """
    Receive a payment notification.

    **Security:**
    - The `X-Signature` header must be the HMAC-SHA512 hex digest of the raw
      request body under the gateway secret
    - Unsigned or tampered requests are rejected with 400 and change nothing

    Authentic notifications are acknowledged immediately with 200; settlement
    (second verification with the gateway, order creation) runs afterwards.
    Duplicate deliveries are harmless. A correctly signed body that cannot be
    parsed is logged and acknowledged as well, so the gateway stops retrying it.
    """
    raw_body = await request.body()

    try:
        event = processor.authenticate_notification(x_signature, raw_body)
    except InvalidSignatureError:
        raise HTTPException(status_code=400, detail="Invalid signature")
    except MalformedNotificationError as e:
        logger.warning(
            f"Ignoring signed webhook with malformed body: {e}",
            extra={
                "security_event": "webhook_malformed",
                "body_length": len(raw_body),
            },
        )
        return WebhookAck()

    background_tasks.add_task(settle_in_background, processor, event)
    return WebhookAck()


@router.get(
    "/payment/verify/{reference}",
    response_model=PaymentStatusResponse,
    summary="Verify Payment",
    description="Return the payment status for a reference, settling it if the gateway confirms payment."
)
def verify_payment(
    reference: str,
    user: SessionUser = Depends(get_current_user),
    processor: SettlementProcessor = Depends(get_settlement_processor),
):
    """
    Poll a payment after the customer returns from the gateway.

    If the transaction is still pending, the gateway is asked for its
    authoritative status and the order is created on success. If the gateway
    cannot be reached, the current (pending) state is returned.

    **Example usage:**
    ```
    GET /payment/verify/ORD_1760000000000_user_42_AB12CD
    ```
    """
    try:
        view = processor.verify_and_settle(reference, user_id=user.user_id)

    except TransactionNotFoundError:
        raise HTTPException(status_code=404, detail="Transaction not found")

    except Exception as e:
        logger.exception(f"Error verifying payment {reference}")
        raise HTTPException(
            status_code=500,
            detail=f"Failed to verify payment: {str(e)}"
        )

    return PaymentStatusResponse(
        transaction=TransactionResponse.from_domain(view.transaction),
        order=OrderResponse.from_domain(view.order) if view.order is not None else None,
    )


@router.get(
    "/payment/transactions",
    response_model=TransactionListResponse,
    summary="List Transactions",
    description="Paginated payment history for the current user, newest first."
)
def list_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user: SessionUser = Depends(get_current_user),
    store: CheckoutStore = Depends(get_store),
):
    try:
        transactions = store.list_transactions_by_user(user.user_id, page=page, limit=limit)
        total_count = store.count_transactions_by_user(user.user_id)
    except Exception as e:
        raise HTTPException(
            status_code=500,
            detail=f"Failed to list transactions: {str(e)}"
        )

    return TransactionListResponse(
        items=[TransactionResponse.from_domain(t) for t in transactions],
        page=page,
        limit=limit,
        total_count=total_count,
        total_pages=math.ceil(total_count / limit) if total_count else 0,
    )
