"""
Orders API Endpoints.

Checkout: validate the cart, reserve stock and hand back a payment redirect.
Orders themselves are only created once payment is confirmed (see payments);
the read endpoints list and fetch the current user's orders.
"""

import logging
import math
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query

from api.dependencies import SessionUser, get_checkout_orchestrator, get_current_user, get_store
from api.models import CheckoutRequestModel, CheckoutResponse, OrderListResponse, OrderResponse
from domain.order import ShippingInfo
from repositories.store import CheckoutStore
from services.checkout_service import (
    CartItem,
    CheckoutOrchestrator,
    CheckoutRequest,
    CheckoutValidationError,
    GatewayUnavailableError,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/orders/checkout",
    response_model=CheckoutResponse,
    summary="Start Checkout",
    description="Validate the cart, reserve stock and create a payment intent with the gateway."
)
def checkout(
    request: CheckoutRequestModel,
    user: SessionUser = Depends(get_current_user),
    orchestrator: CheckoutOrchestrator = Depends(get_checkout_orchestrator),
):
    """
    Start a checkout for the authenticated user.

    **Process:**
    1. Rejects empty carts and unpublished products
    2. Prices every line from the catalog (submitted prices are ignored)
    3. Atomically decrements stock and records a pending transaction
    4. Creates a payment intent and returns its redirect URL

    No order exists until the payment is confirmed by the webhook or the
    verify endpoint.

    **Example request:**
    ```json
    {
      "items": [{"productId": "prod_123", "quantity": 2, "size": "M"}],
      "shippingInfo": {
        "fullName": "Ama Mensah",
        "email": "ama@example.com",
        "phone": "+233201234567",
        "deliveryAddress": "12 Ring Road, Accra"
      },
      "expressService": false
    }
    ```

    **Failure response (insufficient stock):**
    ```json
    {
      "detail": {
        "message": "Stock validation failed",
        "errors": ["Linen Shirt: Insufficient stock. Available: 1, Requested: 2"]
      }
    }
    ```
    """
    try:
        service_request = CheckoutRequest(
            user_id=user.user_id,
            email=user.email or request.shipping_info.email,
            items=[
                CartItem(
                    product_id=item.product_id,
                    quantity=item.quantity,
                    size=item.size,
                    custom_size=item.custom_size,
                )
                for item in request.items
            ],
            shipping_info=ShippingInfo(
                full_name=request.shipping_info.full_name,
                email=request.shipping_info.email,
                phone=request.shipping_info.phone,
                delivery_address=request.shipping_info.delivery_address,
                delivery_notes=request.shipping_info.delivery_notes,
            ),
            express_service=request.express_service,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail={"message": str(e), "errors": [str(e)]})

    try:
        result = orchestrator.initiate_checkout(service_request)

    except CheckoutValidationError as e:
        raise HTTPException(status_code=400, detail={"message": str(e), "errors": e.errors})

    except GatewayUnavailableError as e:
        raise HTTPException(
            status_code=502,
            detail={"message": "Payment initialization failed", "reference": e.reference},
        )

    except Exception as e:
        logger.exception("Checkout failed")
        raise HTTPException(
            status_code=500,
            detail=f"Failed to start checkout: {str(e)}"
        )

    return CheckoutResponse(
        authorization_url=result.redirect_url,
        reference=result.reference,
        amount=result.amount,
        currency=result.currency.value,
    )


@router.get(
    "/orders",
    response_model=OrderListResponse,
    summary="List Orders",
    description="Paginated orders of the current user, newest first."
)
def list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user: SessionUser = Depends(get_current_user),
    store: CheckoutStore = Depends(get_store),
):
    try:
        orders = store.list_orders_by_user(user.user_id, page=page, limit=limit)
        total_count = store.count_orders_by_user(user.user_id)
    except Exception as e:
        raise HTTPException(
            status_code=500,
            detail=f"Failed to list orders: {str(e)}"
        )

    return OrderListResponse(
        items=[OrderResponse.from_domain(o) for o in orders],
        page=page,
        limit=limit,
        total_count=total_count,
        total_pages=math.ceil(total_count / limit) if total_count else 0,
    )


@router.get(
    "/orders/{order_id}",
    response_model=OrderResponse,
    summary="Get Order",
    description="Fetch one of the current user's orders by id."
)
def get_order(
    order_id: str,
    user: SessionUser = Depends(get_current_user),
    store: CheckoutStore = Depends(get_store),
):
    """
    Return a single order.

    Orders belonging to other users are reported as not found, the same as
    ids that do not exist.
    """
    try:
        order_uuid = UUID(order_id)
    except ValueError:
        raise HTTPException(status_code=404, detail="Order not found")

    try:
        order = store.get_order(order_uuid)
    except Exception as e:
        raise HTTPException(
            status_code=500,
            detail=f"Failed to fetch order: {str(e)}"
        )

    if order is None or order.user_id != user.user_id:
        raise HTTPException(status_code=404, detail="Order not found")

    return OrderResponse.from_domain(order)
