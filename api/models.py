"""
API Request and Response Models.

Pydantic models for validating API requests and serializing responses.
JSON bodies use camelCase keys; Python code uses snake_case field names.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, model_validator
from pydantic.alias_generators import to_camel

from domain.order import REQUIRED_MEASUREMENTS, Order, OrderItem, OrderSize, ShippingInfo
from domain.transaction import Transaction


class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True


# ============================================================================
# Checkout Models
# ============================================================================

class CartItemRequest(CamelModel):
    """One cart line. A submitted price is accepted but never used."""
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=1)
    size: OrderSize
    custom_size: Optional[Dict[str, Any]] = None
    price: Optional[float] = Field(default=None, description="Ignored; prices come from the catalog")

    @model_validator(mode="after")
    def check_custom_size(self) -> "CartItemRequest":
        if self.size is OrderSize.CUSTOM:
            if not self.custom_size:
                raise ValueError("customSize is required when size is CUSTOM")
            missing = [m for m in REQUIRED_MEASUREMENTS if not self.custom_size.get(m)]
            if missing:
                raise ValueError(f"customSize is missing: {', '.join(missing)}")
        elif self.custom_size is not None:
            raise ValueError("customSize is only allowed when size is CUSTOM")
        return self


class ShippingInfoModel(CamelModel):
    full_name: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    phone: str = Field(..., min_length=1)
    delivery_address: str = Field(..., min_length=1)
    delivery_notes: str = ""

    @staticmethod
    def from_domain(info: ShippingInfo) -> "ShippingInfoModel":
        return ShippingInfoModel(
            full_name=info.full_name,
            email=info.email,
            phone=info.phone,
            delivery_address=info.delivery_address,
            delivery_notes=info.delivery_notes,
        )


class CheckoutRequestModel(CamelModel):
    """Request to start a checkout for the current user's cart."""
    items: List[CartItemRequest] = Field(..., description="Cart lines")
    shipping_info: ShippingInfoModel
    express_service: bool = False

    class Config:
        json_schema_extra = {
            "example": {
                "items": [
                    {"productId": "prod_123", "quantity": 2, "size": "M"},
                    {
                        "productId": "prod_456",
                        "quantity": 1,
                        "size": "CUSTOM",
                        "customSize": {"waist": "32", "hip": "40", "length": "42"},
                    },
                ],
                "shippingInfo": {
                    "fullName": "Ama Mensah",
                    "email": "ama@example.com",
                    "phone": "+233201234567",
                    "deliveryAddress": "12 Ring Road, Accra",
                    "deliveryNotes": "Call on arrival",
                },
                "expressService": False,
            }
        }


class CheckoutResponse(CamelModel):
    """Where to send the customer to pay."""
    authorization_url: str
    reference: str
    amount: int = Field(..., description="Amount due in minor units")
    currency: str

    class Config:
        json_schema_extra = {
            "example": {
                "authorizationUrl": "https://checkout.paystack.com/0peioxfhpn",
                "reference": "ORD_1760000000000_user_42_AB12CD",
                "amount": 2000,
                "currency": "GHS",
            }
        }


# ============================================================================
# Payment Models
# ============================================================================

class OrderItemModel(CamelModel):
    product_id: str
    quantity: int
    unit_price: int
    size: OrderSize
    custom_size: Optional[Dict[str, Any]] = None

    @staticmethod
    def from_domain(item: OrderItem) -> "OrderItemModel":
        return OrderItemModel(
            product_id=item.product_id,
            quantity=item.quantity,
            unit_price=item.unit_price,
            size=item.size,
            custom_size=dict(item.custom_size) if item.custom_size is not None else None,
        )


class OrderResponse(CamelModel):
    order_id: UUID
    items: List[OrderItemModel]
    shipping_info: ShippingInfoModel
    total_price: int
    express_service: bool
    express_fee: int
    payment_reference: str
    status: str
    payment_status: str
    created_at: datetime

    @staticmethod
    def from_domain(order: Order) -> "OrderResponse":
        return OrderResponse(
            order_id=order.order_id,
            items=[OrderItemModel.from_domain(item) for item in order.items],
            shipping_info=ShippingInfoModel.from_domain(order.shipping_info),
            total_price=order.total_price,
            express_service=order.express_service,
            express_fee=order.express_fee,
            payment_reference=order.payment_reference,
            status=order.status.value,
            payment_status=order.payment_status.value,
            created_at=order.created_at,
        )


class TransactionResponse(CamelModel):
    transaction_id: UUID
    reference: str
    amount: int
    currency: str
    status: str
    order_id: Optional[UUID] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    @staticmethod
    def from_domain(transaction: Transaction) -> "TransactionResponse":
        return TransactionResponse(
            transaction_id=transaction.transaction_id,
            reference=transaction.reference,
            amount=transaction.amount,
            currency=transaction.currency.value,
            status=transaction.status.value,
            order_id=transaction.order_id,
            created_at=transaction.created_at,
            updated_at=transaction.updated_at,
        )


class PaymentStatusResponse(CamelModel):
    """Current state of a payment, and its order once settled."""
    transaction: TransactionResponse
    order: Optional[OrderResponse] = None

    class Config:
        json_schema_extra = {
            "example": {
                "transaction": {
                    "transactionId": "123e4567-e89b-12d3-a456-426614174000",
                    "reference": "ORD_1760000000000_user_42_AB12CD",
                    "amount": 2000,
                    "currency": "GHS",
                    "status": "success",
                    "orderId": "123e4567-e89b-12d3-a456-426614174001",
                    "createdAt": "2025-01-01T12:00:00Z",
                    "updatedAt": "2025-01-01T12:01:10Z",
                },
                "order": None,
            }
        }


class TransactionListResponse(CamelModel):
    items: List[TransactionResponse]
    page: int
    limit: int
    total_count: int
    total_pages: int


class OrderListResponse(CamelModel):
    items: List[OrderResponse]
    page: int
    limit: int
    total_count: int
    total_pages: int


class WebhookAck(CamelModel):
    received: bool = True
    message: str = "Webhook received"
