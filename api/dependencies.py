"""
FastAPI dependencies.

Long-lived collaborators (store, gateway client, notifier) are built once per
process from Settings. Tests replace them with `app.dependency_overrides`.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException

from api.settings import Settings
from repositories.memory_store import InMemoryCheckoutStore
from repositories.store import CheckoutStore
from services.checkout_service import CheckoutOrchestrator
from services.notification_service import OrderNotifier
from services.payment_gateway import PaymentGatewayClient
from services.settlement_service import SettlementProcessor


@dataclass(frozen=True, slots=True)
class SessionUser:
    user_id: str
    email: Optional[str] = None


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()


@lru_cache(maxsize=1)
def get_store() -> CheckoutStore:
    settings = get_settings()
    if settings.storage_backend == "memory":
        return InMemoryCheckoutStore()

    from repositories.supabase_store import SupabaseCheckoutStore

    return SupabaseCheckoutStore()


@lru_cache(maxsize=1)
def get_gateway() -> PaymentGatewayClient:
    return PaymentGatewayClient(get_settings().gateway_config())


@lru_cache(maxsize=1)
def get_notifier() -> OrderNotifier:
    return OrderNotifier()


def get_checkout_orchestrator(
    store: CheckoutStore = Depends(get_store),
    gateway: PaymentGatewayClient = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
) -> CheckoutOrchestrator:
    return CheckoutOrchestrator(
        store=store,
        gateway=gateway,
        currency=settings.currency,
        express_fee=settings.express_fee,
        reference_prefix=settings.reference_prefix,
    )


def get_settlement_processor(
    store: CheckoutStore = Depends(get_store),
    gateway: PaymentGatewayClient = Depends(get_gateway),
    notifier: OrderNotifier = Depends(get_notifier),
) -> SettlementProcessor:
    return SettlementProcessor(store=store, gateway=gateway, notifier=notifier)


def get_current_user(
    x_user_id: Optional[str] = Header(default=None),
    x_user_email: Optional[str] = Header(default=None),
) -> SessionUser:
    """
    Resolve the authenticated user from the identity headers set upstream.

    Session handling itself happens in front of this service.
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Authentication required")
    email = x_user_email.strip() if x_user_email else None
    return SessionUser(user_id=x_user_id.strip(), email=email or None)


__all__ = [
    "SessionUser",
    "get_checkout_orchestrator",
    "get_current_user",
    "get_gateway",
    "get_notifier",
    "get_settings",
    "get_settlement_processor",
    "get_store",
]
