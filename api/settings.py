"""
Application settings.

Read once from the environment (and the project's .env file, if present).
Nothing outside this module reads payment configuration from the environment;
services receive it explicitly.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from domain.money import Currency
from services.payment_gateway import DEFAULT_BASE_URL, GatewayConfig

env_path = Path(__file__).parent.parent / ".env"

STORAGE_BACKENDS = ("supabase", "memory")


@dataclass(frozen=True)
class Settings:
    gateway_secret_key: str
    gateway_base_url: str = DEFAULT_BASE_URL
    callback_url: Optional[str] = None
    currency: Currency = Currency.GHS
    express_fee: int = 0
    reference_prefix: str = "ORD"
    gateway_timeout_seconds: float = 15.0
    storage_backend: str = "supabase"
    log_level: str = "INFO"
    reconcile_after_minutes: int = 30

    def __post_init__(self) -> None:
        if self.storage_backend not in STORAGE_BACKENDS:
            raise ValueError(
                f"STORAGE_BACKEND must be one of {', '.join(STORAGE_BACKENDS)}, got {self.storage_backend!r}"
            )
        if self.express_fee < 0:
            raise ValueError("EXPRESS_FEE must be >= 0")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Build settings from environment variables.

        Raises:
            RuntimeError: PAYMENT_GATEWAY_SECRET_KEY is not set
            ValueError: a value cannot be parsed
        """
        if environ is None:
            load_dotenv(dotenv_path=env_path)
            environ = os.environ

        secret_key = environ.get("PAYMENT_GATEWAY_SECRET_KEY")
        if not secret_key:
            raise RuntimeError(
                "Missing environment variable: PAYMENT_GATEWAY_SECRET_KEY. "
                "Set it to the payment gateway's secret API key."
            )

        return cls(
            gateway_secret_key=secret_key,
            gateway_base_url=environ.get("PAYMENT_GATEWAY_BASE_URL", DEFAULT_BASE_URL),
            callback_url=environ.get("PAYMENT_CALLBACK_URL") or None,
            currency=Currency(environ.get("STORE_CURRENCY", Currency.GHS.value).upper()),
            express_fee=int(environ.get("EXPRESS_FEE", "0")),
            reference_prefix=environ.get("TRANSACTION_REFERENCE_PREFIX", "ORD"),
            gateway_timeout_seconds=float(environ.get("GATEWAY_TIMEOUT_SECONDS", "15")),
            storage_backend=environ.get("STORAGE_BACKEND", "supabase").lower(),
            log_level=environ.get("LOG_LEVEL", "INFO").upper(),
            reconcile_after_minutes=int(environ.get("RECONCILE_AFTER_MINUTES", "30")),
        )

    def gateway_config(self) -> GatewayConfig:
        return GatewayConfig(
            secret_key=self.gateway_secret_key,
            base_url=self.gateway_base_url,
            currency=self.currency,
            callback_url=self.callback_url,
            timeout_seconds=self.gateway_timeout_seconds,
        )


__all__ = ["Settings", "STORAGE_BACKENDS"]
