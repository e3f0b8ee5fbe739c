"""
Payment gateway client (Paystack-compatible HTTP API).

Handles:
- Creating a payment intent (POST /transaction/initialize)
- Verifying a reference's authoritative status (GET /transaction/verify/{reference})
- Authenticating inbound webhooks (HMAC-SHA512 over the raw request body)

The client is constructed explicitly with its secret and base URL and passed to
the services that need it; nothing is configured at import time.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

import httpx

from domain.money import Currency
from domain.time import parse_utc_datetime

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.paystack.co"


class GatewayError(Exception):
    """Raised when the gateway cannot be reached or rejects a request."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class UnknownReferenceError(GatewayError):
    """Raised when the gateway has no record of a reference."""


@dataclass(frozen=True)
class GatewayConfig:
    secret_key: str
    base_url: str = DEFAULT_BASE_URL
    currency: Currency = Currency.GHS
    callback_url: Optional[str] = None
    timeout_seconds: float = 15.0


@dataclass(frozen=True, slots=True)
class PaymentIntent:
    redirect_url: str
    access_code: Optional[str]
    reference: str
    raw: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class GatewayVerification:
    """
    Authoritative gateway view of a reference.

    success: True only when the gateway reports the charge as successful
    remote_status: raw gateway status (success, failed, abandoned, ongoing, ...)
    amount: amount charged, in minor units
    """
    reference: str
    success: bool
    remote_status: str
    amount: Optional[int]
    currency: Optional[str]
    paid_at: Optional[datetime]
    raw: Mapping[str, Any] = field(default_factory=dict)


class PaymentGatewayClient:
    def __init__(self, config: GatewayConfig, http_client: Optional[httpx.Client] = None):
        if not config.secret_key:
            raise ValueError("Payment gateway secret key is required")
        self.config = config
        self._http = http_client or httpx.Client(
            base_url=config.base_url,
            timeout=config.timeout_seconds,
        )

    def close(self) -> None:
        self._http.close()

    @property
    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.secret_key}",
            "Content-Type": "application/json",
        }

    def _request(self, method: str, path: str, *, json: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        try:
            response = self._http.request(method, path, json=json, headers=self._headers)
        except httpx.HTTPError as e:
            raise GatewayError(f"Payment gateway unreachable: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400 or not body.get("status"):
            message = body.get("message") or f"HTTP {response.status_code}"
            raise GatewayError(message, status_code=response.status_code)

        return body

    def create_intent(
        self,
        email: str,
        amount: int,
        reference: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> PaymentIntent:
        """
        Open a payment intent for `amount` minor units.

        Callers convert decimal prices before calling; fractional or
        non-positive amounts are rejected here.
        """

        if not isinstance(amount, int) or isinstance(amount, bool) or amount < 1:
            raise ValueError("amount must be a positive integer in minor units")

        payload: Dict[str, Any] = {
            "email": email,
            "amount": amount,
            "reference": reference,
            "currency": self.config.currency.value,
            "metadata": dict(metadata or {}),
        }
        if self.config.callback_url:
            payload["callback_url"] = self.config.callback_url

        try:
            body = self._request("POST", "/transaction/initialize", json=payload)
        except GatewayError as e:
            logger.error(f"Error initializing transaction {reference}: {e}")
            raise

        data = body.get("data") or {}
        redirect_url = data.get("authorization_url")
        if not redirect_url:
            raise GatewayError("Gateway response did not include an authorization URL")

        logger.info(f"Transaction initialized successfully: {reference}")
        return PaymentIntent(
            redirect_url=redirect_url,
            access_code=data.get("access_code"),
            reference=data.get("reference") or reference,
            raw=body,
        )

    def verify(self, reference: str) -> GatewayVerification:
        """Query the gateway's authoritative status for `reference`. Safe to repeat."""

        try:
            body = self._request("GET", f"/transaction/verify/{reference}")
        except GatewayError as e:
            logger.warning(f"Error verifying transaction {reference}: {e}")
            if e.status_code in (400, 404):
                raise UnknownReferenceError(str(e), status_code=e.status_code) from e
            raise

        data = body.get("data") or {}
        remote_status = str(data.get("status") or "unknown")
        amount = data.get("amount")
        paid_at = data.get("paid_at") or data.get("paidAt")
        if paid_at:
            try:
                paid_at = parse_utc_datetime(paid_at)
            except (TypeError, ValueError):
                # Informational only; the raw value stays in `raw`.
                logger.warning(f"Unparseable paid_at for {reference}: {paid_at!r}")
                paid_at = None
        else:
            paid_at = None

        return GatewayVerification(
            reference=str(data.get("reference") or reference),
            success=remote_status == "success",
            remote_status=remote_status,
            amount=int(amount) if amount is not None else None,
            currency=data.get("currency"),
            paid_at=paid_at,
            raw=body,
        )

    def sign(self, raw_body: bytes) -> str:
        """HMAC-SHA512 hex digest of `raw_body` under the shared secret."""

        return hmac.new(self.config.secret_key.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()

    def verify_signature(self, signature_header: Optional[str], raw_body: bytes) -> bool:
        """
        Check a webhook signature against the exact bytes received.

        The body must not be parsed and re-serialised first: key order and
        whitespace changes break the digest.
        """

        if not signature_header:
            return False
        expected = self.sign(raw_body)
        return hmac.compare_digest(expected, signature_header.strip().lower())


__all__ = [
    "GatewayConfig",
    "GatewayError",
    "GatewayVerification",
    "PaymentGatewayClient",
    "PaymentIntent",
    "UnknownReferenceError",
]
