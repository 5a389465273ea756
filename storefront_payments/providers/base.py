"""
Adapter contract shared by every payment gateway.

Each adapter translates the uniform request/result types below into one
gateway's wire protocol. Adapters never let an exception escape: every
failure comes back as a result with ``success=False`` and an ``error``.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

import httpx

from storefront_payments.errors import (
    GatewayResponseError,
    GatewayTransportError,
    PaymentError,
    ProviderConfigurationError,
)
from storefront_payments.models import PaymentStatus
from storefront_payments.schemas import PaymentData

logger = logging.getLogger(__name__)


@dataclass
class PaymentRequest:
    order_id: str
    amount: Decimal
    currency: str
    transaction_id: str            # idempotency key for the gateway
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None
    client_ip: str = "127.0.0.1"


@dataclass
class CreatePaymentResult:
    success: bool
    transaction_id: Optional[str] = None    # gateway-side reference
    payment_url: Optional[str] = None
    qr_code_url: Optional[str] = None
    payment_data: Optional[PaymentData] = None
    status: Optional[PaymentStatus] = None
    error: Optional[str] = None


@dataclass
class VerifyPaymentResult:
    success: bool
    status: Optional[PaymentStatus] = None
    provider_transaction_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    error: Optional[str] = None


@dataclass
class RefundInstruction:
    transaction_id: str
    provider_transaction_id: Optional[str]
    amount: Decimal
    total_amount: Decimal
    currency: str
    reason: Optional[str] = None


@dataclass
class RefundResult:
    success: bool
    refund_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class WebhookResult:
    success: bool
    transaction_id: Optional[str] = None
    status: Optional[PaymentStatus] = None
    provider_transaction_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    event_type: Optional[str] = None


def to_major_string(amount: Decimal) -> str:
    return str(Decimal(amount).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def to_minor_units(amount: Decimal, exponent: int = 2) -> int:
    scaled = Decimal(amount) * (Decimal(10) ** exponent)
    return int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PaymentProvider(ABC):
    """Base class for gateway adapters."""

    name: str = ""

    def __init__(self, timeout: float = 10.0, http_client: httpx.Client | None = None):
        self.timeout = timeout
        self.http = http_client or httpx.Client(timeout=timeout)

    @abstractmethod
    def create_payment(self, request: PaymentRequest) -> CreatePaymentResult:
        ...

    @abstractmethod
    def verify_payment(
        self, transaction_id: str, provider_transaction_id: str | None = None
    ) -> VerifyPaymentResult:
        ...

    @abstractmethod
    def process_refund(self, instruction: RefundInstruction) -> RefundResult:
        ...

    @abstractmethod
    def handle_webhook(self, payload: bytes, signature: str | None = None) -> WebhookResult:
        ...

    def _post(self, url: str, **kwargs: Any) -> httpx.Response:
        """POST to the gateway, folding transport problems into GatewayTransportError."""
        client = kwargs.pop("client", None) or self.http
        try:
            response = client.post(url, **kwargs)
        except httpx.TimeoutException as e:
            raise GatewayTransportError(f"Gateway timed out: {e}") from e
        except httpx.HTTPError as e:
            raise GatewayTransportError(f"Gateway unreachable: {e}") from e

        if response.status_code >= 500:
            raise GatewayTransportError(f"Gateway returned HTTP {response.status_code}")
        if response.status_code >= 400:
            raise GatewayResponseError(
                f"Gateway rejected request with HTTP {response.status_code}",
                code=str(response.status_code),
            )
        return response

    def _failure_message(self, operation: str, exc: Exception) -> str:
        """Log ``exc`` under its error category and return the caller-facing message."""
        if isinstance(exc, GatewayTransportError):
            logger.warning(f"{self.name} {operation}: transport failure: {exc.message}")
        elif isinstance(exc, GatewayResponseError):
            logger.info(f"{self.name} {operation}: gateway refused ({exc.code}): {exc.message}")
        elif isinstance(exc, ProviderConfigurationError):
            logger.error(f"{self.name} {operation}: configuration error: {exc.message}")
        elif isinstance(exc, PaymentError):
            logger.warning(f"{self.name} {operation}: {exc.category} error: {exc.message}")
        else:
            logger.exception(f"{self.name} {operation}: unexpected error")
            return f"{operation.capitalize()} failed"
        return exc.message
