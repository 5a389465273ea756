"""
Card payments through Stripe PaymentIntents.

No manual signing: calls authenticate with the secret key, and webhooks are
verified against the ``Stripe-Signature`` header with the endpoint secret.
"""

import logging
import uuid
from decimal import Decimal

import stripe

from storefront_payments.config import StripeConfig
from storefront_payments.errors import (
    GatewayResponseError,
    GatewayTransportError,
    ProviderConfigurationError,
    SignatureVerificationError,
)
from storefront_payments.models import PaymentStatus
from storefront_payments.providers.base import (
    CreatePaymentResult,
    PaymentProvider,
    PaymentRequest,
    RefundInstruction,
    RefundResult,
    VerifyPaymentResult,
    WebhookResult,
    to_major_string,
    to_minor_units,
)
from storefront_payments.schemas import CardPaymentData

logger = logging.getLogger(__name__)

ZERO_DECIMAL_CURRENCIES = {
    "bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga",
    "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf",
}

INTENT_STATUS_MAP = {
    "succeeded": PaymentStatus.COMPLETED,
    "processing": PaymentStatus.PROCESSING,
    "requires_action": PaymentStatus.PROCESSING,
    "requires_capture": PaymentStatus.PROCESSING,
    "requires_payment_method": PaymentStatus.PENDING,
    "requires_confirmation": PaymentStatus.PENDING,
    "canceled": PaymentStatus.CANCELLED,
}

WEBHOOK_EVENT_MAP = {
    "payment_intent.succeeded": PaymentStatus.COMPLETED,
    "payment_intent.payment_failed": PaymentStatus.FAILED,
    "payment_intent.canceled": PaymentStatus.CANCELLED,
    "payment_intent.processing": PaymentStatus.PROCESSING,
}


def stripe_amount(amount: Decimal, currency: str) -> int:
    exponent = 0 if currency.lower() in ZERO_DECIMAL_CURRENCIES else 2
    return to_minor_units(amount, exponent)


def major_amount(minor: int, currency: str) -> str:
    exponent = 0 if currency.lower() in ZERO_DECIMAL_CURRENCIES else 2
    return to_major_string(Decimal(minor) / (Decimal(10) ** exponent))


class StripeCardProvider(PaymentProvider):
    name = "credit_card"

    def __init__(self, config: StripeConfig, **kwargs):
        super().__init__(**kwargs)
        self.config = config

    def _api_key(self) -> str:
        if not self.config.secret_key:
            raise ProviderConfigurationError("Stripe secret key is not configured")
        return self.config.secret_key

    def _stripe_call(self, fn, *args, **kwargs):
        try:
            return fn(*args, api_key=self._api_key(), **kwargs)
        except stripe.APIConnectionError as e:
            raise GatewayTransportError(f"Stripe unreachable: {e.user_message or e}") from e
        except stripe.StripeError as e:
            code = getattr(e, "code", None)
            raise GatewayResponseError(e.user_message or str(e) or "Stripe request failed", code=code) from e

    def create_payment(self, request: PaymentRequest) -> CreatePaymentResult:
        try:
            logger.info(f"stripe create intent for transaction {request.transaction_id}")
            intent = self._stripe_call(
                stripe.PaymentIntent.create,
                amount=stripe_amount(request.amount, request.currency),
                currency=request.currency.lower(),
                automatic_payment_methods={"enabled": True},
                description=f"Payment for order {request.order_id}",
                metadata={
                    "order_id": request.order_id,
                    "transaction_id": request.transaction_id,
                },
                idempotency_key=request.transaction_id,
            )
            return CreatePaymentResult(
                success=True,
                transaction_id=intent.id,
                payment_data=CardPaymentData(
                    payment_intent_id=intent.id,
                    client_secret=intent.client_secret,
                    amount=to_major_string(request.amount),
                    currency=request.currency.upper(),
                    status=intent.status,
                ),
            )
        except Exception as e:
            return CreatePaymentResult(success=False, error=self._failure_message("create payment", e))

    def confirm_payment(
        self, provider_transaction_id: str, payment_method_id: str, return_url: str | None = None
    ) -> CreatePaymentResult:
        try:
            params = {"payment_method": payment_method_id}
            if return_url:
                params["return_url"] = return_url
            intent = self._stripe_call(stripe.PaymentIntent.confirm, provider_transaction_id, **params)
            next_action = getattr(intent, "next_action", None)
            return CreatePaymentResult(
                success=True,
                transaction_id=intent.id,
                status=INTENT_STATUS_MAP.get(intent.status, PaymentStatus.PENDING),
                payment_data=CardPaymentData(
                    payment_intent_id=intent.id,
                    client_secret=intent.client_secret,
                    amount=major_amount(intent.amount, intent.currency),
                    currency=intent.currency.upper(),
                    status=intent.status,
                    next_action=next_action.to_dict() if next_action else None,
                ),
            )
        except Exception as e:
            return CreatePaymentResult(success=False, error=self._failure_message("confirm payment", e))

    def verify_payment(self, transaction_id, provider_transaction_id=None) -> VerifyPaymentResult:
        try:
            if not provider_transaction_id:
                raise GatewayResponseError("No payment intent recorded for this transaction")
            intent = self._stripe_call(stripe.PaymentIntent.retrieve, provider_transaction_id)
            status = INTENT_STATUS_MAP.get(intent.status, PaymentStatus.PENDING)
            if status is PaymentStatus.PENDING and getattr(intent, "last_payment_error", None):
                status = PaymentStatus.FAILED
            return VerifyPaymentResult(success=True, status=status, provider_transaction_id=intent.id)
        except Exception as e:
            return VerifyPaymentResult(success=False, error=self._failure_message("verify payment", e))

    def process_refund(self, instruction: RefundInstruction) -> RefundResult:
        try:
            if not instruction.provider_transaction_id:
                raise GatewayResponseError("No payment intent recorded for this transaction")
            refund = self._stripe_call(
                stripe.Refund.create,
                payment_intent=instruction.provider_transaction_id,
                amount=stripe_amount(instruction.amount, instruction.currency),
                reason="requested_by_customer",
                metadata={
                    "transaction_id": instruction.transaction_id,
                    "reason": instruction.reason or "",
                },
                idempotency_key=f"refund-{uuid.uuid4().hex}",
            )
            if refund.status in ("failed", "canceled"):
                raise GatewayResponseError(f"Refund {refund.status}", code=refund.status)
            return RefundResult(success=True, refund_id=refund.id)
        except Exception as e:
            return RefundResult(success=False, error=self._failure_message("process refund", e))

    def handle_webhook(self, payload: bytes, signature: str | None = None) -> WebhookResult:
        try:
            if not signature:
                raise SignatureVerificationError("Missing Stripe-Signature header")
            if not self.config.webhook_secret:
                raise ProviderConfigurationError("Stripe webhook secret is not configured")
            event = stripe.Webhook.construct_event(
                payload, signature, self.config.webhook_secret, api_key=self._api_key()
            ).to_dict()

            event_type = event["type"]
            status = WEBHOOK_EVENT_MAP.get(event_type)
            if status is None:
                logger.info(f"stripe webhook: ignoring event type {event_type}")
                return WebhookResult(success=True, event_type=event_type)

            intent = event["data"]["object"]
            metadata = intent.get("metadata") or {}
            return WebhookResult(
                success=True,
                transaction_id=metadata.get("transaction_id"),
                status=status,
                provider_transaction_id=intent.get("id"),
                event_type=event_type,
            )
        except stripe.SignatureVerificationError as e:
            self._failure_message("handle webhook", SignatureVerificationError(str(e)))
        except ValueError as e:
            self._failure_message("handle webhook", SignatureVerificationError(f"Invalid payload: {e}"))
        except (KeyError, TypeError, AttributeError) as e:
            self._failure_message("handle webhook", GatewayResponseError(f"Malformed Stripe event: {e}"))
        except Exception as e:
            self._failure_message("handle webhook", e)
        return WebhookResult(success=False)
