"""
Payment orchestration: validation, transaction lifecycle and provider dispatch.

The service never talks to a gateway directly; it goes through the adapter
registered for the transaction's provider, and it only writes through the
ledger so that every status change respects the state machine.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal

from fastapi import Depends
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from storefront_payments.auth import Identity, get_identity
from storefront_payments.config import Settings, get_settings
from storefront_payments.database import get_db
from storefront_payments.ledger import LedgerScope, TransactionLedger
from storefront_payments.models import PaymentStatus, PaymentTransaction, utcnow
from storefront_payments.providers import ProviderName, ProviderRegistry, get_registry
from storefront_payments.providers.base import PaymentRequest, RefundInstruction, WebhookResult
from storefront_payments.schemas import (
    ConfirmCardPaymentResponse,
    CreatePaymentRequest,
    CreatePaymentResponse,
    PaymentMethodOut,
    PaymentStatusResponse,
    RefundRequest,
    RefundResponse,
    TransactionOut,
)

logger = logging.getLogger(__name__)

AMOUNT_TOLERANCE = Decimal("0.01")


class PaymentService:
    def __init__(
        self,
        db: Session,
        scope: LedgerScope,
        registry: ProviderRegistry,
        settings: Settings,
    ):
        self.db = db
        self.ledger = TransactionLedger(db, scope)
        self.registry = registry
        self.settings = settings

    # -- payment methods -----------------------------------------------------

    def get_payment_methods(self) -> list[PaymentMethodOut]:
        return [PaymentMethodOut.model_validate(m) for m in self.ledger.list_active_payment_methods()]

    # -- create --------------------------------------------------------------

    def create_payment_transaction(
        self, request: CreatePaymentRequest, client_ip: str = "127.0.0.1"
    ) -> CreatePaymentResponse:
        method = self.ledger.get_active_payment_method(request.payment_method)
        if method is None:
            return CreatePaymentResponse(success=False, error="Invalid payment method")

        provider = self.registry.get(method.name)
        if provider is None:
            return CreatePaymentResponse(success=False, error="Payment provider not available")

        order = self.ledger.get_order(request.order_id)
        if order is None:
            return CreatePaymentResponse(success=False, error="Order not found or access denied")

        if abs(Decimal(order.total_amount) - request.amount) > AMOUNT_TOLERANCE:
            logger.info(
                f"Rejected payment for order {order.id}: amount {request.amount} "
                f"does not match order total {order.total_amount}"
            )
            return CreatePaymentResponse(success=False, error="Amount mismatch")

        currency = (request.currency or self.settings.default_currency).upper()

        try:
            transaction = self.ledger.open_transaction(
                order_id=order.id,
                user_id=order.user_id,
                payment_method_id=method.id,
                amount=request.amount,
                currency=currency,
                provider=method.name,
                expires_in=timedelta(minutes=self.settings.payment_expiry_minutes),
            )
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception(f"Could not persist payment transaction for order {order.id}")
            return CreatePaymentResponse(success=False, error="Failed to create payment transaction")

        result = provider.create_payment(PaymentRequest(
            order_id=order.id,
            amount=request.amount,
            currency=currency,
            transaction_id=transaction.id,
            return_url=request.return_url or self.settings.default_return_url,
            cancel_url=request.cancel_url or self.settings.default_cancel_url,
            client_ip=client_ip,
        ))

        if not result.success:
            self.ledger.transition(transaction, PaymentStatus.FAILED)
            return CreatePaymentResponse(
                success=False,
                transaction_id=transaction.id,
                error=result.error or "Failed to create payment transaction",
            )

        payment_data = result.payment_data.model_dump() if result.payment_data else None
        self.ledger.record_gateway_response(
            transaction,
            provider_transaction_id=result.transaction_id,
            payment_url=result.payment_url,
            qr_code_url=result.qr_code_url,
            payment_data=payment_data,
        )
        if result.status is not None:
            self._apply_status(transaction, result.status)

        logger.info(f"Created {method.name} payment {transaction.id} for order {order.id}")
        return CreatePaymentResponse(
            success=True,
            transaction_id=transaction.id,
            payment_url=result.payment_url,
            qr_code_url=result.qr_code_url,
            payment_data=payment_data,
        )

    # -- status --------------------------------------------------------------

    def check_payment_status(self, transaction_id: str) -> PaymentStatusResponse:
        transaction = self.ledger.get_transaction(transaction_id)
        if transaction is None:
            return PaymentStatusResponse(success=False, error="Transaction not found")

        if transaction.status == PaymentStatus.COMPLETED.value:
            return self._status_response(transaction)

        provider = self.registry.get(transaction.provider)
        if provider is None:
            return PaymentStatusResponse(success=False, error="Payment provider not available")

        result = provider.verify_payment(transaction.id, transaction.provider_transaction_id)
        if not result.success:
            return PaymentStatusResponse(
                success=False,
                status=transaction.status,
                error=result.error or "Failed to verify payment",
            )

        self._apply_status(
            transaction,
            result.status,
            paid_at=result.paid_at,
            provider_transaction_id=result.provider_transaction_id,
        )
        return self._status_response(transaction)

    def _status_response(self, transaction: PaymentTransaction) -> PaymentStatusResponse:
        return PaymentStatusResponse(
            success=True,
            status=transaction.status,
            transaction=TransactionOut.model_validate(transaction),
        )

    def _apply_status(
        self,
        transaction: PaymentTransaction,
        status: PaymentStatus | None,
        *,
        paid_at: datetime | None = None,
        provider_transaction_id: str | None = None,
    ) -> bool:
        if status is None:
            return False
        if status is PaymentStatus.COMPLETED:
            paid_at = paid_at or utcnow()
        else:
            paid_at = None

        return self.ledger.transition(
            transaction,
            status,
            paid_at=paid_at,
            provider_transaction_id=provider_transaction_id,
        )

    # -- refunds -------------------------------------------------------------

    def process_refund(self, request: RefundRequest) -> RefundResponse:
        transaction = self.ledger.get_transaction(request.transaction_id)
        if transaction is None:
            return RefundResponse(success=False, error="Transaction not found")
        if transaction.status != PaymentStatus.COMPLETED.value:
            return RefundResponse(success=False, error="Can only refund completed transactions")

        provider = self.registry.get(transaction.provider)
        if provider is None:
            return RefundResponse(success=False, error="Payment provider not available")

        refund = self.ledger.reserve_refund(transaction, request.amount, request.reason)
        if refund is None:
            return RefundResponse(
                success=False, error="Refund amount exceeds remaining refundable amount"
            )
        amount = Decimal(refund.amount)
        total = Decimal(transaction.amount)
        result = provider.process_refund(RefundInstruction(
            transaction_id=transaction.id,
            provider_transaction_id=transaction.provider_transaction_id,
            amount=amount,
            total_amount=total,
            currency=transaction.currency,
            reason=request.reason,
        ))

        if not result.success:
            self.ledger.fail_refund(refund)
            return RefundResponse(success=False, error=result.error or "Refund failed")

        self.ledger.complete_refund(refund, result.refund_id)
        logger.info(f"Refunded {amount} {transaction.currency} on transaction {transaction.id}")

        if self.ledger.refunded_total(transaction.id) >= total:
            self.ledger.transition(transaction, PaymentStatus.REFUNDED)
        return RefundResponse(success=True, refund_id=refund.id)

    # -- card confirmation ---------------------------------------------------

    def confirm_card_payment(
        self, transaction_id: str, payment_method_id: str
    ) -> ConfirmCardPaymentResponse:
        transaction = self.ledger.get_transaction(transaction_id)
        if transaction is None:
            return ConfirmCardPaymentResponse(success=False, error="Transaction not found")
        if transaction.provider != ProviderName.CREDIT_CARD.value:
            return ConfirmCardPaymentResponse(success=False, error="Transaction is not a card payment")
        if transaction.is_terminal:
            return ConfirmCardPaymentResponse(
                success=False,
                status=transaction.status,
                error=f"Transaction is already {transaction.status}",
            )

        provider = self.registry.get(transaction.provider)
        if provider is None:
            return ConfirmCardPaymentResponse(success=False, error="Payment provider not available")

        result = provider.confirm_payment(
            transaction.provider_transaction_id,
            payment_method_id,
            return_url=self.settings.default_return_url,
        )
        if not result.success:
            return ConfirmCardPaymentResponse(
                success=False, status=transaction.status, error=result.error
            )

        self._apply_status(transaction, result.status, provider_transaction_id=result.transaction_id)
        payment_data = result.payment_data.model_dump() if result.payment_data else None
        return ConfirmCardPaymentResponse(
            success=True,
            status=transaction.status,
            requires_action=bool(payment_data and payment_data.get("status") == "requires_action"),
            payment_data=payment_data,
        )

    # -- listings & callbacks ------------------------------------------------

    def list_transactions(self) -> list[TransactionOut]:
        return [TransactionOut.model_validate(tx) for tx in self.ledger.list_transactions()]

    def apply_webhook_result(self, provider: str, result: WebhookResult) -> str | None:
        """Apply a verified callback; returns the id of the transaction it touched."""
        if not result.transaction_id or result.status is None:
            return None

        transaction = self.ledger.get_transaction(result.transaction_id)
        if transaction is None:
            logger.warning(f"{provider} webhook for unknown transaction {result.transaction_id}; ignoring")
            return None
        if transaction.provider != provider:
            logger.warning(
                f"{provider} webhook references {transaction.provider} transaction {transaction.id}; ignoring"
            )
            return None

        self._apply_status(
            transaction,
            result.status,
            paid_at=result.paid_at,
            provider_transaction_id=result.provider_transaction_id,
        )
        return transaction.id


def get_payment_service(
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
    registry: ProviderRegistry = Depends(get_registry),
    settings: Settings = Depends(get_settings),
) -> PaymentService:
    return PaymentService(db, identity.scope, registry, settings)


def get_system_service(
    db: Session = Depends(get_db),
    registry: ProviderRegistry = Depends(get_registry),
    settings: Settings = Depends(get_settings),
) -> PaymentService:
    return PaymentService(db, LedgerScope.system(), registry, settings)
