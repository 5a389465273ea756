"""
Persistence boundary for payment state.

Every read goes through a scope: an authenticated user only sees rows they
own, a guest only sees rows without an owner, and the elevated scope (admin
console, gateway callbacks) sees everything. Status changes are conditional
UPDATEs, so a stale writer can never move a transaction backwards.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from storefront_payments.models import (
    ALLOWED_TRANSITIONS,
    Order,
    PaymentMethod,
    PaymentRefund,
    PaymentStatus,
    PaymentTransaction,
    PaymentWebhook,
    RefundStatus,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerScope:
    user_id: Optional[str] = None
    elevated: bool = False

    @property
    def is_guest(self) -> bool:
        return not self.elevated and self.user_id is None

    @classmethod
    def guest(cls) -> "LedgerScope":
        return cls()

    @classmethod
    def user(cls, user_id: str) -> "LedgerScope":
        return cls(user_id=user_id)

    @classmethod
    def system(cls) -> "LedgerScope":
        return cls(elevated=True)


class TransactionLedger:
    def __init__(self, db: Session, scope: LedgerScope):
        self.db = db
        self.scope = scope

    def _owner_filter(self, column):
        if self.scope.elevated:
            return None
        if self.scope.user_id is None:
            return column.is_(None)
        return column == self.scope.user_id

    def _scoped(self, query, column):
        condition = self._owner_filter(column)
        return query if condition is None else query.filter(condition)

    # -- payment methods -----------------------------------------------------

    def list_active_payment_methods(self) -> list[PaymentMethod]:
        return (
            self.db.query(PaymentMethod)
            .filter(PaymentMethod.is_active.is_(True))
            .order_by(PaymentMethod.sort_order.asc())
            .all()
        )

    def get_active_payment_method(self, name: str) -> PaymentMethod | None:
        return (
            self.db.query(PaymentMethod)
            .filter(PaymentMethod.name == name, PaymentMethod.is_active.is_(True))
            .first()
        )

    # -- orders --------------------------------------------------------------

    def get_order(self, order_id: str) -> Order | None:
        query = self.db.query(Order).filter(Order.id == order_id)
        return self._scoped(query, Order.user_id).first()

    def _mark_order_paid(self, order_id: str) -> None:
        self.db.execute(
            update(Order).where(Order.id == order_id).values(payment_status="paid")
        )

    # -- transactions --------------------------------------------------------

    def open_transaction(
        self,
        *,
        order_id: str,
        user_id: str | None,
        payment_method_id: str,
        amount: Decimal,
        currency: str,
        provider: str,
        expires_in: timedelta,
    ) -> PaymentTransaction:
        open_count = (
            self.db.query(func.count(PaymentTransaction.id))
            .filter(
                PaymentTransaction.order_id == order_id,
                PaymentTransaction.status.in_(
                    [PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value]
                ),
            )
            .scalar()
        )
        if open_count:
            logger.warning(
                f"Order {order_id} already has {open_count} open payment transaction(s); "
                "callers are expected to reuse or abandon them"
            )

        transaction = PaymentTransaction(
            order_id=order_id,
            user_id=user_id,
            payment_method_id=payment_method_id,
            amount=amount,
            currency=currency,
            provider=provider,
            status=PaymentStatus.PENDING.value,
            payment_data={},
            expires_at=utcnow() + expires_in,
        )
        self.db.add(transaction)
        self.db.commit()
        self.db.refresh(transaction)
        return transaction

    def get_transaction(self, transaction_id: str) -> PaymentTransaction | None:
        query = self.db.query(PaymentTransaction).filter(PaymentTransaction.id == transaction_id)
        return self._scoped(query, PaymentTransaction.user_id).first()

    def list_transactions(self) -> list[PaymentTransaction]:
        query = self._scoped(self.db.query(PaymentTransaction), PaymentTransaction.user_id)
        return query.order_by(PaymentTransaction.created_at.desc()).all()

    def record_gateway_response(
        self,
        transaction: PaymentTransaction,
        *,
        provider_transaction_id: str | None,
        payment_url: str | None,
        qr_code_url: str | None,
        payment_data: dict | None,
    ) -> PaymentTransaction:
        transaction.provider_transaction_id = provider_transaction_id
        transaction.payment_url = payment_url
        transaction.qr_code_url = qr_code_url
        transaction.payment_data = payment_data or {}
        self.db.commit()
        self.db.refresh(transaction)
        return transaction

    def transition(
        self,
        transaction: PaymentTransaction,
        status: PaymentStatus,
        *,
        paid_at: datetime | None = None,
        provider_transaction_id: str | None = None,
    ) -> bool:
        """Move ``transaction`` to ``status`` if the state machine allows it.

        Returns True only when a row actually changed.  Re-applying the
        current status is a silent no-op; any other disallowed move is
        logged as stale and dropped.  Entering ``completed`` marks the order
        paid in the same commit.
        """
        if transaction.status == status.value:
            return False

        allowed = ALLOWED_TRANSITIONS.get(status, set())
        values = {"status": status.value, "updated_at": utcnow()}
        if paid_at is not None:
            values["paid_at"] = paid_at
        if provider_transaction_id:
            values["provider_transaction_id"] = provider_transaction_id

        stmt = (
            update(PaymentTransaction)
            .where(
                PaymentTransaction.id == transaction.id,
                PaymentTransaction.status.in_([s.value for s in allowed]),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        owner = self._owner_filter(PaymentTransaction.user_id)
        if owner is not None:
            stmt = stmt.where(owner)

        try:
            result = self.db.execute(stmt)
            if result.rowcount and status is PaymentStatus.COMPLETED:
                self._mark_order_paid(transaction.order_id)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        self.db.refresh(transaction)

        if result.rowcount == 0:
            if transaction.status != status.value:
                logger.warning(
                    f"Dropped stale transition of {transaction.id} to {status.value}; "
                    f"stored status is {transaction.status}"
                )
            return False

        logger.info(f"Transaction {transaction.id} -> {status.value}")
        if status is PaymentStatus.COMPLETED:
            logger.info(f"Order {transaction.order_id} marked as paid")
        return True

    # -- refunds -------------------------------------------------------------

    def refunded_total(
        self, transaction_id: str, statuses: tuple[RefundStatus, ...] = (RefundStatus.COMPLETED,)
    ) -> Decimal:
        total = (
            self.db.query(func.coalesce(func.sum(PaymentRefund.amount), 0))
            .filter(
                PaymentRefund.transaction_id == transaction_id,
                PaymentRefund.status.in_([s.value for s in statuses]),
            )
            .scalar()
        )
        return Decimal(str(total))

    def reserve_refund(
        self, transaction: PaymentTransaction, amount: Decimal | None, reason: str | None
    ) -> PaymentRefund | None:
        """Insert a pending refund if ``amount`` still fits, else return None.

        The transaction row is locked while the remainder is computed, and
        pending refunds count against it, so concurrent requests cannot
        both claim the same remainder.  ``amount=None`` takes the whole
        remainder.
        """
        locked = (
            self.db.query(PaymentTransaction)
            .filter(PaymentTransaction.id == transaction.id)
            .with_for_update()
            .populate_existing()
            .one()
        )
        claimed = self.refunded_total(
            locked.id, (RefundStatus.PENDING, RefundStatus.COMPLETED)
        )
        remaining = Decimal(locked.amount) - claimed
        if amount is None:
            amount = remaining
        if locked.status != PaymentStatus.COMPLETED.value or amount <= 0 or amount > remaining:
            self.db.rollback()
            return None

        refund = PaymentRefund(
            transaction_id=transaction.id,
            order_id=transaction.order_id,
            user_id=transaction.user_id,
            amount=amount,
            reason=reason,
            status=RefundStatus.PENDING.value,
        )
        self.db.add(refund)
        self.db.commit()
        self.db.refresh(refund)
        return refund

    def complete_refund(self, refund: PaymentRefund, provider_refund_id: str | None) -> None:
        refund.status = RefundStatus.COMPLETED.value
        refund.provider_refund_id = provider_refund_id
        refund.processed_at = utcnow()
        self.db.commit()

    def fail_refund(self, refund: PaymentRefund) -> None:
        refund.status = RefundStatus.FAILED.value
        self.db.commit()

    # -- webhook audit log ---------------------------------------------------

    def record_webhook(self, provider: str, payload: str) -> PaymentWebhook:
        webhook = PaymentWebhook(provider=provider, payload=payload, processed=False)
        self.db.add(webhook)
        self.db.commit()
        self.db.refresh(webhook)
        return webhook

    def finish_webhook(
        self,
        webhook: PaymentWebhook,
        *,
        processed: bool,
        event_type: str | None = None,
        transaction_id: str | None = None,
        error_message: str | None = None,
    ) -> None:
        webhook.processed = processed
        webhook.event_type = event_type or webhook.event_type
        webhook.transaction_id = transaction_id
        webhook.error_message = error_message
        self.db.commit()

