import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    JSON, Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, Text,
)

from storefront_payments.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone=True columns
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


TERMINAL_STATUSES = frozenset({
    PaymentStatus.COMPLETED,
    PaymentStatus.FAILED,
    PaymentStatus.CANCELLED,
    PaymentStatus.REFUNDED,
})

# target status -> statuses it may be entered from
ALLOWED_TRANSITIONS = {
    PaymentStatus.PROCESSING: {PaymentStatus.PENDING},
    PaymentStatus.COMPLETED: {PaymentStatus.PENDING, PaymentStatus.PROCESSING},
    PaymentStatus.FAILED: {PaymentStatus.PENDING, PaymentStatus.PROCESSING},
    PaymentStatus.CANCELLED: {PaymentStatus.PENDING, PaymentStatus.PROCESSING},
    PaymentStatus.REFUNDED: {PaymentStatus.COMPLETED},
}


class RefundStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class Order(Base):
    """Read-mostly mapping of the storefront's orders table."""

    __tablename__ = "orders"

    id = Column(String, primary_key=True)
    user_id = Column(String, index=True, nullable=True)   # NULL for guest checkout
    total_amount = Column(Numeric(10, 2), nullable=False)
    payment_status = Column(String, default="unpaid")


class PaymentMethod(Base):
    __tablename__ = "payment_methods"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(50), unique=True, nullable=False)   # alipay | wechat | credit_card
    display_name = Column(String(100), nullable=False)
    icon = Column(String(100))
    is_active = Column(Boolean, default=True, nullable=False)
    sort_order = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id = Column(String, index=True, nullable=False)
    user_id = Column(String, index=True, nullable=True)
    payment_method_id = Column(String, ForeignKey("payment_methods.id"), nullable=False)

    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False)

    provider = Column(String(50), nullable=False)
    provider_transaction_id = Column(String, index=True)
    status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value)

    payment_url = Column(Text)
    qr_code_url = Column(Text)
    payment_data = Column(JSON, default=dict)

    expires_at = Column(DateTime(timezone=True))
    paid_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @property
    def is_terminal(self) -> bool:
        return PaymentStatus(self.status) in TERMINAL_STATUSES

    @property
    def expired(self) -> bool:
        """Advisory only: the stored status is never moved because of expiry."""
        expires_at = as_utc(self.expires_at)
        return not self.is_terminal and expires_at is not None and expires_at <= utcnow()


class PaymentRefund(Base):
    __tablename__ = "payment_refunds"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    transaction_id = Column(String, ForeignKey("payment_transactions.id"), index=True, nullable=False)
    order_id = Column(String, nullable=False)
    user_id = Column(String, nullable=True)

    amount = Column(Numeric(10, 2), nullable=False)
    reason = Column(Text)
    status = Column(String(20), nullable=False, default=RefundStatus.PENDING.value)
    provider_refund_id = Column(String)

    processed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class PaymentWebhook(Base):
    __tablename__ = "payment_webhooks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(String(50), nullable=False)
    event_type = Column(String(100), default="unknown")
    transaction_id = Column(String, index=True)
    payload = Column(Text)
    processed = Column(Boolean, default=False, nullable=False)
    error_message = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow)
