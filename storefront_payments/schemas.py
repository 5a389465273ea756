from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# --- provider payloads stored in PaymentTransaction.payment_data ---

class AlipayPaymentData(BaseModel):
    provider: Literal["alipay"] = "alipay"
    out_trade_no: str
    total_amount: str
    subject: str


class WechatPaymentData(BaseModel):
    provider: Literal["wechat"] = "wechat"
    out_trade_no: str
    prepay_id: Optional[str] = None
    code_url: Optional[str] = None


class CardPaymentData(BaseModel):
    provider: Literal["credit_card"] = "credit_card"
    payment_intent_id: str
    client_secret: Optional[str] = None
    amount: str
    currency: str
    status: Optional[str] = None
    next_action: Optional[dict[str, Any]] = None


PaymentData = Annotated[
    Union[AlipayPaymentData, WechatPaymentData, CardPaymentData],
    Field(discriminator="provider"),
]


# --- API contract ---

class CreatePaymentRequest(BaseModel):
    order_id: str
    payment_method: str
    amount: Decimal = Field(gt=0)
    currency: Optional[str] = None
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None


class CreatePaymentResponse(BaseModel):
    success: bool
    transaction_id: Optional[str] = None
    payment_url: Optional[str] = None
    qr_code_url: Optional[str] = None
    payment_data: Optional[dict[str, Any]] = None
    error: Optional[str] = None


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    order_id: str
    user_id: Optional[str] = None
    amount: Decimal
    currency: str
    provider: str
    status: str
    provider_transaction_id: Optional[str] = None
    payment_url: Optional[str] = None
    qr_code_url: Optional[str] = None
    payment_data: Optional[dict[str, Any]] = None
    expires_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    expired: bool = False


class PaymentStatusResponse(BaseModel):
    success: bool
    status: Optional[str] = None
    transaction: Optional[TransactionOut] = None
    error: Optional[str] = None


class RefundRequest(BaseModel):
    transaction_id: str
    amount: Optional[Decimal] = Field(default=None, gt=0)
    reason: Optional[str] = None


class RefundResponse(BaseModel):
    success: bool
    refund_id: Optional[str] = None
    error: Optional[str] = None


class ConfirmCardPaymentRequest(BaseModel):
    transaction_id: str
    payment_method_id: str


class ConfirmCardPaymentResponse(BaseModel):
    success: bool
    status: Optional[str] = None
    requires_action: bool = False
    payment_data: Optional[dict[str, Any]] = None
    error: Optional[str] = None


class PaymentMethodOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    display_name: str
    icon: Optional[str] = None
    is_active: bool
    sort_order: int
