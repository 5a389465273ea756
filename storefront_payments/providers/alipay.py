"""
Alipay page-pay adapter.

Requests are signed RSA2 (SHA256withRSA) over the canonical parameter
string; async notifications are verified with the Alipay public key.
"""

import json
import logging
import uuid
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qsl, urlencode

from storefront_payments.config import AlipayConfig
from storefront_payments.errors import (
    GatewayResponseError,
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
)
from storefront_payments.providers.signing import canonical_string, rsa_sign, rsa_verify
from storefront_payments.schemas import AlipayPaymentData

logger = logging.getLogger(__name__)

CHINA_TZ = timezone(timedelta(hours=8))
SUCCESS_CODE = "10000"

TRADE_STATUS_MAP = {
    "TRADE_SUCCESS": PaymentStatus.COMPLETED,
    "TRADE_FINISHED": PaymentStatus.COMPLETED,
    "WAIT_BUYER_PAY": PaymentStatus.PENDING,
    "TRADE_CLOSED": PaymentStatus.CANCELLED,
}

ERROR_MESSAGES = {
    "ACQ.TRADE_NOT_EXIST": "Trade does not exist",
    "ACQ.TRADE_HAS_CLOSE": "Trade has already been closed",
    "ACQ.TRADE_STATUS_ERROR": "Trade is not in a refundable state",
    "ACQ.SELLER_BALANCE_NOT_ENOUGH": "Merchant balance is insufficient for the refund",
    "ACQ.REFUND_AMT_NOT_EQUAL_TOTAL": "Refund amount does not match the original request",
    "ACQ.REASON_TRADE_BEEN_FREEZEN": "Trade is frozen",
    "ACQ.SYSTEM_ERROR": "Alipay system error, please retry",
    "isv.invalid-signature": "Alipay rejected the request signature",
    "isv.invalid-app-id": "Alipay app id is invalid",
}


class AlipayProvider(PaymentProvider):
    name = "alipay"

    def __init__(self, config: AlipayConfig, **kwargs):
        super().__init__(**kwargs)
        self.config = config

    # -- signing -----------------------------------------------------------

    def _common_params(self, method: str, biz_content: dict) -> dict:
        if not self.config.app_id or not self.config.private_key:
            raise ProviderConfigurationError("Alipay app id and private key are required")
        return {
            "app_id": self.config.app_id,
            "method": method,
            "charset": "utf-8",
            "sign_type": "RSA2",
            "timestamp": datetime.now(CHINA_TZ).strftime("%Y-%m-%d %H:%M:%S"),
            "version": "1.0",
            "biz_content": json.dumps(biz_content, ensure_ascii=False, separators=(",", ":")),
        }

    def sign(self, params: dict) -> dict:
        signed = dict(params)
        signed["sign"] = rsa_sign(canonical_string(params), self.config.private_key)
        return signed

    def verify_signature(self, params: dict) -> bool:
        signature = params.get("sign")
        if not signature:
            return False
        content = canonical_string(params, exclude=("sign", "sign_type"))
        return rsa_verify(content, signature, self.config.public_key)

    # -- gateway calls -----------------------------------------------------

    def _call(self, method: str, biz_content: dict) -> dict:
        params = self.sign(self._common_params(method, biz_content))
        logger.info(f"alipay {method} for {biz_content.get('out_trade_no')}")
        response = self._post(self.config.gateway_url, data=params)
        try:
            body = response.json()
        except ValueError as e:
            raise GatewayResponseError("Invalid response format from Alipay") from e

        result = body.get(method.replace(".", "_") + "_response") or {}
        if result.get("code") != SUCCESS_CODE:
            code = result.get("sub_code") or result.get("code")
            message = (
                ERROR_MESSAGES.get(code)
                or result.get("sub_msg")
                or result.get("msg")
                or "Alipay request failed"
            )
            raise GatewayResponseError(message, code=code)
        return result

    def create_payment(self, request: PaymentRequest) -> CreatePaymentResult:
        try:
            out_trade_no = request.transaction_id
            total_amount = to_major_string(request.amount)
            subject = f"Order payment - {request.order_id}"
            params = self._common_params("alipay.trade.page.pay", {
                "out_trade_no": out_trade_no,
                "product_code": "FAST_INSTANT_TRADE_PAY",
                "total_amount": total_amount,
                "subject": subject,
                "body": f"Order {request.order_id}",
                "timeout_express": "30m",
            })
            params["notify_url"] = self.config.notify_url
            params["return_url"] = request.return_url or self.config.return_url
            signed = self.sign({k: v for k, v in params.items() if v})

            return CreatePaymentResult(
                success=True,
                transaction_id=out_trade_no,
                payment_url=f"{self.config.gateway_url}?{urlencode(signed)}",
                payment_data=AlipayPaymentData(
                    out_trade_no=out_trade_no,
                    total_amount=total_amount,
                    subject=subject,
                ),
            )
        except Exception as e:
            return CreatePaymentResult(success=False, error=self._failure_message("create payment", e))

    def verify_payment(self, transaction_id, provider_transaction_id=None) -> VerifyPaymentResult:
        try:
            result = self._call("alipay.trade.query", {"out_trade_no": transaction_id})
            status = TRADE_STATUS_MAP.get(result.get("trade_status"), PaymentStatus.FAILED)
            return VerifyPaymentResult(
                success=True,
                status=status,
                provider_transaction_id=result.get("trade_no"),
                paid_at=_parse_alipay_time(result.get("send_pay_date")),
            )
        except Exception as e:
            return VerifyPaymentResult(success=False, error=self._failure_message("verify payment", e))

    def process_refund(self, instruction: RefundInstruction) -> RefundResult:
        try:
            out_request_no = f"REFUND_{uuid.uuid4().hex}"
            self._call("alipay.trade.refund", {
                "out_trade_no": instruction.transaction_id,
                "refund_amount": to_major_string(instruction.amount),
                "refund_reason": instruction.reason or "Customer requested refund",
                "out_request_no": out_request_no,
            })
            return RefundResult(success=True, refund_id=out_request_no)
        except Exception as e:
            return RefundResult(success=False, error=self._failure_message("process refund", e))

    def handle_webhook(self, payload: bytes, signature: str | None = None) -> WebhookResult:
        try:
            params = dict(parse_qsl(payload.decode("utf-8"), keep_blank_values=True))
            if params.get("sign_type") != "RSA2":
                raise SignatureVerificationError("Unsupported sign_type")
            if not self.verify_signature(params):
                raise SignatureVerificationError("Alipay notification signature mismatch")
            if params.get("app_id") != self.config.app_id:
                raise SignatureVerificationError("Alipay notification for another app id")
        except Exception as e:
            self._failure_message("handle webhook", e)
            return WebhookResult(success=False)

        trade_status = params.get("trade_status")
        status = TRADE_STATUS_MAP.get(trade_status)
        if status not in (PaymentStatus.COMPLETED, PaymentStatus.CANCELLED):
            # verified, nothing to reconcile
            return WebhookResult(success=True, event_type=trade_status)

        return WebhookResult(
            success=True,
            transaction_id=params.get("out_trade_no"),
            status=status,
            provider_transaction_id=params.get("trade_no"),
            paid_at=_parse_alipay_time(params.get("gmt_payment")),
            event_type=trade_status,
        )


def _parse_alipay_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d %H:%M:%S").replace(tzinfo=CHINA_TZ)
    except ValueError:
        return None
