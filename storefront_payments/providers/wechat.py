"""
WeChat Pay (NATIVE / QR code) adapter.

Requests and responses are flat XML documents signed with an MD5 digest
over the canonical parameter string plus the merchant API key.
"""

import logging
import ssl
import uuid
from datetime import datetime, timedelta, timezone

import httpx

from storefront_payments.config import WechatConfig
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
    to_minor_units,
)
from storefront_payments.providers.signing import (
    dict_to_xml,
    md5_sign,
    md5_verify,
    nonce_str,
    xml_to_dict,
)
from storefront_payments.schemas import WechatPaymentData

logger = logging.getLogger(__name__)

CHINA_TZ = timezone(timedelta(hours=8))

SUCCESS_ACK = "<xml><return_code><![CDATA[SUCCESS]]></return_code><return_msg><![CDATA[OK]]></return_msg></xml>"
FAIL_ACK = "<xml><return_code><![CDATA[FAIL]]></return_code><return_msg><![CDATA[{}]]></return_msg></xml>"

TRADE_STATE_MAP = {
    "SUCCESS": PaymentStatus.COMPLETED,
    "NOTPAY": PaymentStatus.PENDING,
    "USERPAYING": PaymentStatus.PROCESSING,
    "CLOSED": PaymentStatus.CANCELLED,
    "REVOKED": PaymentStatus.CANCELLED,
    "PAYERROR": PaymentStatus.FAILED,
    "REFUND": PaymentStatus.REFUNDED,
}

ERROR_MESSAGES = {
    "ORDERPAID": "Order has already been paid",
    "ORDERCLOSED": "Order has been closed",
    "ORDERNOTEXIST": "Order does not exist at WeChat Pay",
    "OUT_TRADE_NO_USED": "Merchant order number already used",
    "SIGNERROR": "WeChat Pay rejected the request signature",
    "NOTENOUGH": "Insufficient balance",
    "NOAUTH": "Merchant is not authorised for this API",
    "INVALID_REQUEST": "Invalid request parameters",
    "REFUNDNOTEXIST": "Refund does not exist",
    "USER_ACCOUNT_ABNORMAL": "Payer account is abnormal, refund not possible",
    "SYSTEMERROR": "WeChat Pay system error, please retry",
}


class WechatPayProvider(PaymentProvider):
    name = "wechat"

    def __init__(self, config: WechatConfig, **kwargs):
        super().__init__(**kwargs)
        self.config = config
        self._cert_client: httpx.Client | None = None

    def _url(self, path: str) -> str:
        return f"{self.config.api_base.rstrip('/')}{path}"

    def _signed(self, params: dict) -> dict:
        if not self.config.app_id or not self.config.mch_id:
            raise ProviderConfigurationError("WeChat Pay app id and merchant id are required")
        params = {
            "appid": self.config.app_id,
            "mch_id": self.config.mch_id,
            "nonce_str": nonce_str(),
            **params,
        }
        params["sign"] = md5_sign(params, self.config.api_key)
        return params

    def _refund_client(self) -> httpx.Client:
        # the refund API requires the merchant client certificate
        if not (self.config.cert_path and self.config.key_path):
            return self.http
        if self._cert_client is None:
            context = ssl.create_default_context()
            context.load_cert_chain(self.config.cert_path, self.config.key_path)
            self._cert_client = httpx.Client(timeout=self.timeout, verify=context)
        return self._cert_client

    def _call(self, path: str, params: dict, client: httpx.Client | None = None) -> dict:
        body = dict_to_xml(self._signed(params))
        logger.info(f"wechat {path} for {params.get('out_trade_no')}")
        response = self._post(
            self._url(path),
            content=body.encode("utf-8"),
            headers={"Content-Type": "application/xml"},
            client=client,
        )
        try:
            result = xml_to_dict(response.text)
        except Exception as e:
            raise GatewayResponseError("Invalid response format from WeChat Pay") from e

        if result.get("return_code") != "SUCCESS":
            raise GatewayResponseError(result.get("return_msg") or "WeChat Pay request failed")
        if not md5_verify(result, self.config.api_key):
            raise SignatureVerificationError("WeChat Pay response signature mismatch")
        if result.get("result_code") != "SUCCESS":
            code = result.get("err_code")
            message = ERROR_MESSAGES.get(code) or result.get("err_code_des") or "WeChat Pay request failed"
            raise GatewayResponseError(message, code=code)
        return result

    def create_payment(self, request: PaymentRequest) -> CreatePaymentResult:
        try:
            out_trade_no = request.transaction_id
            result = self._call("/pay/unifiedorder", {
                "body": f"Order payment - {request.order_id}",
                "out_trade_no": out_trade_no,
                "total_fee": to_minor_units(request.amount),
                "fee_type": request.currency.upper(),
                "spbill_create_ip": request.client_ip,
                "notify_url": self.config.notify_url,
                "trade_type": "NATIVE",
            })
            return CreatePaymentResult(
                success=True,
                transaction_id=out_trade_no,
                qr_code_url=result.get("code_url"),
                payment_data=WechatPaymentData(
                    out_trade_no=out_trade_no,
                    prepay_id=result.get("prepay_id"),
                    code_url=result.get("code_url"),
                ),
            )
        except Exception as e:
            return CreatePaymentResult(success=False, error=self._failure_message("create payment", e))

    def verify_payment(self, transaction_id, provider_transaction_id=None) -> VerifyPaymentResult:
        try:
            result = self._call("/pay/orderquery", {"out_trade_no": transaction_id})
            status = TRADE_STATE_MAP.get(result.get("trade_state"), PaymentStatus.PENDING)
            return VerifyPaymentResult(
                success=True,
                status=status,
                provider_transaction_id=result.get("transaction_id") or None,
                paid_at=_parse_wechat_time(result.get("time_end")),
            )
        except Exception as e:
            return VerifyPaymentResult(success=False, error=self._failure_message("verify payment", e))

    def process_refund(self, instruction: RefundInstruction) -> RefundResult:
        try:
            out_refund_no = f"REFUND_{uuid.uuid4().hex}"
            result = self._call(
                "/secapi/pay/refund",
                {
                    "out_trade_no": instruction.transaction_id,
                    "out_refund_no": out_refund_no,
                    "total_fee": to_minor_units(instruction.total_amount),
                    "refund_fee": to_minor_units(instruction.amount),
                    "refund_desc": instruction.reason or "Customer requested refund",
                },
                client=self._refund_client(),
            )
            return RefundResult(success=True, refund_id=result.get("refund_id") or out_refund_no)
        except Exception as e:
            return RefundResult(success=False, error=self._failure_message("process refund", e))

    def handle_webhook(self, payload: bytes, signature: str | None = None) -> WebhookResult:
        try:
            data = xml_to_dict(payload)
            if not md5_verify(data, self.config.api_key):
                raise SignatureVerificationError("WeChat Pay notification signature mismatch")
        except Exception as e:
            self._failure_message("handle webhook", e)
            return WebhookResult(success=False)

        if data.get("return_code") != "SUCCESS":
            return WebhookResult(success=True, event_type="return_fail")

        result_code = data.get("result_code")
        status = PaymentStatus.COMPLETED if result_code == "SUCCESS" else PaymentStatus.FAILED
        return WebhookResult(
            success=True,
            transaction_id=data.get("out_trade_no"),
            status=status,
            provider_transaction_id=data.get("transaction_id") or None,
            paid_at=_parse_wechat_time(data.get("time_end")),
            event_type=f"pay.{(result_code or 'unknown').lower()}",
        )


def _parse_wechat_time(value: str | None) -> datetime | None:
    # yyyyMMddHHmmss, Beijing time
    if not value:
        return None
    try:
        return datetime.strptime(value, "%Y%m%d%H%M%S").replace(tzinfo=CHINA_TZ)
    except ValueError:
        return None
