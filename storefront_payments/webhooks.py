import logging

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from storefront_payments.providers import ProviderName, ProviderRegistry, get_registry
from storefront_payments.providers.wechat import FAIL_ACK, SUCCESS_ACK
from storefront_payments.service import PaymentService, get_system_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payment/webhook", tags=["webhooks"])


def _ack(provider: ProviderName) -> Response:
    if provider is ProviderName.ALIPAY:
        return PlainTextResponse("success")
    if provider is ProviderName.WECHAT:
        return Response(content=SUCCESS_ACK, media_type="application/xml")
    return JSONResponse({"received": True})


def _reject(provider: ProviderName, message: str, status_code: int = 400) -> Response:
    if provider is ProviderName.ALIPAY:
        return PlainTextResponse("fail", status_code=status_code)
    if provider is ProviderName.WECHAT:
        return Response(
            content=FAIL_ACK.format(message), media_type="application/xml", status_code=status_code
        )
    return JSONResponse({"detail": message}, status_code=status_code)


async def raw_body(request: Request) -> bytes:
    return await request.body()


@router.post("/{provider}")
def receive_webhook(
    provider: str,
    payload: bytes = Depends(raw_body),
    stripe_signature: str | None = Header(None),
    registry: ProviderRegistry = Depends(get_registry),
    service: PaymentService = Depends(get_system_service),
):
    name = ProviderName.parse(provider)
    adapter = registry.get(provider)
    if name is None or adapter is None:
        return JSONResponse({"detail": "Unknown payment provider"}, status_code=400)

    webhook = service.ledger.record_webhook(name.value, payload.decode("utf-8", errors="replace"))

    try:
        result = adapter.handle_webhook(payload, stripe_signature)
        if not result.success:
            logger.warning(f"Rejected {name.value} webhook {webhook.id}: verification failed")
            service.ledger.finish_webhook(
                webhook, processed=False, error_message="Signature verification failed"
            )
            return _reject(name, "Invalid signature")

        transaction_id = service.apply_webhook_result(name.value, result)
        service.ledger.finish_webhook(
            webhook,
            processed=True,
            event_type=result.event_type,
            transaction_id=transaction_id or result.transaction_id,
        )
    except Exception as e:
        logger.exception(f"Error processing {name.value} webhook {webhook.id}")
        service.db.rollback()
        service.ledger.finish_webhook(webhook, processed=False, error_message=str(e))
        return _reject(name, "Internal error", status_code=500)

    return _ack(name)
