from fastapi import APIRouter, Depends, Request

from storefront_payments.auth import require_admin, require_user
from storefront_payments.config import Settings, get_settings
from storefront_payments.schemas import (
    ConfirmCardPaymentRequest,
    ConfirmCardPaymentResponse,
    CreatePaymentRequest,
    CreatePaymentResponse,
    PaymentMethodOut,
    PaymentStatusResponse,
    RefundRequest,
    RefundResponse,
    TransactionOut,
)
from storefront_payments.service import PaymentService, get_payment_service

router = APIRouter(prefix="/payment", tags=["payment"])
admin_router = APIRouter(prefix="/admin/payment", tags=["admin"])


@router.get("/methods", response_model=list[PaymentMethodOut])
def list_payment_methods(service: PaymentService = Depends(get_payment_service)):
    return service.get_payment_methods()


@router.post("/create", response_model=CreatePaymentResponse)
def create_payment(
    body: CreatePaymentRequest,
    request: Request,
    service: PaymentService = Depends(get_payment_service),
):
    client_ip = request.client.host if request.client else "127.0.0.1"
    return service.create_payment_transaction(body, client_ip=client_ip)


@router.get("/status/{transaction_id}", response_model=PaymentStatusResponse)
def payment_status(transaction_id: str, service: PaymentService = Depends(get_payment_service)):
    return service.check_payment_status(transaction_id)


@router.post("/refund", response_model=RefundResponse, dependencies=[Depends(require_user)])
def refund(body: RefundRequest, service: PaymentService = Depends(get_payment_service)):
    return service.process_refund(body)


@router.get(
    "/transactions", response_model=list[TransactionOut], dependencies=[Depends(require_user)]
)
def my_transactions(service: PaymentService = Depends(get_payment_service)):
    return service.list_transactions()


@router.post("/stripe/confirm", response_model=ConfirmCardPaymentResponse)
def confirm_card_payment(
    body: ConfirmCardPaymentRequest, service: PaymentService = Depends(get_payment_service)
):
    return service.confirm_card_payment(body.transaction_id, body.payment_method_id)


@router.get("/stripe/config")
def stripe_config(settings: Settings = Depends(get_settings)):
    return {"publishable_key": settings.stripe.publishable_key}


@admin_router.get(
    "/transactions", response_model=list[TransactionOut], dependencies=[Depends(require_admin)]
)
def all_transactions(service: PaymentService = Depends(get_payment_service)):
    return service.list_transactions()
