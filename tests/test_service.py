from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from storefront_payments.ledger import LedgerScope, TransactionLedger
from storefront_payments.models import (
    Order,
    PaymentRefund,
    PaymentStatus,
    PaymentTransaction,
    RefundStatus,
)
from storefront_payments.providers import ProviderRegistry
from storefront_payments.providers.base import (
    CreatePaymentResult,
    RefundResult,
    VerifyPaymentResult,
    WebhookResult,
)
from storefront_payments.schemas import CreatePaymentRequest, RefundRequest
from storefront_payments.service import PaymentService


@pytest.fixture
def service_for(db, registry, settings):
    def _service(scope):
        return PaymentService(db, scope, registry, settings)
    return _service


@pytest.fixture
def guest_service(service_for):
    return service_for(LedgerScope.guest())


def payment(order_id="ORD-1", method="alipay", amount="99.99", **kw):
    return CreatePaymentRequest(order_id=order_id, payment_method=method, amount=Decimal(amount), **kw)


def test_create_alipay_payment_for_guest_order(guest_service, make_order, db):
    make_order("ORD-1", "99.99")

    response = guest_service.create_payment_transaction(payment())

    assert response.success
    assert response.payment_url.startswith("https://openapi.alipay.test/gateway.do?")
    tx = db.get(PaymentTransaction, response.transaction_id)
    assert tx.status == "pending"
    assert tx.user_id is None
    assert tx.currency == "CNY"
    assert tx.provider_transaction_id == tx.id
    assert tx.payment_data["provider"] == "alipay"
    assert not tx.expired


def test_default_return_url_comes_from_site_url(guest_service, make_order, registry, mocker):
    make_order("ORD-1", "99.99")
    create = mocker.spy(registry.get("alipay"), "create_payment")

    guest_service.create_payment_transaction(payment())

    request = create.call_args.args[0]
    assert request.return_url == "https://shop.example.com/payment/success"
    assert request.cancel_url == "https://shop.example.com/payment/cancel"


def test_amount_mismatch_creates_nothing(guest_service, make_order, db):
    make_order("ORD-1", "99.99")

    response = guest_service.create_payment_transaction(payment(amount="50.00"))

    assert not response.success
    assert response.error == "Amount mismatch"
    assert db.query(PaymentTransaction).count() == 0


def test_amount_within_tolerance_is_accepted(guest_service, make_order):
    make_order("ORD-1", "99.99")
    assert guest_service.create_payment_transaction(payment(amount="100.00")).success


def test_inactive_or_unknown_method_is_rejected(guest_service, make_order, db):
    make_order("ORD-1", "99.99")

    assert guest_service.create_payment_transaction(payment(method="paypal")).error == "Invalid payment method"
    assert guest_service.create_payment_transaction(payment(method="bitcoin")).error == "Invalid payment method"
    assert db.query(PaymentTransaction).count() == 0


def test_unconfigured_provider_is_not_available(db, settings, make_order):
    make_order("ORD-1", "99.99")
    service = PaymentService(db, LedgerScope.guest(), ProviderRegistry({}), settings)

    response = service.create_payment_transaction(payment(method="wechat"))

    assert not response.success
    assert response.error == "Payment provider not available"
    assert db.query(PaymentTransaction).count() == 0


def test_order_ownership_is_enforced(service_for, guest_service, make_order):
    make_order("ORD-USER", "10.00", user_id="user-1")
    make_order("ORD-GUEST", "10.00")

    denied = "Order not found or access denied"
    assert guest_service.create_payment_transaction(payment("ORD-USER", amount="10.00")).error == denied
    other_user = service_for(LedgerScope.user("user-2"))
    assert other_user.create_payment_transaction(payment("ORD-USER", amount="10.00")).error == denied
    assert other_user.create_payment_transaction(payment("ORD-GUEST", amount="10.00")).error == denied

    owner = service_for(LedgerScope.user("user-1"))
    assert owner.create_payment_transaction(payment("ORD-USER", amount="10.00")).success


def test_admin_creates_transaction_owned_by_order_owner(service_for, make_order, db):
    make_order("ORD-USER", "10.00", user_id="user-1")
    admin = service_for(LedgerScope(user_id="admin-1", elevated=True))

    response = admin.create_payment_transaction(payment("ORD-USER", amount="10.00"))

    assert db.get(PaymentTransaction, response.transaction_id).user_id == "user-1"


def test_adapter_failure_marks_transaction_failed(guest_service, make_order, registry, mocker, db):
    make_order("ORD-1", "99.99")
    mocker.patch.object(
        registry.get("wechat"), "create_payment",
        return_value=CreatePaymentResult(success=False, error="Order has already been paid"),
    )

    response = guest_service.create_payment_transaction(payment(method="wechat"))

    assert not response.success
    assert response.error == "Order has already been paid"
    assert db.get(PaymentTransaction, response.transaction_id).status == "failed"


def test_second_open_transaction_logs_warning(guest_service, make_order, caplog):
    make_order("ORD-1", "99.99")
    guest_service.create_payment_transaction(payment())

    with caplog.at_level("WARNING", logger="storefront_payments.ledger"):
        assert guest_service.create_payment_transaction(payment()).success

    assert "already has 1 open payment transaction" in caplog.text


def test_guest_transactions_are_invisible_to_users(service_for, guest_service, make_transaction):
    guest_tx = make_transaction(status=PaymentStatus.PENDING)
    user_tx = make_transaction(status=PaymentStatus.PENDING, user_id="user-1")
    user = service_for(LedgerScope.user("user-1"))

    assert user.check_payment_status(guest_tx.id).error == "Transaction not found"
    assert guest_service.check_payment_status(user_tx.id).error == "Transaction not found"
    assert [t.id for t in user.list_transactions()] == [user_tx.id]
    assert [t.id for t in guest_service.list_transactions()] == [guest_tx.id]


def test_user_scope_cannot_move_foreign_transaction(db, make_transaction):
    tx = make_transaction(status=PaymentStatus.PENDING)
    ledger = TransactionLedger(db, LedgerScope.user("user-1"))

    assert not ledger.transition(tx, PaymentStatus.CANCELLED)
    db.refresh(tx)
    assert tx.status == "pending"


def test_completed_status_skips_gateway(guest_service, make_transaction, registry, mocker):
    tx = make_transaction(status=PaymentStatus.COMPLETED)
    verify = mocker.patch.object(registry.get("alipay"), "verify_payment")

    response = guest_service.check_payment_status(tx.id)

    assert response.success
    assert response.status == "completed"
    verify.assert_not_called()


def test_status_check_completes_and_marks_order_paid(
    guest_service, make_order, make_transaction, registry, mocker, db
):
    make_order("ORD-1", "40.00")
    tx = make_transaction(status=PaymentStatus.PENDING)
    mocker.patch.object(
        registry.get("alipay"), "verify_payment",
        return_value=VerifyPaymentResult(success=True, status=PaymentStatus.COMPLETED, provider_transaction_id="2024"),
    )

    response = guest_service.check_payment_status(tx.id)

    assert response.status == "completed"
    assert response.transaction.paid_at is not None
    assert response.transaction.provider_transaction_id == "2024"
    db.expire_all()
    assert db.get(Order, "ORD-1").payment_status == "paid"


def test_status_check_gateway_failure_keeps_state(guest_service, make_transaction, registry, mocker):
    tx = make_transaction(status=PaymentStatus.PENDING)
    mocker.patch.object(
        registry.get("alipay"), "verify_payment",
        return_value=VerifyPaymentResult(success=False, error="Gateway timed out"),
    )

    response = guest_service.check_payment_status(tx.id)

    assert not response.success
    assert response.status == "pending"
    assert response.error == "Gateway timed out"


def test_order_update_failure_rolls_back_completion(
    guest_service, make_order, make_transaction, registry, mocker, db
):
    make_order("ORD-1", "40.00")
    tx = make_transaction(status=PaymentStatus.PENDING)
    mocker.patch.object(
        registry.get("alipay"), "verify_payment",
        return_value=VerifyPaymentResult(success=True, status=PaymentStatus.COMPLETED),
    )
    mark_order_paid = TransactionLedger._mark_order_paid
    calls = []

    def locked_once(ledger, order_id):
        calls.append(order_id)
        if len(calls) == 1:
            raise OperationalError("UPDATE orders", {}, Exception("database is locked"))
        return mark_order_paid(ledger, order_id)

    mocker.patch.object(TransactionLedger, "_mark_order_paid", locked_once)

    with pytest.raises(OperationalError):
        guest_service.check_payment_status(tx.id)
    db.refresh(tx)
    assert tx.status == "pending"
    assert db.get(Order, "ORD-1").payment_status == "unpaid"

    # the next poll gets another chance at both writes
    assert guest_service.check_payment_status(tx.id).status == "completed"
    db.expire_all()
    assert db.get(Order, "ORD-1").payment_status == "paid"


def test_terminal_state_is_never_regressed(db, make_transaction):
    ledger = TransactionLedger(db, LedgerScope.system())
    tx = make_transaction(status=PaymentStatus.FAILED)

    assert not ledger.transition(tx, PaymentStatus.COMPLETED)
    assert tx.status == "failed"

    done = make_transaction(status=PaymentStatus.COMPLETED)
    assert not ledger.transition(done, PaymentStatus.COMPLETED)
    assert not ledger.transition(done, PaymentStatus.PENDING)
    assert done.status == "completed"


def test_refund_requires_completed_transaction(guest_service, make_transaction, db):
    tx = make_transaction(status=PaymentStatus.PENDING)

    response = guest_service.process_refund(RefundRequest(transaction_id=tx.id))

    assert not response.success
    assert response.error == "Can only refund completed transactions"
    assert db.query(PaymentRefund).count() == 0


def test_full_refund_marks_transaction_refunded(guest_service, make_transaction, registry, mocker, db):
    tx = make_transaction(amount="40.00")
    adapter_refund = mocker.patch.object(
        registry.get("alipay"), "process_refund",
        return_value=RefundResult(success=True, refund_id="REFUND_abc"),
    )

    response = guest_service.process_refund(RefundRequest(transaction_id=tx.id, amount=Decimal("40.00")))

    assert response.success
    refund = db.get(PaymentRefund, response.refund_id)
    assert refund.status == RefundStatus.COMPLETED.value
    assert refund.provider_refund_id == "REFUND_abc"
    db.refresh(tx)
    assert tx.status == "refunded"
    instruction = adapter_refund.call_args.args[0]
    assert instruction.total_amount == Decimal("40.00")


def test_partial_refunds_accumulate(guest_service, make_transaction, registry, mocker, db):
    tx = make_transaction(amount="40.00")
    mocker.patch.object(
        registry.get("alipay"), "process_refund",
        return_value=RefundResult(success=True, refund_id="REFUND_abc"),
    )

    assert guest_service.process_refund(RefundRequest(transaction_id=tx.id, amount=Decimal("10.00"))).success
    db.refresh(tx)
    assert tx.status == "completed"

    too_much = guest_service.process_refund(RefundRequest(transaction_id=tx.id, amount=Decimal("35.00")))
    assert too_much.error == "Refund amount exceeds remaining refundable amount"

    # no amount refunds whatever remains
    assert guest_service.process_refund(RefundRequest(transaction_id=tx.id)).success
    db.refresh(tx)
    assert tx.status == "refunded"
    assert db.query(PaymentRefund).filter_by(status="completed").count() == 2


def test_failed_refund_is_recorded(guest_service, make_transaction, registry, mocker, db):
    tx = make_transaction(amount="40.00")
    mocker.patch.object(
        registry.get("alipay"), "process_refund",
        return_value=RefundResult(success=False, error="Merchant balance is insufficient for the refund"),
    )

    response = guest_service.process_refund(RefundRequest(transaction_id=tx.id))

    assert not response.success
    assert db.query(PaymentRefund).one().status == "failed"
    db.refresh(tx)
    assert tx.status == "completed"


def test_pending_refund_counts_against_remainder(guest_service, make_transaction, registry, mocker, db):
    tx = make_transaction(amount="40.00")
    db.add(PaymentRefund(
        transaction_id=tx.id, order_id=tx.order_id, amount=Decimal("30.00"),
        status=RefundStatus.PENDING.value,
    ))
    db.commit()
    adapter_refund = mocker.patch.object(registry.get("alipay"), "process_refund")

    response = guest_service.process_refund(RefundRequest(transaction_id=tx.id, amount=Decimal("20.00")))

    assert response.error == "Refund amount exceeds remaining refundable amount"
    adapter_refund.assert_not_called()
    assert db.query(PaymentRefund).count() == 1


def test_confirm_card_payment(guest_service, make_order, make_transaction, mocker, db):
    make_order("ORD-1", "40.00")
    tx = make_transaction(status=PaymentStatus.PENDING, provider="credit_card", provider_transaction_id="pi_123")
    intent = mocker.Mock()
    intent.id = "pi_123"
    intent.client_secret = "pi_123_secret"
    intent.status = "succeeded"
    intent.amount = 4000
    intent.currency = "cny"
    intent.next_action = None
    mocker.patch("stripe.PaymentIntent.confirm", return_value=intent)

    response = guest_service.confirm_card_payment(tx.id, "pm_card_visa")

    assert response.success
    assert response.status == "completed"
    assert not response.requires_action
    db.expire_all()
    assert db.get(Order, "ORD-1").payment_status == "paid"


def test_confirm_rejects_non_card_transactions(guest_service, make_transaction):
    tx = make_transaction(status=PaymentStatus.PENDING, provider="alipay")
    assert guest_service.confirm_card_payment(tx.id, "pm_card_visa").error == "Transaction is not a card payment"


def test_apply_webhook_result(service_for, make_transaction, db):
    system = service_for(LedgerScope.system())
    tx = make_transaction(status=PaymentStatus.PENDING, user_id="user-1")

    applied = system.apply_webhook_result(
        "alipay", WebhookResult(success=True, transaction_id=tx.id, status=PaymentStatus.COMPLETED)
    )

    assert applied == tx.id
    db.refresh(tx)
    assert tx.status == "completed"

    assert system.apply_webhook_result(
        "alipay", WebhookResult(success=True, transaction_id="missing", status=PaymentStatus.COMPLETED)
    ) is None
    assert system.apply_webhook_result(
        "wechat", WebhookResult(success=True, transaction_id=tx.id, status=PaymentStatus.FAILED)
    ) is None


def test_payment_methods_are_sorted_and_active(guest_service):
    names = [m.name for m in guest_service.get_payment_methods()]
    assert names == ["alipay", "wechat", "credit_card"]
