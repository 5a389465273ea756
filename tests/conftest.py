import hashlib
import hmac
import json
import os
import time
from decimal import Decimal

os.environ["DATABASE_URL"] = "sqlite:///./test_temp.db"
os.environ["JWT_SECRET"] = "test-secret"

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from storefront_payments.config import AlipayConfig, Settings, StripeConfig, WechatConfig, get_settings
from storefront_payments.database import Base, get_db
from storefront_payments.main import app as fastapi_app
from storefront_payments.models import Order, PaymentMethod, PaymentStatus, PaymentTransaction, utcnow
from storefront_payments.providers import ProviderRegistry, get_registry
from storefront_payments.seed import seed_payment_methods

JWT_SECRET = "test-secret"
WECHAT_API_KEY = "192006250b4c09247ec02edce69f6a2d"

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_payments.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    seed_payment_methods(db)
    db.close()
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture(scope="session")
def rsa_keys():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    public_pem = key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private_pem, public_pem


@pytest.fixture
def settings(rsa_keys):
    private_pem, public_pem = rsa_keys
    return Settings(
        site_url="https://shop.example.com",
        jwt_secret=JWT_SECRET,
        alipay=AlipayConfig(
            app_id="2021000000000001",
            private_key=private_pem,
            # the same pair stands in for Alipay's key in tests
            public_key=public_pem,
            gateway_url="https://openapi.alipay.test/gateway.do",
            notify_url="https://shop.example.com/payment/webhook/alipay",
        ),
        wechat=WechatConfig(
            app_id="wxd930ea5d5a258f4f",
            mch_id="10000100",
            api_key=WECHAT_API_KEY,
            notify_url="https://shop.example.com/payment/webhook/wechat",
            api_base="https://api.mch.weixin.test",
        ),
        stripe=StripeConfig(
            secret_key="sk_test_123",
            publishable_key="pk_test_123",
            webhook_secret="whsec_test",
        ),
    )


@pytest.fixture
def registry(settings):
    return ProviderRegistry.from_settings(settings)


@pytest.fixture
def client(registry, settings):
    def override_get_db():
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.dependency_overrides[get_registry] = lambda: registry
    fastapi_app.dependency_overrides[get_settings] = lambda: settings
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def auth_header():
    def _header(user_id, role=None):
        claims = {"sub": user_id}
        if role:
            claims["role"] = role
        return {"Authorization": f"Bearer {jwt.encode(claims, JWT_SECRET, algorithm='HS256')}"}
    return _header


@pytest.fixture
def make_order(db):
    def _make(order_id="ORD-1", total="99.99", user_id=None):
        order = Order(id=order_id, user_id=user_id, total_amount=Decimal(total))
        db.add(order)
        db.commit()
        return order
    return _make


@pytest.fixture
def make_transaction(db):
    def _make(order_id="ORD-1", amount="40.00", status=PaymentStatus.COMPLETED, provider="alipay",
              user_id=None, provider_transaction_id=None):
        method = db.query(PaymentMethod).filter_by(name=provider).one()
        tx = PaymentTransaction(
            order_id=order_id,
            user_id=user_id,
            payment_method_id=method.id,
            amount=Decimal(amount),
            currency="CNY",
            provider=provider,
            status=status.value,
            provider_transaction_id=provider_transaction_id,
            payment_data={},
            expires_at=utcnow(),
        )
        db.add(tx)
        db.commit()
        db.refresh(tx)
        return tx
    return _make


@pytest.fixture
def stripe_signature():
    """Sign a raw body the way Stripe signs webhook deliveries."""
    def _sign(payload, secret="whsec_test"):
        timestamp = int(time.time())
        digest = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
        return f"t={timestamp},v1={digest}"
    return _sign


@pytest.fixture
def stripe_event(stripe_signature):
    def _event(event_type, intent, secret="whsec_test"):
        payload = json.dumps({
            "id": "evt_test",
            "object": "event",
            "type": event_type,
            "data": {"object": {"object": "payment_intent", **intent}},
        })
        return payload, stripe_signature(payload, secret)
    return _event
