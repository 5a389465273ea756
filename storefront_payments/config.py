import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


@dataclass(frozen=True)
class AlipayConfig:
    app_id: str = ""
    private_key: str = ""
    public_key: str = ""
    gateway_url: str = "https://openapi.alipay.com/gateway.do"
    notify_url: str = ""
    return_url: str = ""

    @property
    def is_configured(self) -> bool:
        return bool(self.app_id)

    @classmethod
    def from_env(cls) -> "AlipayConfig":
        return cls(
            app_id=os.getenv("ALIPAY_APP_ID", ""),
            private_key=os.getenv("ALIPAY_PRIVATE_KEY", ""),
            public_key=os.getenv("ALIPAY_PUBLIC_KEY", ""),
            gateway_url=os.getenv("ALIPAY_GATEWAY_URL", cls.gateway_url),
            notify_url=os.getenv("ALIPAY_NOTIFY_URL", ""),
            return_url=os.getenv("ALIPAY_RETURN_URL", ""),
        )


@dataclass(frozen=True)
class WechatConfig:
    app_id: str = ""
    mch_id: str = ""
    api_key: str = ""
    notify_url: str = ""
    api_base: str = "https://api.mch.weixin.qq.com"
    cert_path: str = ""
    key_path: str = ""

    @property
    def is_configured(self) -> bool:
        return bool(self.app_id and self.mch_id)

    @classmethod
    def from_env(cls) -> "WechatConfig":
        return cls(
            app_id=os.getenv("WECHAT_APP_ID", ""),
            mch_id=os.getenv("WECHAT_MCH_ID", ""),
            api_key=os.getenv("WECHAT_API_KEY", ""),
            notify_url=os.getenv("WECHAT_NOTIFY_URL", ""),
            api_base=os.getenv("WECHAT_API_BASE", cls.api_base),
            cert_path=os.getenv("WECHAT_CERT_PATH", ""),
            key_path=os.getenv("WECHAT_KEY_PATH", ""),
        )


@dataclass(frozen=True)
class StripeConfig:
    secret_key: str = ""
    publishable_key: str = ""
    webhook_secret: str = ""

    @property
    def is_configured(self) -> bool:
        return bool(self.secret_key)

    @classmethod
    def from_env(cls) -> "StripeConfig":
        return cls(
            secret_key=os.getenv("STRIPE_SECRET_KEY", ""),
            publishable_key=os.getenv("STRIPE_PUBLISHABLE_KEY", ""),
            webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET", ""),
        )


@dataclass(frozen=True)
class Settings:
    site_url: str = "http://localhost:3000"
    default_currency: str = "CNY"
    payment_expiry_minutes: int = 30
    gateway_timeout: float = 10.0
    jwt_secret: str = ""
    log_level: str = "INFO"
    alipay: AlipayConfig = field(default_factory=AlipayConfig)
    wechat: WechatConfig = field(default_factory=WechatConfig)
    stripe: StripeConfig = field(default_factory=StripeConfig)

    @property
    def default_return_url(self) -> str:
        return f"{self.site_url.rstrip('/')}/payment/success"

    @property
    def default_cancel_url(self) -> str:
        return f"{self.site_url.rstrip('/')}/payment/cancel"


@lru_cache
def get_settings() -> Settings:
    return Settings(
        site_url=os.getenv("SITE_URL", Settings.site_url),
        default_currency=os.getenv("DEFAULT_CURRENCY", Settings.default_currency),
        payment_expiry_minutes=int(os.getenv("PAYMENT_EXPIRY_MINUTES", "30")),
        gateway_timeout=float(os.getenv("GATEWAY_TIMEOUT", "10")),
        jwt_secret=os.getenv("JWT_SECRET", ""),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        alipay=AlipayConfig.from_env(),
        wechat=WechatConfig.from_env(),
        stripe=StripeConfig.from_env(),
    )
