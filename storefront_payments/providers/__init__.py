import logging
from enum import Enum
from functools import lru_cache

from storefront_payments.config import Settings, get_settings
from storefront_payments.providers.alipay import AlipayProvider
from storefront_payments.providers.base import PaymentProvider
from storefront_payments.providers.stripe_service import StripeCardProvider
from storefront_payments.providers.wechat import WechatPayProvider

logger = logging.getLogger(__name__)


class ProviderName(str, Enum):
    ALIPAY = "alipay"
    WECHAT = "wechat"
    CREDIT_CARD = "credit_card"

    @classmethod
    def parse(cls, value: str) -> "ProviderName | None":
        try:
            return cls(value)
        except ValueError:
            return None


class ProviderRegistry:
    """Configured adapters keyed by provider name."""

    def __init__(self, providers: dict[ProviderName, PaymentProvider] | None = None):
        self._providers = dict(providers or {})

    def get(self, name: str) -> PaymentProvider | None:
        key = ProviderName.parse(name)
        if key is None:
            return None
        return self._providers.get(key)

    def names(self) -> list[str]:
        return [key.value for key in self._providers]

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProviderRegistry":
        configs = {
            ProviderName.ALIPAY: (AlipayProvider, settings.alipay),
            ProviderName.WECHAT: (WechatPayProvider, settings.wechat),
            ProviderName.CREDIT_CARD: (StripeCardProvider, settings.stripe),
        }
        providers = {}
        for key, (provider_cls, config) in configs.items():
            if config.is_configured:
                providers[key] = provider_cls(config, timeout=settings.gateway_timeout)
            else:
                logger.info(f"Payment provider {key.value} is not configured; skipping")
        return cls(providers)


@lru_cache
def get_registry() -> ProviderRegistry:
    return ProviderRegistry.from_settings(get_settings())


__all__ = [
    "AlipayProvider",
    "PaymentProvider",
    "ProviderName",
    "ProviderRegistry",
    "StripeCardProvider",
    "WechatPayProvider",
    "get_registry",
]
