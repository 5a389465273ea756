"""Error taxonomy for gateway calls.

Adapters raise these internally and convert them into failure results at
their boundary; the category only decides how the failure is logged.
"""


class PaymentError(Exception):
    category = "payment"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class GatewayTransportError(PaymentError):
    """Network fault, timeout or 5xx from the gateway."""

    category = "transport"


class GatewayResponseError(PaymentError):
    """The gateway answered and refused the request."""

    category = "gateway"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code


class ProviderConfigurationError(PaymentError):
    """Missing or unusable local credentials."""

    category = "configuration"


class SignatureVerificationError(PaymentError):
    category = "integrity"
