"""Payment gateway services package."""

from goalstake.services.payments.interface import (
    GatewayError,
    GatewayTimeoutError,
    PaymentGatewayInterface,
)
from goalstake.services.payments.http_gateway import HttpPaymentGateway

__all__ = [
    "GatewayError",
    "GatewayTimeoutError",
    "HttpPaymentGateway",
    "PaymentGatewayInterface",
]
