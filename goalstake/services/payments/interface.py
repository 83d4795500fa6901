"""
Abstract Payment Gateway Interface

The ledger never moves money itself. It asks a gateway to:
1. Charge the user when a goal is funded
2. Refund one success worth of money when a completion is verified

Amounts cross this boundary as integer minor units (cents, pence, ...).
"""

from abc import ABC, abstractmethod

from goalstake.models.goal import ChargeResult


class PaymentGatewayInterface(ABC):
    """Any payment backend must implement these methods."""

    @abstractmethod
    async def refund(self, payment_reference: str, amount_minor_units: int) -> None:
        """
        Refund part of an earlier charge.

        Raises:
            GatewayError: The refund was not confirmed
        """
        pass

    @abstractmethod
    async def create_charge(self, amount_minor_units: int, currency: str) -> ChargeResult:
        """
        Create a charge the client then confirms with `client_secret`.

        Raises:
            GatewayError: The charge could not be created
        """
        pass


class GatewayError(Exception):
    """Base exception for payment gateway calls."""
    pass


class GatewayTimeoutError(GatewayError):
    """The gateway did not answer within the configured bound."""
    pass
