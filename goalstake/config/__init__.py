"""Configuration package."""

from goalstake.config.settings import (
    GoogleSheetsSettings,
    LedgerSettings,
    PaymentGatewaySettings,
    Settings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "GoogleSheetsSettings",
    "LedgerSettings",
    "PaymentGatewaySettings",
    "Settings",
    "get_settings",
    "validate_all_settings",
]
