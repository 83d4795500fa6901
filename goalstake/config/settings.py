"""
Configuration Management for Goalstake

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
This makes it easy to see what external dependencies exist and
ensures all required configuration is validated at startup.
"""

from functools import lru_cache
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LedgerSettings(BaseSettings):
    """Completion ledger and reconciliation behaviour."""
    
    model_config = SettingsConfigDict(
        env_prefix="GOALSTAKE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )
    
    reference_timezone: str = Field(
        default="UTC",
        description="Time zone used to turn instants into calendar days"
    )
    backdating_window_days: int = Field(
        default=1,
        ge=0,
        le=31,
        description="How many days before today a completion may still be attested"
    )
    auto_refund_verified: bool = Field(
        default=True,
        description="Request the refund as soon as a completion becomes verified"
    )
    default_currency: str = Field(
        default="USD",
        min_length=3,
        max_length=3,
        description="Currency used when a goal does not specify one"
    )
    snapshot_poll_seconds: float = Field(
        default=15.0,
        gt=0,
        description="Polling interval for stores without push notifications"
    )
    resubscribe_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Wait before resubscribing after the store subscription fails"
    )
    
    @field_validator('reference_timezone')
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Reject unknown IANA zone names at startup."""
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown time zone: {v}")
        return v
    
    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.reference_timezone)


class PaymentGatewaySettings(BaseSettings):
    """Payment server configuration (charges and refunds)."""
    
    model_config = SettingsConfigDict(
        env_prefix="PAYMENT_GATEWAY_",
        extra="ignore"
    )
    
    base_url: str = Field(
        default="http://localhost:4242",
        description="Base URL of the payment server"
    )
    environment: str = Field(
        default="development",
        pattern="^(development|production)$",
        description="Sent to the server as X-Environment"
    )
    timeout_seconds: float = Field(
        default=15.0,
        gt=0,
        le=120,
        description="Upper bound for a single gateway call"
    )


class GoogleSheetsSettings(BaseSettings):
    """Google Sheets storage configuration."""
    
    model_config = SettingsConfigDict(
        env_prefix="GOOGLE_SHEETS_",
        extra="ignore"
    )
    
    credentials_path: str = Field(
        ...,
        description="Path to Google service account credentials JSON"
    )
    spreadsheet_id: str = Field(
        ...,
        description="ID of the Google Sheets spreadsheet to use"
    )
    
    # Sheet names within the spreadsheet
    goals_sheet_name: str = Field(
        default="Goals",
        description="Name of the sheet holding one goal document per row"
    )
    audit_sheet_name: str = Field(
        default="AuditLog",
        description="Name of the sheet for audit logs"
    )
    
    @field_validator('credentials_path')
    @classmethod
    def validate_credentials_path(cls, v: str) -> str:
        """Warn if credentials file doesn't exist (but don't fail - might be mounted later)."""
        if not Path(v).exists():
            import warnings
            warnings.warn(
                f"Google credentials file not found at {v}. "
                "Make sure it exists before running the application."
            )
        return v


class Settings(BaseSettings):
    """
    Root settings container.
    
    Aggregates all sub-settings for easy access.
    """
    
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )
    
    # Note: These are loaded lazily to allow partial configuration
    
    @property
    def ledger(self) -> LedgerSettings:
        return LedgerSettings()
    
    @property
    def payment_gateway(self) -> PaymentGatewaySettings:
        return PaymentGatewaySettings()
    
    @property
    def google_sheets(self) -> GoogleSheetsSettings:
        return GoogleSheetsSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).
    
    Uses LRU cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.
    
    Returns a dict of {setting_name: is_valid}.
    Useful for startup checks.
    """
    results = {}
    settings = get_settings()
    
    for name in ("ledger", "payment_gateway", "google_sheets"):
        try:
            getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)
    
    return results
