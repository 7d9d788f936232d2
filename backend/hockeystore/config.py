"""
Hockey Store Configuration Module

Loads environment variables for the checkout backend and the M-Pesa (Daraja)
STK push integration.
"""
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal, Optional


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Notes:
    - Demo mode swaps the Daraja client for the in-process mock gateway
    - Reservation timeout must comfortably exceed the gateway timeout, or the
      sweep could release stock for a checkout that is still talking to M-Pesa
    """

    # Demo Configuration
    demo_mode: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Database
    database_url: str = "sqlite+aiosqlite:///./hockeystore.db"

    # Bearer tokens (issued elsewhere, verified here)
    jwt_secret: str = "jwt_secret_demo_only_change_me"
    jwt_algorithm: str = "HS256"

    # M-Pesa Daraja
    mpesa_env: Literal["sandbox", "production"] = "sandbox"
    mpesa_consumer_key: str = ""
    mpesa_consumer_secret: str = ""
    mpesa_business_shortcode: str = "174379"
    mpesa_passkey: str = ""
    mpesa_timeout_seconds: float = 30.0
    mpesa_utc_offset_hours: int = 3  # Daraja timestamps are East Africa Time
    base_url: str = "http://localhost:8000"

    # Reservation sweep
    reservation_timeout_seconds: int = 120
    pending_payment_timeout_seconds: Optional[int] = 3600
    sweep_interval_seconds: int = 30

    # Client-side status polling
    poll_interval_seconds: float = 3.0
    poll_max_attempts: int = 15

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    @model_validator(mode="after")
    def validate_timeouts(self):
        """Reservations must outlive a full authorize + initiate round trip."""
        if self.reservation_timeout_seconds <= self.mpesa_timeout_seconds * 2:
            raise ValueError(
                f"reservation_timeout_seconds ({self.reservation_timeout_seconds}) must exceed "
                f"twice mpesa_timeout_seconds ({self.mpesa_timeout_seconds})"
            )
        return self

    @property
    def mpesa_base_url(self) -> str:
        if self.mpesa_env == "sandbox":
            return "https://sandbox.safaricom.co.ke"
        return "https://api.safaricom.co.ke"

    @property
    def callback_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/api/payments/callback"


# Global settings instance
settings = Settings()
