"""
Configuration module for the coaching booking engine.
Loads environment variables and provides typed configuration.
"""

from decimal import Decimal
from pathlib import Path
from typing import Optional, Set

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env file
env_path = Path(__file__).parent / ".env"
load_dotenv(dotenv_path=env_path)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Supabase
    supabase_url: str = ""
    supabase_key: str = ""

    # Stripe
    stripe_secret_key: str = ""
    stripe_publishable_key: str = ""
    stripe_webhook_secret: Optional[str] = (
        None  # Required in production for webhook verification
    )
    currency: str = "eur"

    # Public URL used to build checkout return URLs
    app_base_url: str = "http://localhost:3000"

    # Booking rules
    default_session_price: Decimal = Decimal("35.00")
    first_session_code: str = "PRIMERA25"
    slot_window_days: int = 30
    min_withdrawal_amount: Decimal = Decimal("50")

    # Live session room
    session_duration_minutes: int = 60
    session_early_entry_seconds: int = 300
    room_name_prefix: str = "coaching-secure-session"

    # Priority actors (comma-separated actor ids or emails)
    # Exempt from the cancellation penalty and the waiting-room gate
    priority_actors: str = ""

    # Reservation lease for unpaid appointments
    pending_payment_lease_minutes: int = 30
    expiry_sweep_interval_minutes: int = 5

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    environment: str = "development"  # development, staging, production

    # Redis Configuration (for APScheduler cluster support)
    redis_url: Optional[str] = (
        None  # Redis connection URL (e.g., redis://localhost:6379/0)
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _split(raw: str) -> Set[str]:
        return {item.strip().lower() for item in raw.split(",") if item.strip()}

    @property
    def priority_actor_set(self) -> Set[str]:
        """Normalized set of priority actor identifiers."""
        return self._split(self.priority_actors)

    def is_priority_actor(
        self, actor_id: Optional[str] = None, email: Optional[str] = None
    ) -> bool:
        """
        Check if an actor is a priority actor.

        Args:
            actor_id: Actor ID to check
            email: Actor email to check

        Returns:
            True if either identifier is configured as priority, False otherwise
        """
        configured = self.priority_actor_set
        if not configured:
            return False
        candidates = {value.strip().lower() for value in (actor_id, email) if value}
        return bool(candidates & configured)

    def validate_all_required(self) -> None:
        """
        Validate that all required settings are present.

        Raises:
            ValueError: If required fields are missing or invalid
        """
        required_fields = [
            "supabase_url",
            "supabase_key",
            "stripe_secret_key",
            "stripe_publishable_key",
        ]

        missing = []
        for field in required_fields:
            value = getattr(self, field, None)

            if not value:
                missing.append(field)
                continue

            # Check for placeholder values
            value_str = str(value).lower()
            if value_str.startswith("your_"):
                missing.append(field)
                continue

        if self.environment == "production" and not self.stripe_webhook_secret:
            missing.append("stripe_webhook_secret")

        if missing:
            raise ValueError(
                f"Missing or invalid required configuration: "
                f"{', '.join(missing)}. "
                f"Please check your .env file and ensure all required "
                f"values are set."
            )


# Global settings instance
settings = Settings()
