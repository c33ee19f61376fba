"""Application configuration using pydantic-settings."""
from functools import lru_cache
from pathlib import Path
from typing import Dict, List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[3] / ".env"),
        case_sensitive=False,
    )

    # Application
    log_level: str = "INFO"
    marketplace_db_path: str = "./data/marketplace.db"
    auth_enabled: bool = False
    actor_tokens: str = ""

    # OTP trip authorization
    otp_code_length: int = 6
    otp_default_validity_minutes: int = 10
    otp_min_validity_minutes: int = 5
    otp_max_validity_minutes: int = 60
    otp_max_attempts: int = 5

    # Compliance
    compliance_expiring_soon_days: int = 30
    solo_required_documents: str = "license,registration,insurance,fitness"
    enterprise_truck_required_documents: str = "registration,insurance,fitness"
    enterprise_driver_required_documents: str = "license"

    # Lifecycle policy: where a re-submitted unavailable load re-enters
    unavailable_reentry_status: str = "pending"

    # Realtime events
    event_webhook_url: str = ""
    event_webhook_timeout_seconds: float = 3.0
    event_publish_retries: int = 2
    event_feed_size: int = 500

    @staticmethod
    def _split_types(raw: str) -> List[str]:
        return [item.strip().lower() for item in (raw or "").split(",") if item.strip()]

    def required_documents(self) -> Dict[str, List[str]]:
        """Required document types keyed by compliance subject role."""
        return {
            "solo": self._split_types(self.solo_required_documents),
            "enterprise_truck": self._split_types(self.enterprise_truck_required_documents),
            "enterprise_driver": self._split_types(self.enterprise_driver_required_documents),
        }

    def normalized_reentry_status(self) -> str:
        status = (self.unavailable_reentry_status or "").strip().lower()
        return status if status in {"pending", "open_for_bid"} else "pending"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
