"""Application settings loaded from the environment or a .env file."""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "coworking-referrals"
    env: str = "development"
    log_level: str = "INFO"
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])

    # Shared secret for the /admin endpoints; admin routes are closed when unset.
    admin_secret: Optional[str] = None

    # Document store
    store_backend: str = "firestore"  # "firestore" or "memory"
    firebase_credentials_path: Optional[str] = None
    firebase_project_id: Optional[str] = None
    transaction_max_attempts: int = 5

    # OfficeRnD (membership manager)
    officernd_client_id: Optional[str] = None
    officernd_client_secret: Optional[str] = None
    officernd_org_slug: str = "savage-coworking"
    officernd_api_url: str = "https://app.officernd.com/api/v2/organizations"
    officernd_token_url: str = "https://identity.officernd.com/oauth/token"
    officernd_scopes: str = (
        "flex.community.members.read flex.community.members.update "
        "flex.billing.fees.create"
    )
    officernd_default_location_id: str = "5d1bcda0dbd6e40010479eec"
    officernd_referral_plan_id: str = "68544dc51579c137fb109286"
    officernd_timeout_seconds: float = 15.0

    # Rewards
    referral_fee_name: str = "Referral Reward"

    # Stripe (bank-transfer payouts)
    stripe_secret_key: Optional[str] = None

    @property
    def is_development(self) -> bool:
        return self.env.lower() == "development"


@lru_cache
def get_settings() -> Settings:
    return Settings()
