"""
config.py — photo store application settings.

Usage:
    from photo_store.config import settings
    print(settings.redis_url)

Never use FastAPI Depends() for settings — import directly as a module-level singleton.
"""
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Silently ignore any extra env vars
    )

    # --- Redis (purchase records + checkout cart side channel) ---
    redis_url: str = "redis://localhost:6379"

    # --- Stripe ---
    stripe_secret_key: str = ""
    stripe_secret_key_test: str = ""
    use_test_stripe: bool = False
    stripe_publishable_key: str = ""
    stripe_webhook_secret: str = ""
    checkout_currency: str = "aud"

    # Default success/cancel pages are built from this when the client sends none
    public_base_url: str = "https://www.ifeelworld.com"

    # --- Purchases ---
    session_id_prefix: str = "cs_"
    temp_cart_ttl: int = 3600            # seconds a checkout cart survives before payment
    store_update_attempts: int = 5       # WATCH/MULTI retries on a contended purchase key
    ingest_write_attempts: int = 3       # webhook record writes before dead-lettering
    ingest_retry_backoff: float = 0.25   # base seconds, doubled per attempt

    # --- CORS ---
    # Comma-separated list of allowed frontend origins
    cors_origins: str = "http://localhost:3000,http://localhost:5173"

    # --- Application ---
    debug: bool = True
    app_version: str = "0.1.0"

    @property
    def cors_origins_list(self) -> List[str]:
        """Split comma-separated CORS origins into a list."""
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def stripe_api_key(self) -> str:
        """Secret key for the active Stripe mode (test or live)."""
        return self.stripe_secret_key_test if self.use_test_stripe else self.stripe_secret_key


# Module-level singleton — import this throughout the codebase
settings = Settings()
