"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings

from src.integrations.base import ProviderName


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "HealthSync"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Database ---
    database_url: str = ""  # postgres connection string for asyncpg
    use_in_memory_store: bool = False  # dev / tests only; nothing survives a restart

    # --- Token vault ---
    # Comma-separated; the first key encrypts, all keys decrypt.
    token_encryption_key: str = ""

    # --- URLs ---
    public_base_url: str = "http://localhost:8000"  # OAuth callbacks land here
    frontend_url: str = "http://localhost:3000"

    # --- Auth ---
    auth_enabled: bool = True
    jwt_jwks_url: str = ""
    jwt_audience: str | None = None
    jwt_user_id_claim: str = "sub"

    # --- Providers ---
    fitbit_client_id: str | None = None
    fitbit_client_secret: str | None = None
    fitbit_subscriber_verification_code: str | None = None
    google_fit_client_id: str | None = None
    google_fit_client_secret: str | None = None

    # --- Scheduler ---
    scheduler_enabled: bool = True
    sync_config_path: str | None = None  # defaults to the bundled sync_config.yaml

    # --- CORS ---
    cors_origins: list[str] = ["http://localhost:3000"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    def provider_credentials(self) -> dict[ProviderName, tuple[str | None, str | None]]:
        return {
            ProviderName.FITBIT: (self.fitbit_client_id, self.fitbit_client_secret),
            ProviderName.GOOGLE_FIT: (self.google_fit_client_id, self.google_fit_client_secret),
        }

    def webhook_verification_codes(self) -> dict[ProviderName, str]:
        codes = {}
        if self.fitbit_subscriber_verification_code:
            codes[ProviderName.FITBIT] = self.fitbit_subscriber_verification_code
        return codes


@lru_cache
def get_settings() -> Settings:
    return Settings()
