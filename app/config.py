"""Application configuration using Pydantic Settings."""
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # App
    app_name: str = "Academy Payments"
    debug: bool = False
    log_level: str = "INFO"

    # Base URL used to resolve relative receipt file urls
    base_url: str = "http://localhost:3005"

    # MongoDB
    mongodb_url: str = "mongodb://localhost:27017"
    mongodb_db_name: str = "academy"
    mongodb_server_selection_timeout_ms: int = 5000
    mongodb_socket_timeout_ms: int = 10000

    # JWT
    jwt_secret_key: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    jwt_access_token_expire_minutes: int = 60

    # Payments: fallbacks when the configuration store has no value
    default_grace_period_days: int = 5
    default_late_fee_percentage: float = 10.0
    default_receipt_required: bool = False
    receipt_number_attempts: int = 5

    # CORS (comma-separated origins)
    cors_origins: str = "http://localhost:5173"

    @model_validator(mode="after")
    def _validate_production_secrets(self):
        if not self.debug:
            if self.jwt_secret_key in ("change-me-in-production", ""):
                raise ValueError(
                    "JWT_SECRET_KEY must be set to a strong secret when DEBUG is not enabled. "
                    "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
                )
        return self


settings = Settings()
