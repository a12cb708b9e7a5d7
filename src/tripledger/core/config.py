from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    environment: str = "dev"
    base_url: str = "http://localhost:8000"
    secret_key: str = "change-me"

    database_url: str = "sqlite:///./tripledger.db"
    redis_url: str = "redis://localhost:6379/0"

    default_home_currency: str = "ILS"

    storage_backend: Literal["local", "s3"] = "local"
    local_storage_path: Path = Path(".local_storage")
    signed_url_expiry_seconds: int = 60 * 60

    s3_endpoint_url: str | None = None
    s3_region: str | None = None
    s3_bucket: str = "tripledger-receipts"
    s3_access_key_id: str | None = None
    s3_secret_access_key: str | None = None

    email_api_url: str = "https://api.resend.com/emails"
    email_api_key: str | None = None
    email_from: str = "TripLedger <noreply@tripledger.local>"

    fx_api_url: str = "https://api.frankfurter.app/latest"
    fx_auto_fetch: bool = True

    invitation_code_length: int = 8
    invitation_code_expiry_days: int = 7
    invitation_code_max_uses: int = 1

    init_admin_email: str | None = None
    init_admin_password: str | None = None

    access_token_exp_minutes: int = 60 * 24


settings = Settings()
