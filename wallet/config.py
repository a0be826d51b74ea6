from functools import lru_cache
from typing import List, Union

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_JWT_SECRET = "default_secret_key"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Database
    database_url: str = "sqlite:///./wallet.db"

    # Auth
    jwt_secret: str = DEFAULT_JWT_SECRET
    jwt_algorithm: str = "HS256"
    admin_user_ids: Union[str, List[str]] = []

    # Application
    cors_origins: Union[str, List[str]] = ["http://localhost:5173"]
    log_level: str = "INFO"
    upload_dir: str = "uploads"
    max_photo_bytes: int = 10 * 1024 * 1024
    poll_interval_seconds: float = 3.0

    # Twilio SMS
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = ""

    # SendGrid email
    sendgrid_api_key: str = ""
    email_from: str = ""

    # Spreadsheet mirror (Apps Script web app)
    sheets_webhook_url: str = ""
    sheets_webhook_secret: str = ""

    notification_timeout: float = 10.0

    @field_validator("admin_user_ids", "cors_origins", mode="before")
    @classmethod
    def split_comma_separated(cls, v):
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v


@lru_cache
def get_settings() -> Settings:
    return Settings()
