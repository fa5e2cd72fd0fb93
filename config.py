"""
Runtime configuration.

Everything comes from the environment (a local .env file is loaded first).
Build one Settings object at startup and pass it to create_app().
"""

import os
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: str) -> List[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


class Settings(BaseModel):
    app_name: str = "Portfolio API"
    environment: str = "development"
    port: int = 8000
    log_level: str = "INFO"

    # Database
    database_url: str = "mongodb://localhost:27017"
    database_name: str = "portfolio"

    # Auth
    jwt_secret: str = "super-secret-key-change"
    jwt_refresh_secret: str = "super-secret-refresh-key-change"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24 * 30
    refresh_token_expire_days: int = 90
    cookie_name: str = "token"
    login_max_attempts: int = 5
    login_lock_minutes: int = 60
    email_verification_hours: int = 24
    password_reset_minutes: int = 10

    # Seed admin (created on startup when both are set and the email is unknown)
    admin_email: Optional[str] = None
    admin_password: Optional[str] = None

    # HTTP
    cors_origins: List[str] = ["http://localhost:5173", "http://localhost:3000"]
    rate_limit_window_seconds: int = 15 * 60
    rate_limit_max: int = 1000
    client_url: str = "http://localhost:3000"
    api_url: str = "http://localhost:8000"

    # Uploads
    upload_dir: str = "public/uploads"
    max_upload_size: int = 5 * 1024 * 1024

    # SMTP
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_secure: bool = False
    email_from: Optional[str] = None
    email_from_name: str = "Portfolio"
    contact_recipient: Optional[str] = None

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "Settings":
        load_dotenv(dotenv_path)
        environment = os.getenv("APP_ENV", "development")
        default_rate = "1000" if environment == "development" else "100"
        return cls(
            app_name=os.getenv("APP_NAME", "Portfolio API"),
            environment=environment,
            port=int(os.getenv("PORT", "8000")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            database_url=os.getenv("DATABASE_URL", "mongodb://localhost:27017"),
            database_name=os.getenv("DATABASE_NAME", "portfolio"),
            jwt_secret=os.getenv("JWT_SECRET", "super-secret-key-change"),
            jwt_refresh_secret=os.getenv("JWT_REFRESH_SECRET", "super-secret-refresh-key-change"),
            access_token_expire_minutes=int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(60 * 24 * 30))),
            refresh_token_expire_days=int(os.getenv("REFRESH_TOKEN_EXPIRE_DAYS", "90")),
            cookie_name=os.getenv("COOKIE_NAME", "token"),
            login_max_attempts=int(os.getenv("LOGIN_MAX_ATTEMPTS", "5")),
            login_lock_minutes=int(os.getenv("LOGIN_LOCK_MINUTES", "60")),
            admin_email=os.getenv("ADMIN_EMAIL"),
            admin_password=os.getenv("ADMIN_PASSWORD"),
            cors_origins=_env_list("CORS_ORIGINS", "http://localhost:5173,http://localhost:3000"),
            rate_limit_window_seconds=int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", str(15 * 60))),
            rate_limit_max=int(os.getenv("RATE_LIMIT_MAX", default_rate)),
            client_url=os.getenv("CLIENT_URL", "http://localhost:3000"),
            api_url=os.getenv("API_URL", "http://localhost:8000"),
            upload_dir=os.getenv("UPLOAD_DIR", "public/uploads"),
            max_upload_size=int(os.getenv("MAX_UPLOAD_SIZE", str(5 * 1024 * 1024))),
            smtp_host=os.getenv("SMTP_HOST"),
            smtp_port=int(os.getenv("SMTP_PORT", "587")),
            smtp_user=os.getenv("SMTP_USER"),
            smtp_password=os.getenv("SMTP_PASSWORD"),
            smtp_secure=_env_bool("SMTP_SECURE"),
            email_from=os.getenv("EMAIL_FROM"),
            email_from_name=os.getenv("EMAIL_FROM_NAME", "Portfolio"),
            contact_recipient=os.getenv("CONTACT_RECIPIENT_EMAIL") or os.getenv("SMTP_USER"),
        )
