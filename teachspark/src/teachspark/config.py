"""
Runtime configuration loaded from environment variables.
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()
load_dotenv('../.env')  # Also try parent directory


@dataclass
class Settings:
    """Environment-backed settings for the backend and services."""
    supabase_url: Optional[str] = None
    supabase_service_key: Optional[str] = None
    supabase_jwt_secret: Optional[str] = None
    gemini_api_key: Optional[str] = None
    anthropic_api_key: Optional[str] = None
    together_api_key: Optional[str] = None
    wayforpay_merchant_account: Optional[str] = None
    wayforpay_secret_key: Optional[str] = None
    wayforpay_domain: str = "https://secure.wayforpay.com/pay"
    app_url: str = "http://localhost:3000"
    log_level: str = "INFO"
    batch_session_ttl_minutes: int = 60

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            supabase_url=os.getenv("SUPABASE_URL"),
            supabase_service_key=os.getenv("SUPABASE_SERVICE_KEY"),
            supabase_jwt_secret=os.getenv("SUPABASE_JWT_SECRET"),
            gemini_api_key=os.getenv("GEMINI_API_KEY"),
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY"),
            together_api_key=os.getenv("TOGETHER_API_KEY"),
            wayforpay_merchant_account=os.getenv("WAYFORPAY_MERCHANT_ACCOUNT"),
            wayforpay_secret_key=os.getenv("WAYFORPAY_SECRET_KEY"),
            wayforpay_domain=os.getenv("WAYFORPAY_DOMAIN", "https://secure.wayforpay.com/pay"),
            app_url=os.getenv("APP_URL", "http://localhost:3000").rstrip("/"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            batch_session_ttl_minutes=int(os.getenv("BATCH_SESSION_TTL_MINUTES", "60")),
        )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create the Settings singleton."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def reset_settings():
    """Drop the cached settings so the next call re-reads the environment."""
    global _settings
    _settings = None
