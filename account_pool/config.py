from enum import Enum
from functools import lru_cache
from typing import Optional

from pydantic import AnyHttpUrl
from pydantic_settings import BaseSettings, SettingsConfigDict


class SignatureMode(str, Enum):
    HMAC = "hmac"
    TOKEN = "token"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    db_url: str = "sqlite:///./account_pool.db"
    log_level: str = "INFO"
    source: str = "hotmart"

    signature_mode: SignatureMode = SignatureMode.HMAC
    hmac_secret: str = "change_secret"
    signature_header: str = "X-Hotmart-Signature"
    hottok: Optional[str] = None
    token_header: str = "X-Hotmart-Hottok"
    bearer_token: Optional[str] = None

    occupancy_days: int = 30
    password_length: int = 12
    password_hash_rounds: int = 12
    low_pool_threshold: int = 5
    claim_attempts: int = 3
    reject_cancelled_transactions: bool = False

    credential_relay_url: Optional[AnyHttpUrl] = None
    credential_relay_token: Optional[str] = None
    login_url: str = "https://ciliosclick.com/login"
    max_retries: int = 3
    retry_backoff_seconds: float = 1.0


@lru_cache
def get_settings() -> Settings:
    return Settings()
