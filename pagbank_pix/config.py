import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from pagbank_pix.errors import ConfigError

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"

API_URLS = {
    "sandbox": "https://sandbox.api.pagseguro.com",
    "production": "https://api.pagseguro.com",
}


def _flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def _float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


@dataclass(frozen=True)
class Settings:
    database_url: str
    environment: str = "sandbox"
    pagbank_token: str = ""
    webhook_secret: str = ""
    notification_url: Optional[str] = None
    jwt_secret: str = ""
    expiration_minutes: int = 15
    max_amount: Optional[int] = None
    logs_enabled: bool = True
    request_timeout: float = 10.0
    max_retries: int = 3
    retry_backoff: float = 0.5
    host_callback_url: Optional[str] = None

    def __post_init__(self):
        if self.environment not in API_URLS:
            raise ConfigError(
                f"environment must be one of {sorted(API_URLS)}, got {self.environment!r}"
            )
        if self.expiration_minutes < 1:
            raise ConfigError("expiration_minutes must be at least 1")
        if self.max_amount is not None and self.max_amount <= 0:
            raise ConfigError("max_amount must be positive")
        if self.max_retries < 1:
            raise ConfigError("max_retries must be at least 1")

    @property
    def api_url(self) -> str:
        return API_URLS[self.environment]

    @property
    def refund_settle_after(self) -> float:
        """Seconds a refund may stay unconfirmed before the sweep settles it.

        Covers the order lookup and the cancel call, each with every retry.
        """
        one_call = self.request_timeout * self.max_retries + self.retry_backoff * (2 ** self.max_retries - 1)
        return 2 * one_call

    @classmethod
    def from_env(cls, env_path: Path = ENV_PATH) -> "Settings":
        load_dotenv(dotenv_path=env_path)

        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise ConfigError("DATABASE_URL is not set. Check your .env file.")

        return cls(
            database_url=database_url,
            environment=(os.getenv("PAGBANK_ENVIRONMENT") or "sandbox").strip().lower(),
            pagbank_token=os.getenv("PAGBANK_TOKEN", ""),
            webhook_secret=os.getenv("PAGBANK_WEBHOOK_SECRET", ""),
            notification_url=os.getenv("PAGBANK_NOTIFICATION_URL") or None,
            jwt_secret=os.getenv("JWT_SECRET", ""),
            expiration_minutes=_int("PIX_EXPIRATION_MINUTES", 15),
            max_amount=_int("PIX_MAX_AMOUNT", None),
            logs_enabled=_flag(os.getenv("PAGBANK_LOGS_ENABLED", "yes")),
            request_timeout=_float("PAGBANK_TIMEOUT", 10.0),
            max_retries=_int("PAGBANK_MAX_RETRIES", 3),
            retry_backoff=_float("PAGBANK_RETRY_BACKOFF", 0.5),
            host_callback_url=os.getenv("HOST_CALLBACK_URL") or None,
        )
