from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

PROJECT_ROOT = Path(__file__).resolve().parents[2]


def _env(name: str, default: str | None = None):
    return lambda: os.getenv(name, default)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class Settings(BaseModel):
    # Project root (repo root in local dev, /app in Docker)
    project_root: Path = PROJECT_ROOT

    # Database URL:
    # - Default for local dev: sqlite file in the project root (sms_relay.db)
    # - Override in Docker / production using the DATABASE_URL env var
    database_url: str = Field(
        default_factory=_env("DATABASE_URL", f"sqlite:///{PROJECT_ROOT / 'sms_relay.db'}")
    )

    # --- Twilio settings ---
    twilio_account_sid: str | None = Field(default_factory=_env("TWILIO_ACCOUNT_SID"))
    twilio_auth_token: str | None = Field(default_factory=_env("TWILIO_AUTH_TOKEN"))
    # Base number of the pool; additional numbers are comma-separated
    twilio_from_number: str | None = Field(default_factory=_env("TWILIO_PHONE_NUMBER"))
    twilio_additional_numbers: str = Field(default_factory=_env("TWILIO_ADDITIONAL_NUMBERS", ""))
    validate_webhooks: bool = Field(
        default_factory=lambda: _env_bool("TWILIO_VALIDATE_WEBHOOKS", True)
    )
    # Public URL Twilio calls us on; signatures are computed against it
    public_base_url: str | None = Field(default_factory=_env("PUBLIC_BASE_URL"))

    # --- Numbering ---
    default_country_code: str = Field(default_factory=_env("DEFAULT_COUNTRY_CODE", "1"))
    # Area code / exchange used to synthesize numbers once the pool is empty.
    # Empty disables synthesis.
    virtual_number_prefix: str = Field(default_factory=_env("VIRTUAL_NUMBER_PREFIX", ""))
    allocation_max_attempts: int = Field(
        default_factory=lambda: int(os.getenv("ALLOCATION_MAX_ATTEMPTS", "100"))
    )

    # --- Fan-out ---
    fanout_max_workers: int = Field(
        default_factory=lambda: int(os.getenv("FANOUT_MAX_WORKERS", "8"))
    )
    delivery_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("DELIVERY_TIMEOUT_SECONDS", "10"))
    )

    admin_token: str | None = Field(default_factory=_env("ADMIN_TOKEN"))
    log_level: str = Field(default_factory=_env("LOG_LEVEL", "INFO"))

    def pool_seed_numbers(self) -> list[str]:
        """Raw numbers configured for the pool, base number first."""
        numbers: list[str] = []
        if self.twilio_from_number:
            numbers.append(self.twilio_from_number.strip())
        numbers.extend(n.strip() for n in self.twilio_additional_numbers.split(",") if n.strip())
        return numbers


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str | None = None) -> None:
    """Install a single stdout handler on the root logger."""
    root = logging.getLogger()
    root.setLevel((level or get_settings().log_level).upper())
    if any(getattr(h, "_sms_relay", False) for h in root.handlers):
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._sms_relay = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    # twilio's http client logs every request at INFO
    logging.getLogger("twilio.http_client").setLevel(logging.WARNING)
