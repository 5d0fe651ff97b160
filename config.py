"""Environment-driven settings for the inventory service."""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///inventory.db"
    hold_ttl_seconds: int = 86400
    min_hold_ttl_seconds: int = 60
    max_hold_ttl_seconds: int = 604800
    sweep_interval_seconds: float = 60.0
    enable_sweeper: bool = True
    transaction_retries: int = 3
    retry_backoff_seconds: float = 0.05
    log_level: str = "INFO"
    port: int = 5000

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment (and a local .env file, if any)."""
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            hold_ttl_seconds=int(os.getenv("HOLD_TTL_SECONDS", cls.hold_ttl_seconds)),
            min_hold_ttl_seconds=int(os.getenv("MIN_HOLD_TTL_SECONDS", cls.min_hold_ttl_seconds)),
            max_hold_ttl_seconds=int(os.getenv("MAX_HOLD_TTL_SECONDS", cls.max_hold_ttl_seconds)),
            sweep_interval_seconds=float(os.getenv("SWEEP_INTERVAL_SECONDS", cls.sweep_interval_seconds)),
            enable_sweeper=_env_bool("ENABLE_SWEEPER", cls.enable_sweeper),
            transaction_retries=int(os.getenv("TRANSACTION_RETRIES", cls.transaction_retries)),
            retry_backoff_seconds=float(os.getenv("RETRY_BACKOFF_SECONDS", cls.retry_backoff_seconds)),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
            port=int(os.getenv("PORT", cls.port)),
        )

    def clamp_ttl(self, ttl_seconds: int) -> int:
        return max(self.min_hold_ttl_seconds, min(ttl_seconds, self.max_hold_ttl_seconds))
