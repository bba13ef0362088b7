"""
Configuration for the shop data layer.

Settings come from environment variables (a local .env file is loaded first).
"""
import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """Runtime settings."""

    database_url: str = "mongodb://localhost:27017"
    database_name: str = "shop"
    log_level: str = "INFO"
    low_stock_threshold: int = 5
    enforce_order_transitions: bool = True  # False keeps the permissive status update
    port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL") or cls.database_url,
            database_name=os.getenv("DATABASE_NAME") or cls.database_name,
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
            low_stock_threshold=int(os.getenv("LOW_STOCK_THRESHOLD", cls.low_stock_threshold)),
            enforce_order_transitions=_env_bool("ENFORCE_ORDER_TRANSITIONS", cls.enforce_order_transitions),
            port=int(os.getenv("PORT", cls.port)),
        )


_settings = None


def get_settings() -> Settings:
    """Return the process settings, loading them on first use."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings
