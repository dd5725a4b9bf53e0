"""
Runtime Settings

Environment-driven configuration for the server and CLI.
"""

from dataclasses import dataclass, field
import os
from typing import List, Optional


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    try:
        return int(value) if value else default
    except ValueError:
        return default


@dataclass
class Settings:
    """Process-wide settings read from the environment."""
    database_url: str = "sqlite:///entitlement_rail.db"
    api_key: Optional[str] = None
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    log_format: str = "console"
    log_level: str = "INFO"
    enforcer_fail_closed: bool = True
    reservation_sweep_minutes: int = 30
    port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.environ.get("CORS_ORIGINS", "*")
        return cls(
            database_url=os.environ.get("DATABASE_URL", cls.database_url),
            api_key=os.environ.get("API_KEY") or None,
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
            log_format=os.environ.get("LOG_FORMAT", cls.log_format).lower(),
            log_level=os.environ.get("LOG_LEVEL", cls.log_level).upper(),
            enforcer_fail_closed=_env_bool("ENFORCER_FAIL_CLOSED", True),
            reservation_sweep_minutes=_env_int("RESERVATION_SWEEP_MINUTES", 30),
            port=_env_int("PORT", 8000),
        )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def reset_settings() -> None:
    """Forget cached settings so the next call re-reads the environment."""
    global _settings
    _settings = None
