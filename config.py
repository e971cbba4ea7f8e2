import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        token_secret: str,
        token_max_age_hours: int,
        default_currency: str,
        cors_origins: list[str],
        scheduler_enabled: bool,
        reconcile_interval_hours: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.token_secret = token_secret
        self.token_max_age_hours = token_max_age_hours
        self.default_currency = default_currency
        self.cors_origins = cors_origins
        self.scheduler_enabled = scheduler_enabled
        self.reconcile_interval_hours = reconcile_interval_hours


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "UTC")
    token_secret = os.getenv(
        "LEDGER_TOKEN_SECRET",
        "5f0c3be2a8e94d1b9d7a0c6e41f2b8a37d95e0c14b6a2f8e93d7c1a0b5e4f6d2",
    )
    token_max_age_hours = int(os.getenv("LEDGER_TOKEN_MAX_AGE_HOURS", "24"))
    default_currency = os.getenv("LEDGER_DEFAULT_CURRENCY", "USD").upper()
    cors_origins = [
        origin.strip()
        for origin in os.getenv("LEDGER_CORS_ORIGINS", "*").split(",")
        if origin.strip()
    ]
    scheduler_enabled = _env_flag("LEDGER_SCHEDULER_ENABLED", True)
    reconcile_interval_hours = int(os.getenv("LEDGER_RECONCILE_INTERVAL_HOURS", "6"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        token_secret=token_secret,
        token_max_age_hours=token_max_age_hours,
        default_currency=default_currency,
        cors_origins=cors_origins,
        scheduler_enabled=scheduler_enabled,
        reconcile_interval_hours=reconcile_interval_hours,
    )
