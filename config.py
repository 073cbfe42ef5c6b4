import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: Optional[str],
        seed_defaults: bool,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.seed_defaults = seed_defaults
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGERBOOK_DATA_DIR", "./data")).expanduser().resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("LEDGERBOOK_DATABASE_URL")
    if not database_url:
        default_db = _ensure_data_dir() / "ledgerbook.db"
        database_url = f"sqlite:///{default_db}"
    timezone = os.getenv("LEDGERBOOK_TIMEZONE") or None
    seed_defaults = os.getenv("LEDGERBOOK_SEED_DEFAULTS", "1").strip().lower() in {
        "1",
        "true",
        "yes",
        "on",
    }
    log_level = os.getenv("LEDGERBOOK_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        seed_defaults=seed_defaults,
        log_level=log_level,
    )
