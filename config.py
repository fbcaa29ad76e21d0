import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        page_size: int = 100,
        max_pages: int = 1000,
        fetch_retry_attempts: int = 3,
        fetch_retry_backoff_secs: float = 0.5,
        sweep_hour: int = 5,
        sweep_minute: int = 0,
        sweep_safety_interval_minutes: int = 60,
        log_level: str = "INFO",
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.page_size = page_size
        self.max_pages = max_pages
        self.fetch_retry_attempts = fetch_retry_attempts
        self.fetch_retry_backoff_secs = fetch_retry_backoff_secs
        self.sweep_hour = sweep_hour
        self.sweep_minute = sweep_minute
        self.sweep_safety_interval_minutes = sweep_safety_interval_minutes
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "America/Sao_Paulo")
    page_size = int(os.getenv("LEDGER_PAGE_SIZE", "100"))
    max_pages = int(os.getenv("LEDGER_MAX_PAGES", "1000"))
    fetch_retry_attempts = int(os.getenv("LEDGER_FETCH_RETRY_ATTEMPTS", "3"))
    fetch_retry_backoff_secs = float(
        os.getenv("LEDGER_FETCH_RETRY_BACKOFF_SECS", "0.5")
    )
    sweep_hour = int(os.getenv("LEDGER_SWEEP_HOUR", "5"))
    sweep_minute = int(os.getenv("LEDGER_SWEEP_MINUTE", "0"))
    sweep_safety_interval_minutes = int(
        os.getenv("LEDGER_SWEEP_SAFETY_INTERVAL_MINUTES", "60")
    )
    log_level = os.getenv("LEDGER_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        page_size=page_size,
        max_pages=max_pages,
        fetch_retry_attempts=fetch_retry_attempts,
        fetch_retry_backoff_secs=fetch_retry_backoff_secs,
        sweep_hour=sweep_hour,
        sweep_minute=sweep_minute,
        sweep_safety_interval_minutes=sweep_safety_interval_minutes,
        log_level=log_level,
    )
