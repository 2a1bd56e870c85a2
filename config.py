import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

DEFAULT_TIMEZONE = "Europe/Berlin"


class Settings:
    def __init__(
        self,
        data_dir: Path,
        database_url: str,
        timezone: str,
        csrf_secret: str,
        supabase_url: Optional[str],
        supabase_key: Optional[str],
        sync_table: str,
        sync_timeout_secs: float,
        sync_debounce_secs: float,
        gemini_api_key: Optional[str],
        gemini_model: str,
        log_buffer_size: int,
    ) -> None:
        self.data_dir = data_dir
        self.database_url = database_url
        self.timezone = timezone
        self.csrf_secret = csrf_secret
        self.supabase_url = supabase_url
        self.supabase_key = supabase_key
        self.sync_table = sync_table
        self.sync_timeout_secs = sync_timeout_secs
        self.sync_debounce_secs = sync_debounce_secs
        self.gemini_api_key = gemini_api_key
        self.gemini_model = gemini_model
        self.log_buffer_size = log_buffer_size

    @property
    def remote_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("GRIDFINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "gridfinance.db"
    database_url = os.getenv("GRIDFINANCE_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("GRIDFINANCE_TIMEZONE", DEFAULT_TIMEZONE)
    csrf_secret = os.getenv(
        "GRIDFINANCE_CSRF_SECRET",
        "5d1c0a7e3f9b42c8a6e0d4b7f2913c58e7a0b6d3c9f1e2a4b8d7c6e5f4a3b2c1",
    )
    supabase_url = os.getenv("GRIDFINANCE_SUPABASE_URL") or None
    supabase_key = os.getenv("GRIDFINANCE_SUPABASE_KEY") or None
    sync_table = os.getenv("GRIDFINANCE_SYNC_TABLE", "gridfinance_sync")
    sync_timeout_secs = float(os.getenv("GRIDFINANCE_SYNC_TIMEOUT_SECS", "10"))
    sync_debounce_secs = float(os.getenv("GRIDFINANCE_SYNC_DEBOUNCE_SECS", "3"))
    gemini_api_key = os.getenv("GRIDFINANCE_GEMINI_API_KEY") or None
    gemini_model = os.getenv("GRIDFINANCE_GEMINI_MODEL", "gemini-2.5-flash")
    log_buffer_size = int(os.getenv("GRIDFINANCE_LOG_BUFFER_SIZE", "100"))
    return Settings(
        data_dir=data_dir,
        database_url=database_url,
        timezone=timezone,
        csrf_secret=csrf_secret,
        supabase_url=supabase_url,
        supabase_key=supabase_key,
        sync_table=sync_table,
        sync_timeout_secs=sync_timeout_secs,
        sync_debounce_secs=sync_debounce_secs,
        gemini_api_key=gemini_api_key,
        gemini_model=gemini_model,
        log_buffer_size=log_buffer_size,
    )
