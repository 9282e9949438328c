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
        storage_dir: Path,
        storage_base_url: str,
        cache_stale_secs: float,
        debug_endpoints: bool,
        audit_enabled: bool,
        audit_hour: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.token_secret = token_secret
        self.token_max_age_hours = token_max_age_hours
        self.storage_dir = storage_dir
        self.storage_base_url = storage_base_url
        self.cache_stale_secs = cache_stale_secs
        self.debug_endpoints = debug_endpoints
        self.audit_enabled = audit_enabled
        self.audit_hour = audit_hour


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("EVENTBUDGET_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "eventbudget.db"
    database_url = os.getenv("EVENTBUDGET_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("EVENTBUDGET_TIMEZONE", "UTC")
    token_secret = os.getenv(
        "EVENTBUDGET_TOKEN_SECRET",
        "3f9c0d7e1b2a45c8a6e4d1f0b9c8e7a65d4c3b2a1f0e9d8c7b6a5f4e3d2c1b0a",
    )
    token_max_age_hours = int(os.getenv("EVENTBUDGET_TOKEN_MAX_AGE_HOURS", "24"))
    storage_dir = Path(
        os.getenv("EVENTBUDGET_STORAGE_DIR", str(data_dir / "attachments"))
    ).resolve()
    storage_base_url = os.getenv("EVENTBUDGET_STORAGE_BASE_URL", "/attachments")
    cache_stale_secs = float(os.getenv("EVENTBUDGET_CACHE_STALE_SECS", "30"))
    debug_endpoints = _env_flag("EVENTBUDGET_DEBUG_ENDPOINTS", "false")
    audit_enabled = _env_flag("EVENTBUDGET_AUDIT_ENABLED", "true")
    audit_hour = int(os.getenv("EVENTBUDGET_AUDIT_HOUR", "3"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        token_secret=token_secret,
        token_max_age_hours=token_max_age_hours,
        storage_dir=storage_dir,
        storage_base_url=storage_base_url,
        cache_stale_secs=cache_stale_secs,
        debug_endpoints=debug_endpoints,
        audit_enabled=audit_enabled,
        audit_hour=audit_hour,
    )
