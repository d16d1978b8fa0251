import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        query_default_limit: int,
        query_max_limit: int,
        deleted_default_limit: int,
        deleted_max_limit: int,
        query_cache_ttl_secs: float,
        balance_cache_ttl_secs: float,
        cache_sweep_interval_secs: float,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.query_default_limit = query_default_limit
        self.query_max_limit = query_max_limit
        self.deleted_default_limit = deleted_default_limit
        self.deleted_max_limit = deleted_max_limit
        self.query_cache_ttl_secs = query_cache_ttl_secs
        self.balance_cache_ttl_secs = balance_cache_ttl_secs
        self.cache_sweep_interval_secs = cache_sweep_interval_secs


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "Europe/Berlin")
    query_default_limit = int(os.getenv("LEDGER_QUERY_DEFAULT_LIMIT", "20"))
    query_max_limit = int(os.getenv("LEDGER_QUERY_MAX_LIMIT", "50"))
    deleted_default_limit = int(os.getenv("LEDGER_DELETED_DEFAULT_LIMIT", "50"))
    deleted_max_limit = int(os.getenv("LEDGER_DELETED_MAX_LIMIT", "100"))
    query_cache_ttl_secs = float(os.getenv("LEDGER_QUERY_CACHE_TTL_SECS", "300"))
    balance_cache_ttl_secs = float(os.getenv("LEDGER_BALANCE_CACHE_TTL_SECS", "300"))
    cache_sweep_interval_secs = float(os.getenv("LEDGER_CACHE_SWEEP_SECS", "300"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        query_default_limit=query_default_limit,
        query_max_limit=query_max_limit,
        deleted_default_limit=deleted_default_limit,
        deleted_max_limit=deleted_max_limit,
        query_cache_ttl_secs=query_cache_ttl_secs,
        balance_cache_ttl_secs=balance_cache_ttl_secs,
        cache_sweep_interval_secs=cache_sweep_interval_secs,
    )
