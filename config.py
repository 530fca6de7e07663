import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        access_key: str,
        access_token_ttl_secs: int,
        refresh_token_ttl_secs: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.access_key = access_key
        self.access_token_ttl_secs = access_token_ttl_secs
        self.refresh_token_ttl_secs = refresh_token_ttl_secs
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
    access_key = os.getenv(
        "LEDGER_ACCESS_KEY",
        "5f0c7a1d9e3b48c2a6f1d0e9b7c3a2f4e8d6c1b0a9f7e5d3c2b1a0f9e8d7c6b5",
    )
    access_token_ttl_secs = int(os.getenv("LEDGER_ACCESS_TOKEN_TTL_SECS", "3600"))
    refresh_token_ttl_secs = int(
        os.getenv("LEDGER_REFRESH_TOKEN_TTL_SECS", str(7 * 24 * 3600))
    )
    log_level = os.getenv("LEDGER_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        access_key=access_key,
        access_token_ttl_secs=access_token_ttl_secs,
        refresh_token_ttl_secs=refresh_token_ttl_secs,
        log_level=log_level,
    )
