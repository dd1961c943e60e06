import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        data_dir: Path,
        snapshot_key: str,
        password: Optional[str],
        insights_url: Optional[str],
        insights_api_key: Optional[str],
        insights_timeout_secs: float,
        log_level: str,
    ) -> None:
        self.data_dir = data_dir
        self.snapshot_key = snapshot_key
        self.password = password
        self.insights_url = insights_url
        self.insights_api_key = insights_api_key
        self.insights_timeout_secs = insights_timeout_secs
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    snapshot_key = os.getenv("LEDGER_SNAPSHOT_KEY", "db_binary")
    password = os.getenv("LEDGER_PASSWORD") or None
    insights_url = os.getenv("LEDGER_INSIGHTS_URL") or None
    insights_api_key = os.getenv("LEDGER_INSIGHTS_API_KEY") or None
    insights_timeout_secs = float(os.getenv("LEDGER_INSIGHTS_TIMEOUT_SECS", "10"))
    log_level = os.getenv("LEDGER_LOG_LEVEL", "INFO").upper()
    return Settings(
        data_dir=data_dir,
        snapshot_key=snapshot_key,
        password=password,
        insights_url=insights_url,
        insights_api_key=insights_api_key,
        insights_timeout_secs=insights_timeout_secs,
        log_level=log_level,
    )
