import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        rebuild_batch_size: int,
        aggregate_retry_attempts: int,
        log_level: str = "INFO",
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.rebuild_batch_size = rebuild_batch_size
        self.aggregate_retry_attempts = aggregate_retry_attempts
        self.log_level = log_level


def _data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _positive_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc
    if value < 1:
        raise ValueError(f"{name} must be positive")
    return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("FINANCE_DATABASE_URL")
    if not database_url:
        database_url = f"sqlite:///{_data_dir() / 'finance.db'}"
    return Settings(
        database_url=database_url,
        timezone=os.getenv("FINANCE_TIMEZONE", "Europe/Berlin"),
        rebuild_batch_size=_positive_int("FINANCE_REBUILD_BATCH_SIZE", 500),
        aggregate_retry_attempts=_positive_int("FINANCE_AGGREGATE_RETRY_ATTEMPTS", 3),
        log_level=os.getenv("FINANCE_LOG_LEVEL", "INFO").upper(),
    )
