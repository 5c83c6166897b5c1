"""Application configuration loaded from environment variables."""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from .env or TAXMINDER_* environment variables."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "env_prefix": "TAXMINDER_"}

    # Storage
    data_dir: str = "./data"
    db_file: str = "taxminder.db"

    # Bank holidays (GOV.UK)
    bank_holidays_url: str = "https://www.gov.uk/bank-holidays.json"
    bank_holidays_division: str = "england-and-wales"
    holiday_cache_ttl_days: int = 7
    http_timeout: float = 10.0

    # Scheduling
    shift_send_dates: bool = True
    send_hour: int | None = None  # UK local hour the daily pass runs at; None = any hour
    timezone: str = "Europe/London"
    accountant_name: str = "PhaseTwo"
    auto_rollover: bool = False
    lock_ttl_seconds: int = 300

    # Logging
    log_level: str = "INFO"

    @property
    def data_path(self) -> Path:
        p = Path(self.data_dir)
        p.mkdir(parents=True, exist_ok=True)
        return p

    @property
    def db_path(self) -> Path:
        return self.data_path / self.db_file

    def has_send_window(self) -> bool:
        return self.send_hour is not None


def get_settings() -> Settings:
    return Settings()
