import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))

    # Database settings
    db_file: str = os.getenv("LIBRARY_DB_FILE", "library.db")
    db_timeout: float = float(os.getenv("DB_TIMEOUT", "5"))  # seconds to wait on a locked database

    # Fine settings: the one default rate used by the scheduler, the manual
    # trigger and any caller that does not pass an explicit rate.
    fine_per_day: float = float(os.getenv("FINE_PER_DAY", "50"))
    fine_sweep_hour: int = int(os.getenv("FINE_SWEEP_HOUR", "0"))  # UTC hour of the daily sweep
    fine_sweep_interval_seconds: Optional[float] = (
        float(os.environ["FINE_SWEEP_INTERVAL_SECONDS"]) if os.getenv("FINE_SWEEP_INTERVAL_SECONDS") else None
    )
    enable_fine_scheduler: bool = _env_bool("ENABLE_FINE_SCHEDULER", "True")
    cron_secret: Optional[str] = os.getenv("CRON_SECRET")

    # Pagination settings
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "100"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "500"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Lending Ledger")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()
    debug: bool = _env_bool("DEBUG", "False")
    environment: str = os.getenv("ENVIRONMENT", "development")


settings = Settings()
