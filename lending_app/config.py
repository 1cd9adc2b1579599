import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8080"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")
    cors_origins: str = os.getenv("CORS_ORIGINS", "*")  # comma separated

    # Database settings
    db_file: str = os.getenv("LIBRARY_DB_FILE", "lending.db")
    db_timeout: float = float(os.getenv("LIBRARY_DB_TIMEOUT", "30"))

    # Authentication settings
    token_expiration_minutes: int = int(os.getenv("TOKEN_EXPIRATION_MINUTES", "1440"))  # 24 hours
    password_hash_iterations: int = int(os.getenv("PASSWORD_HASH_ITERATIONS", "260000"))
    min_password_length: int = int(os.getenv("MIN_PASSWORD_LENGTH", "6"))

    # Lending rules
    weekly_borrow_limit: int = int(os.getenv("WEEKLY_BORROW_LIMIT", "5"))
    borrow_window_days: int = int(os.getenv("BORROW_WINDOW_DAYS", "7"))

    # Pagination settings
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "10"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "100"))

    # Rate limiting
    rate_limit_per_minute: float = float(os.getenv("RATE_LIMIT_PER_MINUTE", "100"))
    rate_limit_burst: int = int(os.getenv("RATE_LIMIT_BURST", "200"))
    rate_limit_cleanup_interval: float = float(os.getenv("RATE_LIMIT_CLEANUP_INTERVAL", "600"))  # 10 minutes
    rate_limit_max_clients: int = int(os.getenv("RATE_LIMIT_MAX_CLIENTS", "1000"))
    rate_limit_enabled: bool = _env_bool("RATE_LIMIT_ENABLED", "True")

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Book Lending API")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_bool("DEBUG")
    environment: str = os.getenv("ENVIRONMENT", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    log_format: Optional[str] = os.getenv("LOG_FORMAT")


settings = Settings()


def configure_logging(config: Optional[Settings] = None) -> None:
    """Apply the configured log level and format to the root logger."""
    config = config or settings
    level = logging.DEBUG if config.debug else getattr(logging, config.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format=config.log_format or "%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
