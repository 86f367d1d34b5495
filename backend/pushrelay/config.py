import logging
import logging.handlers
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Push Relay"
    environment: str = "dev"

    database_url: str = "sqlite:///./pushrelay.db"

    # Push backend (edge function that fans out to browser subscriptions)
    push_endpoint_url: str | None = None
    push_api_key: str | None = None
    push_timeout_sec: float = 10.0

    # Queue drain worker
    queue_interval_ms: int = Field(100, ge=1)
    queue_max_concurrent: int = Field(5, ge=1)

    # Tracker retries: 2s, 8s, 32s
    max_retry_attempts: int = 3
    retry_delays_sec: list[float] = [2.0, 8.0, 32.0]
    retry_lookback_hours: int = 24

    # History retention
    retention_days: int = 30
    cleanup_interval_sec: int = 24 * 60 * 60

    # Logging
    log_level: str = "INFO"
    log_dir: str | None = None
    log_max_bytes: int = 10_485_760  # 10 MB
    log_backup_count: int = 5

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
    )


settings = Settings()


def setup_logging() -> None:
    """Configure application-wide logging.

    Console handler always; a rotating ``pushrelay.log`` file handler when
    ``LOG_DIR`` is set.
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    console = logging.StreamHandler()
    console.setLevel(level)
    console.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    ))
    root.addHandler(console)

    if settings.log_dir:
        log_dir = Path(settings.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_dir / "pushrelay.log",
            maxBytes=settings.log_max_bytes,
            backupCount=settings.log_backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)-8s [%(name)s:%(funcName)s:%(lineno)d] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
        root.addHandler(file_handler)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        "Logging configured: level=%s, dir=%s", settings.log_level, settings.log_dir or "-"
    )
