"""SpecFleet configuration settings."""

import os
from pathlib import Path
from typing import Any, Dict

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from specfleet.common import RetryOrdering

PROJECT_ROOT = Path(__file__).parent.parent


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=9292)

    redis_host: str = Field(default="localhost")
    redis_port: int = Field(default=6379)
    redis_db: int = Field(default=0)
    redis_password: str = Field(default="")
    redis_key_prefix: str = Field(default="specfleet")
    redis_ready_timeout_sec: float = Field(default=60.0)

    database_url: str = Field(
        default="sqlite:///specfleet.db",
        description="SQLAlchemy URL of the durable snapshot store",
    )

    execute_log_text_path: str = Field(
        default="logs/execute_log_text",
        description="Directory receiving externalized taskset/worker/slave/trial logs",
    )
    json_cache_path: str = Field(
        default="cache",
        description="Root directory of the cached v1 API documents",
    )
    log_text_size_threshold: int = Field(
        default=65535,
        ge=0,
        description="Log fields longer than this many characters are written to files",
    )

    retry_ordering: RetryOrdering = Field(
        default=RetryOrdering.FRONT,
        description="Re-enqueue retried tasks at the front (default) or back of the queue",
    )
    live_state_ttl_sec: int = Field(
        default=86400,
        ge=0,
        description="Expiry of live Redis state after a taskset is archived. 0 keeps it forever",
    )
    notification_send_timeout: float = Field(default=1.0, gt=0)

    log_level: str = Field(default="INFO")
    log_dir: str = Field(default="logs")
    log_to_file: bool = Field(default=True)
    log_max_bytes: int = Field(default=104857600)
    log_backup_count: int = Field(default=5)

    @field_validator("retry_ordering", mode="before")
    @classmethod
    def validate_retry_ordering(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def validate_log_level(cls, v):
        if isinstance(v, str):
            return v.strip().upper()
        return v

    def resolve_path(self, value: str) -> Path:
        path = Path(value)
        if not path.is_absolute():
            path = PROJECT_ROOT.parent / value
        return path

    def setup_log_directory(self) -> None:
        os.makedirs(self.resolve_path(self.log_dir), exist_ok=True)

    def get_redis_url(self) -> str:
        if self.redis_password:
            return f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}/{self.redis_db}"
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"

    @property
    def redis_url(self) -> str:
        return self.get_redis_url()


settings = Settings()


def get_logging_config() -> Dict[str, Any]:
    handlers: Dict[str, Dict[str, Any]] = {
        "console": {
            "level": settings.log_level,
            "formatter": "standard",
            "class": "logging.StreamHandler",
            "stream": "ext://sys.stdout",
        }
    }

    if settings.log_to_file:
        settings.setup_log_directory()
        log_path = settings.resolve_path(settings.log_dir)

        def _rotating(filename: str) -> Dict[str, Any]:
            return {
                "level": settings.log_level,
                "formatter": "detailed",
                "class": "logging.handlers.RotatingFileHandler",
                "filename": str(log_path / filename),
                "maxBytes": settings.log_max_bytes,
                "backupCount": settings.log_backup_count,
                "encoding": "utf8",
            }

        handlers.update(
            {
                "file_server": _rotating("specfleet.log"),
                "file_api": _rotating("api.log"),
                "file_persister": _rotating("persister.log"),
            }
        )

    def _handlers(file_handler: str):
        return ["console"] + ([file_handler] if settings.log_to_file else [])

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {"format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s"},
            "detailed": {
                "format": "%(asctime)s [%(levelname)s] %(name)s [%(filename)s:%(lineno)d] - %(message)s"
            },
        },
        "handlers": handlers,
        "loggers": {
            "": {
                "handlers": _handlers("file_server"),
                "level": settings.log_level,
                "propagate": False,
            },
            "specfleet.api": {
                "handlers": _handlers("file_api"),
                "level": settings.log_level,
                "propagate": False,
            },
            "specfleet.persister": {
                "handlers": _handlers("file_persister"),
                "level": settings.log_level,
                "propagate": False,
            },
            "uvicorn": {
                "handlers": _handlers("file_server"),
                "level": settings.log_level,
                "propagate": False,
            },
            "uvicorn.access": {
                "handlers": _handlers("file_api"),
                "level": "INFO",
                "propagate": False,
            },
        },
    }


def setup_logging(component_name: str = "server"):
    import logging.config

    logging.config.dictConfig(get_logging_config())

    if component_name == "api":
        logger_name = "specfleet.api"
    elif component_name == "persister":
        logger_name = "specfleet.persister"
    else:
        logger_name = ""

    logger = logging.getLogger(logger_name)
    logger.info(f"Logging configured for {component_name} - File logging: {settings.log_to_file}")
    if settings.log_to_file:
        logger.info(f"Log files will be written to: {settings.resolve_path(settings.log_dir)}")
    return logger
