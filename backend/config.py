"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the
orchestrator backend. All settings can be overridden via environment
variables or a .env file.
"""

import json
import logging
from typing import Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _parse_limit_table(v: Any) -> dict[str, int | None]:
    """Parse a ``name -> limit`` table from a dict, JSON object, or CSV string.

    Accepts:
    - JSON object: '{"fast": 50, "pro": 5}'
    - Comma-separated: 'fast=50,pro=5,local=unlimited'
    - Already a dict: {"fast": 50}

    The values ``unlimited``, ``none`` and ``inf`` (or JSON null) mean no limit.
    """
    if isinstance(v, dict):
        raw: dict[str, Any] = v
    elif isinstance(v, str):
        v = v.strip()
        if not v:
            return {}
        if v.startswith("{"):
            raw = json.loads(v)
        else:
            raw = {}
            for item in v.split(","):
                if not item.strip():
                    continue
                name, _, limit = item.partition("=")
                raw[name.strip()] = limit.strip()
    else:
        raise ValueError(f"Unsupported limit table: {v!r}")

    table: dict[str, int | None] = {}
    for name, limit in raw.items():
        if limit is None or str(limit).lower() in ("unlimited", "none", "inf", ""):
            table[name] = None
        else:
            table[name] = int(limit)
    return table


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        resource_class_concurrency: Max in-flight jobs per resource class.
            ``None`` means unlimited.
        resource_class_rpm: Optional requests-per-minute ceiling per class.
        queue_max_waiting: Optional cap on each class's wait queue depth.
        poll_interval_seconds: Poll interval per task kind.
        task_status_base_url: Base URL of the task status service.
        task_status_paths: Status route per task kind.
        task_status_id_params: Task id query parameter for kinds whose route
            does not use ``taskId``.
        status_request_timeout_seconds: Timeout for a single status request.
        stream_connect_timeout_seconds: Connect timeout for streaming requests.
        stream_read_timeout_seconds: Read timeout between stream chunks.
        observer_timeout_seconds: Max time an observer may take per event.
        backend_port: Port for the FastAPI server.
        cors_origins: Allowed origins for CORS.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # Submission queue
    resource_class_concurrency: str | dict[str, int | None] = {
        "nano-banana": 50,
        "nano-banana-pro": 5,
        "seedream-4.5": 10,
        "glm-image": 10,
    }
    resource_class_rpm: str | dict[str, int | None] = {
        "nano-banana": 500,
        "nano-banana-pro": 20,
        "seedream-4.5": 60,
        "glm-image": 60,
    }
    queue_max_waiting: int | None = None

    # Task polling
    poll_interval_seconds: dict[str, float] = {
        "speech": 2.0,
        "slides": 2.0,
        "sprite": 3.0,
        "image": 5.0,
        "music": 5.0,
        "video": 10.0,
    }
    task_status_base_url: str = "http://localhost:3000"
    task_status_paths: dict[str, str] = {
        "image": "/api/image-task",
        "video": "/api/video-task",
        "music": "/api/music-task",
        "sprite": "/api/sprite-task",
        "slides": "/api/ppt/task",
        "speech": "/api/tts-task",
    }
    task_status_id_params: dict[str, str] = {"slides": "id"}
    status_request_timeout_seconds: float = 15.0

    # Streaming
    stream_connect_timeout_seconds: float = 10.0
    stream_read_timeout_seconds: float = 300.0
    observer_timeout_seconds: float = 5.0

    # Server Configuration
    backend_port: int = 8000
    cors_origins: str | list[str] = ["http://localhost:3000"]
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("resource_class_concurrency", "resource_class_rpm", mode="before")
    @classmethod
    def parse_limit_tables(cls, v: Any) -> dict[str, int | None]:
        """Parse limit tables from JSON or ``name=limit`` CSV strings."""
        return _parse_limit_table(v)

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Parse CORS origins from string or list.

        Accepts:
        - JSON array: '["http://localhost:3000"]'
        - Comma-separated: 'http://localhost:3000,http://localhost:8080'
        - Single value: 'http://localhost:3000'
        - Already a list: ["http://localhost:3000"]
        """
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            v = v.strip()
            # Try JSON first
            if v.startswith("["):
                try:
                    return json.loads(v)
                except json.JSONDecodeError:
                    pass
            # Fallback to comma-separated
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return ["http://localhost:3000"]

    model_config = SettingsConfigDict(
        # Support running `uvicorn` from either the repo root or `backend/`
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the application.

    Sets up structlog with appropriate processors for either JSON or console output.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format - 'json' for production, 'text' for development.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Global settings instance
settings = Settings()

# Configure logging on module import
configure_logging(settings.log_level, settings.log_format)
