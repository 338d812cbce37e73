"""Shared configuration loaded from the environment (and an optional .env file)."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

here = Path(__file__).parent.parent

load_dotenv(dotenv_path=here / ".env")


class ConfigurationError(RuntimeError):
    """Raised when a configuration value cannot be parsed."""


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class DatabaseSettings:
    """Where providers, leads and sync progress are stored."""

    database_url: str = "sqlite+aiosqlite:///./billinglead.db"
    echo: bool = False
    create_tables: bool = True

    @classmethod
    def from_environment(cls) -> "DatabaseSettings":
        return cls(
            database_url=os.getenv("DATABASE_URL") or cls.database_url,
            echo=_env_bool("DATABASE_ECHO", cls.echo),
            create_tables=_env_bool("DATABASE_CREATE_TABLES", cls.create_tables),
        )


@dataclass(frozen=True)
class RegistrySettings:
    """NPPES registry API settings."""

    api_url: str = "https://npiregistry.cms.hhs.gov/api/"
    api_version: str = "2.1"
    # The registry never returns more than 200 results per request
    page_limit: int = 200
    max_concurrent: int = 3
    batch_delay: float = 0.2
    request_timeout: float = 30.0
    default_taxonomy: str = "Internal Medicine"

    @classmethod
    def from_environment(cls) -> "RegistrySettings":
        page_limit = _env_int("NPI_PAGE_LIMIT", cls.page_limit)
        if not 1 <= page_limit <= 200:
            raise ConfigurationError(f"NPI_PAGE_LIMIT must be between 1 and 200, got {page_limit}")
        max_concurrent = _env_int("NPI_MAX_CONCURRENT", cls.max_concurrent)
        if max_concurrent < 1:
            raise ConfigurationError("NPI_MAX_CONCURRENT must be at least 1")
        return cls(
            api_url=os.getenv("NPI_API_URL") or cls.api_url,
            page_limit=page_limit,
            max_concurrent=max_concurrent,
            batch_delay=_env_float("NPI_BATCH_DELAY", cls.batch_delay),
            request_timeout=_env_float("NPI_REQUEST_TIMEOUT", cls.request_timeout),
            default_taxonomy=os.getenv("NPI_DEFAULT_TAXONOMY") or cls.default_taxonomy,
        )


@dataclass(frozen=True)
class ApiSettings:
    """Admin API server settings."""

    host: str = "127.0.0.1"
    port: int = 8000
    max_upload_bytes: int = 100 * 1024 * 1024
    log_level: Optional[str] = None

    @classmethod
    def from_environment(cls) -> "ApiSettings":
        return cls(
            host=os.getenv("API_HOST") or cls.host,
            port=_env_int("API_PORT", cls.port),
            max_upload_bytes=_env_int("MAX_UPLOAD_BYTES", cls.max_upload_bytes),
            log_level=os.getenv("LOG_LEVEL") or None,
        )
