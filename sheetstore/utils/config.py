from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_DATA_ROOT = Path("./data")
DATA_ROOT_ENV = "DATA_ROOT"
DATABASE_URL_ENV = "SHEETSTORE_DATABASE_URL"
LEGACY_DATABASE_URL_ENV = "DATABASE_URL"
POOL_SIZE_ENV = "SHEETSTORE_POOL_SIZE"
POOL_MAX_OVERFLOW_ENV = "SHEETSTORE_POOL_MAX_OVERFLOW"
POOL_TIMEOUT_ENV = "SHEETSTORE_POOL_TIMEOUT"
POOL_RECYCLE_ENV = "SHEETSTORE_POOL_RECYCLE"
SHUTDOWN_GRACE_ENV = "SHEETSTORE_SHUTDOWN_GRACE"
SQL_ECHO_ENV = "SHEETSTORE_SQL_ECHO"
INGEST_MAX_BYTES_ENV = "SHEETSTORE_INGEST_MAX_BYTES"
INGEST_ALLOWED_TYPES_ENV = "SHEETSTORE_INGEST_ALLOWED_TYPES"
IMPORT_BATCH_SIZE_ENV = "SHEETSTORE_IMPORT_BATCH_SIZE"
EXPORT_CONTAINER_ENV = "SHEETSTORE_EXPORT_CONTAINER"
EXPORT_LINK_EXPIRY_ENV = "SHEETSTORE_EXPORT_LINK_EXPIRY"


@dataclass(frozen=True)
class DatabaseConfig:
    url: str
    pool_size: int = 10
    max_overflow: int = 0
    pool_timeout_seconds: float = 10.0
    pool_recycle_seconds: int = 1800
    shutdown_grace_seconds: float = 10.0
    echo: bool = False


@dataclass(frozen=True)
class IngestConfig:
    max_bytes: int = 20 * 1024 * 1024
    allowed_types: tuple[str, ...] = ("xlsx", "xlsm", "csv")
    batch_size: int = 200
    inference_sample_size: int = 50
    preview_default_rows: int = 10
    preview_max_rows: int = 100


@dataclass(frozen=True)
class ExportConfig:
    container: str = "exports"
    link_expiry_seconds: int = 3600


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def get_data_root() -> Path:
    return Path(os.getenv(DATA_ROOT_ENV) or DEFAULT_DATA_ROOT).expanduser()


def get_database_url() -> str:
    configured = os.getenv(DATABASE_URL_ENV) or os.getenv(LEGACY_DATABASE_URL_ENV)
    if configured:
        return configured
    return f"sqlite:///{(get_data_root() / 'sheets.db').as_posix()}"


def load_database_config(url: str | None = None) -> DatabaseConfig:
    return DatabaseConfig(
        url=url or get_database_url(),
        pool_size=int(os.getenv(POOL_SIZE_ENV, 10)),
        max_overflow=int(os.getenv(POOL_MAX_OVERFLOW_ENV, 0)),
        pool_timeout_seconds=float(os.getenv(POOL_TIMEOUT_ENV, 10.0)),
        pool_recycle_seconds=int(os.getenv(POOL_RECYCLE_ENV, 1800)),
        shutdown_grace_seconds=float(os.getenv(SHUTDOWN_GRACE_ENV, 10.0)),
        echo=_env_flag(SQL_ECHO_ENV),
    )


def load_ingest_config() -> IngestConfig:
    max_bytes_default = 20 * 1024 * 1024
    max_bytes = int(os.getenv(INGEST_MAX_BYTES_ENV, max_bytes_default))
    allowed_env = os.getenv(INGEST_ALLOWED_TYPES_ENV)
    if allowed_env:
        allowed_types = tuple(
            part.strip().lower().lstrip(".") for part in allowed_env.split(",") if part.strip()
        )
    else:
        allowed_types = ("xlsx", "xlsm", "csv")
    batch_size = max(int(os.getenv(IMPORT_BATCH_SIZE_ENV, 200)), 1)
    return IngestConfig(
        max_bytes=max_bytes,
        allowed_types=allowed_types,
        batch_size=batch_size,
    )


def load_export_config() -> ExportConfig:
    return ExportConfig(
        container=os.getenv(EXPORT_CONTAINER_ENV, "exports"),
        link_expiry_seconds=int(os.getenv(EXPORT_LINK_EXPIRY_ENV, 3600)),
    )
