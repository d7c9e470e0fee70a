"""
LexVault Configuration — Load and validate lexvault.yaml at startup.

Usage:
    from lexvault.engine.config import load_config, get_config
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from lexvault.engine.errors import LexVaultConfigError

CONFIG_FILENAME = "lexvault.yaml"


# ---------------------------------------------------------------------------
# Pydantic models for lexvault.yaml
# ---------------------------------------------------------------------------

class DatabaseConfig(BaseModel):
    url: str = "sqlite:///.lexvault/lexvault.db"
    pool_size: int = 10
    max_overflow: int = 20
    pool_timeout: int = 30
    pool_recycle: int = 1800
    pool_pre_ping: bool = True
    create_tables: bool = False

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")


class StorageConfig(BaseModel):
    base_path: str = ".lexvault/storage"
    chunk_size: int = 64 * 1024

    @field_validator("chunk_size")
    @classmethod
    def validate_chunk_size(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"chunk_size must be positive, got {v}")
        return v


class DocumentsConfig(BaseModel):
    max_upload_size_mb: int = 50
    # None disables expiry: a lock is held until check-in or force-unlock
    lock_ttl_minutes: Optional[int] = None
    default_page_size: int = 100


class LogRetentionConfig(BaseModel):
    execution_days: int = 90
    security_days: int = 365


class LogAsyncQueueConfig(BaseModel):
    flush_interval_ms: int = 100
    flush_batch_size: int = 50
    max_queue_size: int = 10000


class LogRotationConfig(BaseModel):
    compress_after_days: int = 7


class LoggingConfig(BaseModel):
    level: str = "INFO"
    directory: str = ".lexvault/logs"
    rotation: LogRotationConfig = LogRotationConfig()
    retention: LogRetentionConfig = LogRetentionConfig()
    async_queue: LogAsyncQueueConfig = LogAsyncQueueConfig()

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"invalid log level '{v}'")
        return v


class CeleryConfig(BaseModel):
    broker: str = "redis://localhost:6379/0"
    result_backend: str = "redis://localhost:6379/1"


class ReconcileConfig(BaseModel):
    grace_minutes: int = 60
    schedule: str = "0 3 * * *"

    @field_validator("schedule")
    @classmethod
    def validate_schedule(cls, v: str) -> str:
        if len(v.split()) != 5:
            raise ValueError(f"schedule must be a 5-field cron expression, got '{v}'")
        return v


class LexVaultConfig(BaseModel):
    """Root model for lexvault.yaml."""
    name: str = "LexVault"
    environment: str = "dev"

    database: DatabaseConfig = DatabaseConfig()
    storage: StorageConfig = StorageConfig()
    documents: DocumentsConfig = DocumentsConfig()
    logging: LoggingConfig = LoggingConfig()
    celery: CeleryConfig = CeleryConfig()
    reconcile: ReconcileConfig = ReconcileConfig()

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        if v not in ("dev", "staging", "prod"):
            raise ValueError(f"environment must be dev/staging/prod, got '{v}'")
        return v


# ---------------------------------------------------------------------------
# Config Loading Functions
# ---------------------------------------------------------------------------

_config: Optional[LexVaultConfig] = None


def _find_project_root() -> Path:
    """Find the project root by looking for lexvault.yaml."""
    current = Path.cwd()
    for parent in [current, *current.parents]:
        if (parent / CONFIG_FILENAME).exists():
            return parent
    return current


def get_project_root() -> Path:
    """Return the project root directory."""
    return _find_project_root()


def load_config(config_path: Optional[str] = None) -> LexVaultConfig:
    """
    Load and validate lexvault.yaml.

    Args:
        config_path: Explicit path to lexvault.yaml. If None, auto-discovers.

    Returns:
        Validated LexVaultConfig instance.

    Raises:
        LexVaultConfigError: if the file is not valid YAML or fails validation.
    """
    global _config

    if config_path is None:
        config_path = str(_find_project_root() / CONFIG_FILENAME)

    path = Path(config_path)
    if not path.exists():
        # Return defaults if no config file
        _config = LexVaultConfig()
        return _config

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw: Dict[str, Any] = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise LexVaultConfigError(f"Invalid YAML in {path}: {e}", path=str(path)) from e

    # Top-level "lexvault:" block holds name/environment
    head = raw.get("lexvault", {})
    config_data = {
        "name": head.get("name", raw.get("name", "LexVault")),
        "environment": head.get("environment", raw.get("environment", "dev")),
        "database": raw.get("database", {}),
        "storage": raw.get("storage", {}),
        "documents": raw.get("documents", {}),
        "logging": raw.get("logging", {}),
        "celery": raw.get("celery", {}),
        "reconcile": raw.get("reconcile", {}),
    }

    try:
        _config = LexVaultConfig(**config_data)
    except ValidationError as e:
        raise LexVaultConfigError(
            f"Invalid configuration in {path}",
            path=str(path),
            validation_errors=e.errors(),
        ) from e
    return _config


def get_config() -> LexVaultConfig:
    """Get the currently loaded config, loading if necessary."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def get_environment() -> str:
    """Get the current environment."""
    return get_config().environment
