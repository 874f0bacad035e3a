"""Configuration management with hierarchical loading."""

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

from ticketq.infrastructure.logger import get_logger

logger = get_logger(__name__)

CONFIG_DIR_NAME = ".ticketq"


class QueueConfig(BaseModel):
    """Queue and dispatch defaults."""

    default_priority: int = Field(default=5, ge=0, le=10)
    default_max_parallel_items: int = Field(default=1, ge=1)
    # in_progress items older than this are reported as stuck by the health check
    stuck_item_threshold_seconds: int = Field(default=3600, ge=1)
    # cleanup_queue_data removes terminal items that finished longer ago than this
    completed_item_max_age_seconds: int = Field(default=7 * 24 * 3600, ge=0)


class Config(BaseModel):
    """Main configuration model."""

    version: str = "0.1.0"
    log_level: str = "INFO"
    database_path: Path | None = None
    queue: QueueConfig = Field(default_factory=QueueConfig)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of {sorted(allowed)}, got '{v}'")
        return v.upper()


class ConfigManager:
    """Manage configuration loading from multiple sources with hierarchy."""

    # Environment variable -> config path; values are coerced to int when possible
    ENV_MAPPINGS: dict[str, list[str]] = {
        "TICKETQ_LOG_LEVEL": ["log_level"],
        "TICKETQ_DATABASE_PATH": ["database_path"],
        "TICKETQ_DEFAULT_PRIORITY": ["queue", "default_priority"],
        "TICKETQ_MAX_PARALLEL_ITEMS": ["queue", "default_max_parallel_items"],
        "TICKETQ_STUCK_THRESHOLD_SECONDS": ["queue", "stuck_item_threshold_seconds"],
        "TICKETQ_COMPLETED_MAX_AGE_SECONDS": ["queue", "completed_item_max_age_seconds"],
    }

    def __init__(self, project_root: Path | None = None) -> None:
        """Initialize config manager.

        Args:
            project_root: Root directory of the project (default: current directory)
        """
        self.project_root = project_root or Path.cwd()
        self._config: Config | None = None

    def load_config(self) -> Config:
        """Load configuration from all sources in hierarchy order.

        Configuration hierarchy (highest priority last):
        1. System defaults (embedded in Config model)
        2. Project defaults (.ticketq/config.yaml)
        3. User overrides (~/.ticketq/config.yaml)
        4. Project-local overrides (.ticketq/local.yaml)
        5. Environment variables (TICKETQ_* prefix)

        Returns:
            Merged configuration
        """
        if self._config is not None:
            return self._config

        config_dict: dict[str, Any] = {}

        for path in (
            self.project_root / CONFIG_DIR_NAME / "config.yaml",
            Path.home() / CONFIG_DIR_NAME / "config.yaml",
            self.project_root / CONFIG_DIR_NAME / "local.yaml",
        ):
            if path.exists():
                logger.debug("config_file_loaded", path=str(path))
                config_dict = self._merge_dicts(config_dict, self._load_yaml(path))

        config_dict = self._apply_env_vars(config_dict)

        self._config = Config(**config_dict)
        return self._config

    def _load_yaml(self, path: Path) -> dict[str, Any]:
        """Load YAML configuration file."""
        with open(path) as f:
            return yaml.safe_load(f) or {}

    def _merge_dicts(self, base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
        """Recursively merge two dictionaries."""
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_dicts(result[key], value)
            else:
                result[key] = value
        return result

    def _apply_env_vars(self, config_dict: dict[str, Any]) -> dict[str, Any]:
        """Apply environment variables with TICKETQ_ prefix."""
        for env_var, path in self.ENV_MAPPINGS.items():
            value = os.getenv(env_var)
            if value is None:
                continue
            current = config_dict
            for key in path[:-1]:
                current = current.setdefault(key, {})
            try:
                current[path[-1]] = int(value)
            except ValueError:
                current[path[-1]] = value

        return config_dict

    def get_database_path(self) -> Path:
        """Get the SQLite database path, creating its directory if needed."""
        config = self.load_config()
        if config.database_path is not None:
            db_path = config.database_path
            if not db_path.is_absolute() and str(db_path) != ":memory:":
                db_path = self.project_root / db_path
            return db_path
        db_dir = self.project_root / CONFIG_DIR_NAME
        db_dir.mkdir(parents=True, exist_ok=True)
        return db_dir / "ticketq.db"

    def get_log_dir(self) -> Path:
        """Get the log directory, creating it if needed."""
        log_dir = self.project_root / CONFIG_DIR_NAME / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        return log_dir
