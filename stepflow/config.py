from __future__ import annotations

import logging
import os
from typing import Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigurationError


class EngineConfig(BaseModel):
    """Settings for the transition engine."""

    max_conflict_retries: int = Field(default=5, ge=1)
    conflict_timeout: float = Field(default=5.0, gt=0)
    retry_backoff_initial: float = Field(default=0.01, ge=0)
    retry_backoff_jitter: float = Field(default=0.01, ge=0)


class RecoveryConfig(BaseModel):
    """Settings for checkpoints and recovery."""

    checkpoint_max_age_days: float = Field(default=7, gt=0)
    max_checkpoints: int = Field(default=20, ge=1)
    stale_after_hours: float = Field(default=24, gt=0)
    large_context_bytes: int = 1024 * 1024
    long_history_entries: int = 100
    integrity_deduction_per_issue: int = 10


class StepflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    log_level: str = "INFO"
    engine: EngineConfig = EngineConfig()
    recovery: RecoveryConfig = RecoveryConfig()

    def setup_logging(self) -> None:
        """Configure stdlib logging at ``log_level``."""
        level = getattr(logging, self.log_level.upper(), logging.INFO)
        logging.basicConfig(
            level=level,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )


def load_config(path: Optional[str] = None) -> StepflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to STEPFLOW_CONFIG env
            variable or 'stepflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("STEPFLOW_CONFIG", "stepflow.yaml")
    if os.path.exists(config_path):
        try:
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
            config = StepflowConfig(**data)
        except (yaml.YAMLError, ValidationError, TypeError) as e:
            raise ConfigurationError(
                f"Invalid configuration in {config_path}: {e}",
                details={"path": config_path},
            ) from e
    else:
        config = StepflowConfig()

    env_db_url = os.getenv("STEPFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_level = os.getenv("STEPFLOW_LOG_LEVEL")
    if env_level:
        config.log_level = env_level
    return config
