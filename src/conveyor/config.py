"""Configuration loading for Conveyor.

Reads .conveyor/config.yaml. Every key is optional; a missing file yields
the defaults. Selected values can be overridden from the environment for
deployment.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator

from conveyor.pipeline.models import Duration, parse_duration_seconds

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = ".conveyor"

# Environment variables that override config.yaml
DATABASE_ENV = "CONVEYOR_DATABASE"
PIPELINES_DIR_ENV = "CONVEYOR_PIPELINES_DIR"
NUM_TO_KEEP_ENV = "CONVEYOR_NUM_TO_KEEP"


# ── Config Models ────────────────────────────────────────────────────────────


class RetentionConfig(BaseModel):
    """How many finished runs to keep per pipeline key. None keeps all."""

    num_to_keep: int | None = Field(default=None, ge=1)


class RunnerConfig(BaseModel):
    """Settings for the default shell Task Runner."""

    shell: str = "/bin/sh"
    inherit_environment: bool = True
    kill_grace_seconds: float = Field(default=5.0, gt=0)
    max_parallel_tasks: int | None = Field(default=None, ge=1)


class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8080


class ConveyorConfig(BaseModel):
    """Top-level configuration."""

    database: str = ".conveyor/history.db"
    pipelines_dir: str = "pipelines"
    default_run_timeout: Duration | None = None
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    runner: RunnerConfig = Field(default_factory=RunnerConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @field_validator("default_run_timeout")
    @classmethod
    def _validate_timeout(cls, v: Duration | None) -> Duration | None:
        if v is not None:
            parse_duration_seconds(v)
        return v

    def default_run_timeout_seconds(self) -> float | None:
        if self.default_run_timeout is None:
            return None
        return parse_duration_seconds(self.default_run_timeout)


# ── Loaders ──────────────────────────────────────────────────────────────────


def load_config(config_dir: Path | None = None) -> ConveyorConfig:
    """Load configuration from a .conveyor/ directory.

    Args:
        config_dir: Path to the .conveyor/ directory (default: ./.conveyor).

    Returns:
        Validated ConveyorConfig.

    Raises:
        ValueError: If config validation fails.
    """
    config_dir = config_dir or Path(DEFAULT_CONFIG_DIR)
    config_path = config_dir / "config.yaml"

    raw: dict = {}
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
    else:
        logger.debug("No config file at %s; using defaults", config_path)

    config = ConveyorConfig(**raw)

    database = os.environ.get(DATABASE_ENV)
    if database:
        config.database = database

    pipelines_dir = os.environ.get(PIPELINES_DIR_ENV)
    if pipelines_dir:
        config.pipelines_dir = pipelines_dir

    num_to_keep = os.environ.get(NUM_TO_KEEP_ENV)
    if num_to_keep:
        try:
            config.retention = RetentionConfig(num_to_keep=int(num_to_keep))
        except ValueError as exc:
            msg = f"{NUM_TO_KEEP_ENV} must be a positive integer, got {num_to_keep!r}"
            raise ValueError(msg) from exc

    logger.info(
        "Loaded Conveyor config: database=%s pipelines_dir=%s",
        config.database,
        config.pipelines_dir,
    )
    return config
