from __future__ import annotations

import os
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_ALLOWED_EXTENSIONS,
    DEFAULT_PREPARE_DAYS,
    DEFAULT_REVIEW_DAYS,
    DEFAULT_SWEEP_INTERVAL_SECONDS,
    DEFAULT_UPLOAD_DAYS,
)


class SchedulerConfig(BaseModel):
    """Settings for the periodic activation sweep."""

    interval_seconds: float = Field(default=DEFAULT_SWEEP_INTERVAL_SECONDS, gt=0)


class DeadlineConfig(BaseModel):
    """Soft due dates, in days after task creation, per human stage."""

    upload_days: int = Field(default=DEFAULT_UPLOAD_DAYS, ge=0)
    prepare_days: int = Field(default=DEFAULT_PREPARE_DAYS, ge=0)
    review_days: int = Field(default=DEFAULT_REVIEW_DAYS, ge=0)


class UploadConfig(BaseModel):
    """File checks applied at the boundary before a path reaches the core."""

    allowed_extensions: List[str] = Field(
        default_factory=lambda: list(DEFAULT_ALLOWED_EXTENSIONS)
    )


class DocReviewConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    log_level: str = "INFO"
    scheduler: SchedulerConfig = SchedulerConfig()
    deadlines: DeadlineConfig = DeadlineConfig()
    uploads: UploadConfig = UploadConfig()


def load_config(path: Optional[str] = None) -> DocReviewConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to DOCREVIEW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("DOCREVIEW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = DocReviewConfig(**data)
    else:
        config = DocReviewConfig()

    env_db_url = os.getenv("DOCREVIEW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
