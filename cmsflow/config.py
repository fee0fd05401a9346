from __future__ import annotations

import logging
import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from .constants import DEFAULT_MAX_SUBPROCESS_DEPTH, DEFAULT_TIMEOUT_SECONDS


class EngineConfig(BaseModel):
    """Runtime knobs for the instance runner."""

    max_subprocess_depth: int = DEFAULT_MAX_SUBPROCESS_DEPTH
    default_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    default_on_dead_end: Literal["complete", "fail"] = "complete"


class CmsFlowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    log_level: str = "INFO"
    engine: EngineConfig = EngineConfig()


def load_config(path: Optional[str] = None) -> CmsFlowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to CMSFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("CMSFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = CmsFlowConfig(**data)
    else:
        config = CmsFlowConfig()

    env_db_url = os.getenv("CMSFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config


def configure_logging(config: CmsFlowConfig) -> None:
    """Apply ``config.log_level`` to the root logger."""
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
