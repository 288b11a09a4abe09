from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel

ANTFARM_HOME = Path("~/.openclaw/antfarm")


class AntfarmConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = f"sqlite://{ANTFARM_HOME / 'antfarm.db'}"
    workflows_dir: str = str(ANTFARM_HOME / "workflows")
    log_level: str = "WARNING"

    @property
    def workflows_path(self) -> Path:
        return Path(self.workflows_dir).expanduser()


def load_config(path: Optional[str] = None) -> AntfarmConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to ANTFARM_CONFIG env
            variable or 'antfarm.yaml' in the current directory.
    """

    config_path = path or os.getenv("ANTFARM_CONFIG", "antfarm.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = AntfarmConfig(**data)
    else:
        config = AntfarmConfig()

    env_db_url = os.getenv("ANTFARM_DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_workflows_dir = os.getenv("ANTFARM_WORKFLOWS_DIR")
    if env_workflows_dir:
        config.workflows_dir = env_workflows_dir
    env_log_level = os.getenv("ANTFARM_LOG_LEVEL")
    if env_log_level:
        config.log_level = env_log_level
    return config
