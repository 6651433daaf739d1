from __future__ import annotations

import os
from typing import Optional

import yaml
from pydantic import BaseModel


class NotificationConfig(BaseModel):
    """Settings for approval and status-update notifications."""

    enabled: bool = True
    base_url: str = "http://localhost:7001"
    sender: str = "portal@company.com"
    sender_name: str = "Internal Portal System"


class PortalflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    log_level: str = "INFO"
    notifications: NotificationConfig = NotificationConfig()


def load_config(path: Optional[str] = None) -> PortalflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to PORTALFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("PORTALFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = PortalflowConfig(**data)
    else:
        config = PortalflowConfig()

    env_db_url = os.getenv("PORTALFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
