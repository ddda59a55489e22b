# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Daemon-wide settings for autofwd, loaded from ~/.config/autofwd/config.yml."""

import logging
import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

# TCP_LISTEN in the kernel's socket table
TCP_LISTEN = 0x0A

DEFAULT_MANAGER_PORT = 19876
DEFAULT_CONTROL_PATH = "/tmp/ssh_mux_%h_%p_%r"
DEFAULT_DOCKER_LABEL = "auto.port.forwarding.enabled"

# Hostname containers use to reach the daemon that provisioned them
DOCKER_HOST_GATEWAY = "host.docker.internal"


class SettingsModel(BaseModel):
    """Schema for config.yml. Every key is optional."""

    manager_port: int = Field(default=DEFAULT_MANAGER_PORT, ge=1, le=65535)
    bind_host: str = "127.0.0.1"
    control_path: str = DEFAULT_CONTROL_PATH
    docker_label: str = DEFAULT_DOCKER_LABEL
    poll_interval: float = Field(default=1.0, gt=0)
    docker_poll_interval: float = Field(default=1.0, gt=0)
    container_max_port: int = Field(default=20000, ge=1, le=65535)
    ssh_command: str = "ssh"
    docker_command: str = "docker"
    agent_command: str = "autofwd"


def config_file() -> Path:
    """AUTOFWD_CONFIG, or ~/.config/autofwd/config.yml"""
    env_path = os.environ.get("AUTOFWD_CONFIG")
    if env_path:
        return Path(env_path)
    return Path.home() / ".config" / "autofwd" / "config.yml"


class Settings:
    """Manages autofwd configuration from config.yml."""

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = config_path or config_file()
        self.model = self._load()

    def _load(self) -> SettingsModel:
        if not self.config_path.exists():
            return SettingsModel()

        try:
            with open(self.config_path) as f:
                raw_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Failed to load config from {self.config_path}: {e}")
            return SettingsModel()

        if not isinstance(raw_config, dict):
            logger.warning(f"Ignoring {self.config_path}: expected a mapping")
            return SettingsModel()

        try:
            return SettingsModel.model_validate(raw_config)
        except ValidationError as e:
            logger.warning(f"Config validation errors: {e}")
            return SettingsModel()

    def manager_url(self, host: str = "localhost", port: Optional[int] = None) -> str:
        """URL of the forwarding server as seen from `host`."""
        return f"http://{host}:{port or self.model.manager_port}"

    def get(self, key: str, default: Any = None) -> Any:
        return getattr(self.model, key, default)

    def __getattr__(self, name: str) -> Any:
        # Only reached for names not set on the instance
        model = self.__dict__.get("model")
        if model is not None and name in SettingsModel.model_fields:
            return getattr(model, name)
        raise AttributeError(name)


# Singleton instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the process-wide settings."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next get_settings() reloads the file."""
    global _settings
    _settings = None
