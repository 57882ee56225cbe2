"""
Configuration loading and validation.

Loads sync configuration from a YAML file. Environment variables override the
API URL and the Fluidkeys directory so a scheduled job can be pointed at a
different installation without editing the file.
"""

from __future__ import annotations

import os
from datetime import timedelta
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field

DEFAULT_CONFIG_PATH = "~/.config/fluidkeys/sync.yaml"


class ApiConfig(BaseModel):
    url: str = "https://api.fluidkeys.com/v1/"
    verify_tls: bool = True
    request_timeout_seconds: int = 30

    @property
    def resolved_url(self) -> str:
        return os.environ.get("FLUIDKEYS_API_URL") or self.url


class HomeConfig(BaseModel):
    fluidkeys_dir: str = "~/.config/fluidkeys"

    @property
    def path(self) -> Path:
        return Path(os.environ.get("FLUIDKEYS_DIR") or self.fluidkeys_dir).expanduser()


class GpgConfig(BaseModel):
    binary: str = "gpg"
    homedir: str | None = None


class SyncConfig(BaseModel):
    fetch_interval_hours: int = 24
    request_expiry_days: int = 7

    @property
    def fetch_interval(self) -> timedelta:
        return timedelta(hours=self.fetch_interval_hours)

    @property
    def request_expiry(self) -> timedelta:
        return timedelta(days=self.request_expiry_days)


class LoggingConfig(BaseModel):
    level: str = "info"
    format: Literal["json", "text"] = "text"


class MetricsConfig(BaseModel):
    textfile: str | None = None


class FluidkeysConfig(BaseModel):
    api: ApiConfig = Field(default_factory=ApiConfig)
    home: HomeConfig = Field(default_factory=HomeConfig)
    gpg: GpgConfig = Field(default_factory=GpgConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)


def load_config(path: str | Path) -> FluidkeysConfig:
    """Load and validate sync configuration from a YAML file."""
    path = Path(path).expanduser()
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    return FluidkeysConfig.model_validate(raw)
