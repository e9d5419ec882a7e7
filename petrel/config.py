"""Petrel configuration management.

Configuration sources (in priority order):
1. Environment variables (PETREL_ prefix)
2. Config file (config.yaml)
3. Defaults
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000


class DatabaseConfig(BaseModel):
    """Database configuration."""

    url: str = "sqlite+aiosqlite:///./petrel.db"
    echo: bool = False


class LoggingConfig(BaseModel):
    """Structured logging configuration."""

    level: str = "INFO"
    json_format: bool = True


class Solo5Config(BaseModel):
    """solo5 tender launcher configuration."""

    # Tender binary, e.g. solo5-hvt or solo5-spt
    tender: str = "solo5-hvt"

    # CPU pinning prefix; "{cpuid}" is substituted. Empty list disables pinning.
    cpu_pin_command: list[str] = Field(default_factory=lambda: ["taskset", "-c", "{cpuid}"])

    # A tender that exits within this window is treated as a failed launch
    startup_grace_seconds: float = 1.0

    # SIGTERM -> SIGKILL escalation window
    stop_timeout_seconds: float = 10.0


class LauncherConfig(BaseModel):
    """Launcher layer configuration."""

    type: Literal["solo5"] = "solo5"
    solo5: Solo5Config = Field(default_factory=Solo5Config)

    # Upper bound for a single launcher start/stop call
    launch_timeout_seconds: float = 30.0


class ImageConfig(BaseModel):
    """Unikernel image store configuration."""

    root_path: str = "/var/lib/petrel/images"


class VolumeConfig(BaseModel):
    """Block volume storage configuration."""

    root_path: str = "/var/lib/petrel/volumes"
    chunk_size: int = 64 * 1024
    default_sector_size: int = 512


class ConsoleConfig(BaseModel):
    """Console ring buffer configuration."""

    capacity: int = 1000


class UpdateConfig(BaseModel):
    """Update / health confirmation configuration."""

    health_timeout_seconds: float = 60.0
    probe_interval_seconds: float = 2.0
    probe_request_timeout_seconds: float = 5.0

    # Open update jobs older than this are abandoned by the supervisor
    stale_job_seconds: int = 900


class QuotaPolicyConfig(BaseModel):
    """Policy applied to tenants without an explicit policy."""

    max_workloads: int = 2
    max_memory: int = 1024
    max_storage: int = 1024
    allowed_cpuids: list[int] = Field(default_factory=lambda: [0])
    allowed_bridges: list[str] = Field(default_factory=lambda: ["service"])


class QuotaConfig(BaseModel):
    """Quota configuration."""

    default_policy: QuotaPolicyConfig = Field(default_factory=QuotaPolicyConfig)


class SupervisorTaskConfig(BaseModel):
    """Supervisor task-specific configuration."""

    enabled: bool = True


class SupervisorConfig(BaseModel):
    """Background supervisor configuration."""

    enabled: bool = True
    run_on_startup: bool = True
    interval_seconds: int = 10

    exited_workload: SupervisorTaskConfig = Field(default_factory=SupervisorTaskConfig)
    stale_update_job: SupervisorTaskConfig = Field(default_factory=SupervisorTaskConfig)
    expired_token: SupervisorTaskConfig = Field(default_factory=SupervisorTaskConfig)


class SecurityConfig(BaseModel):
    """Security configuration."""

    # Allow anonymous access (no authentication required)
    # Development: True (default)
    # Production: False
    allow_anonymous: bool = True

    # Owner allowed to change quota policies
    admin_owner: str = "admin"

    # Default token lifetime
    token_ttl_seconds: int = 7 * 24 * 3600


class Settings(BaseSettings):
    """Petrel application settings."""

    model_config = SettingsConfigDict(
        env_prefix="PETREL_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    server: ServerConfig = Field(default_factory=ServerConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    launcher: LauncherConfig = Field(default_factory=LauncherConfig)
    images: ImageConfig = Field(default_factory=ImageConfig)
    volumes: VolumeConfig = Field(default_factory=VolumeConfig)
    console: ConsoleConfig = Field(default_factory=ConsoleConfig)
    update: UpdateConfig = Field(default_factory=UpdateConfig)
    quota: QuotaConfig = Field(default_factory=QuotaConfig)
    supervisor: SupervisorConfig = Field(default_factory=SupervisorConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # Environment wins over values passed in from the YAML file
        return env_settings, init_settings, dotenv_settings, file_secret_settings


def _load_config_file() -> dict:
    """Load configuration from YAML file if exists.

    Looks for config file in order:
    1. PETREL_CONFIG_FILE environment variable
    2. ./config.yaml
    3. /etc/petrel/config.yaml
    """
    config_paths = [
        os.environ.get("PETREL_CONFIG_FILE"),
        Path("config.yaml"),
        Path("/etc/petrel/config.yaml"),
    ]

    for path in config_paths:
        if path is None:
            continue
        path = Path(path)
        if path.exists():
            with open(path) as f:
                return yaml.safe_load(f) or {}

    return {}


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Configuration is loaded from:
    1. YAML config file (if exists)
    2. Environment variables (override)
    3. Defaults
    """
    file_config = _load_config_file()

    # Environment variables will override via pydantic-settings
    return Settings(**file_config)
