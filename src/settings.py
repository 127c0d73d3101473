"""Centralized settings for slotswitch.

Two layers, both loaded with pydantic-settings:

- ``Settings``: tool-wide knobs from ``SLOTSWITCH_*`` environment variables.
- ``EnvironmentSettings``: one target environment, read only from its
  ``configs/<environment>.env`` file and frozen into ``EnvironmentConfig``.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from src.deployment.config import DeploymentConfig, EnvironmentConfig
from src.deployment.exceptions import ConfigError

MAX_PORT = 65535


class Settings(BaseSettings):
    """Tool settings loaded from environment variables."""

    config_dir: str = "configs"
    owner: str = ""
    command_timeout: float = 600.0

    model_config = {
        "env_prefix": "SLOTSWITCH_",
        "env_file": ".env",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton."""
    return Settings()


class EnvironmentSettings(BaseSettings):
    """Keys of a ``configs/<environment>.env`` file."""

    target_server: str = Field(min_length=1)
    control_user: str = Field(min_length=1)
    slot_name: str = Field(min_length=1)
    production_port: int = Field(gt=0, le=MAX_PORT)
    container_port: int = Field(gt=0, le=MAX_PORT)

    image_repository: str = ""
    app_root: str = ""
    backup_dir: str = ""
    state_dir: str = ""
    reports_dir: str = "/tmp"
    container_engine: str = "podman"
    health_path: str = "/health"
    metrics_path: str = "/metrics"
    probe_host: str = ""

    model_config = SettingsConfigDict(extra="ignore", case_sensitive=False)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # The environment file is the single source of truth for a target.
        return init_settings, dotenv_settings


def config_path(environment: str, config_dir: Optional[str] = None) -> Path:
    return Path(config_dir or get_settings().config_dir) / f"{environment}.env"


def load_environment(
    environment: str,
    config_dir: Optional[str] = None,
    deploy_config: Optional[DeploymentConfig] = None,
) -> EnvironmentConfig:
    """Read, validate and freeze one environment's configuration.

    Raises:
        ConfigError: the file is missing, a required key is missing or
            empty, or a port is out of range.
    """
    path = config_path(environment, config_dir)
    if not path.is_file():
        raise ConfigError(f"Configuration file not found: {path}")

    try:
        settings = EnvironmentSettings(_env_file=path)
    except ValidationError as exc:
        missing = sorted({str(err["loc"][0]).upper() for err in exc.errors() if err["loc"]})
        raise ConfigError(
            f"Invalid configuration in {path}: {', '.join(missing)}", missing=missing
        ) from exc

    offset = (deploy_config or DeploymentConfig()).temp_port_offset
    if settings.production_port + offset > MAX_PORT:
        raise ConfigError(
            f"PRODUCTION_PORT {settings.production_port} leaves no room for the "
            f"temporary port (+{offset})",
            missing=["PRODUCTION_PORT"],
        )

    return EnvironmentConfig(
        environment=environment,
        env_file=str(path),
        **settings.model_dump(),
    )
