"""
Configuration management for the appliance repository.

Settings come from a YAML file with ``APPLIANCE_REPO_*`` environment
overrides (nested fields use ``__``, e.g. ``APPLIANCE_REPO_LOGGING__LEVEL``).
"""

from __future__ import annotations

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from appliance_repo.exceptions import ConfigurationError

CONFIG_ENV_VAR = "APPLIANCE_REPO_CONFIG"
CONFIG_SEARCH_PATHS = (
    "appliance-repo.yaml",
    "appliance-repo.yml",
    "config/appliance-repo.yaml",
    ".appliance-repo.yaml",
)
LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


class RepositoryConfig(BaseModel):
    """Where and how the file backend keeps the repository."""

    directory: str = Field(
        default_factory=lambda: str(Path.home() / "ApplianceRepository"),
        description="Directory holding the repository file and payload files",
    )
    filename: str = Field(default="repository.json", description="Repository document file name")
    keep_last_version: bool = Field(
        default=True,
        description="Keep the previously committed document as lastVersion_<filename>",
    )
    initial_max_versions_to_store: int = Field(
        default=0,
        ge=0,
        description="Version cap applied at startup when the store reports none (0 = leave unset)",
    )

    @field_validator("filename")
    @classmethod
    def _filename_is_plain(cls, value: str) -> str:
        if not value or Path(value).name != value:
            msg = "filename must be a plain file name"
            raise ValueError(msg)
        return value


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", description="Minimum log level")
    format: str = Field(default="json", description="Console format (json, plain)")
    file: str | None = Field(default=None, description="JSONL log file path (None for logs/appliance-repo.jsonl)")

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.upper()
        if level not in LOG_LEVELS:
            msg = f"level must be one of {', '.join(sorted(LOG_LEVELS))}"
            raise ValueError(msg)
        return level

    @field_validator("format")
    @classmethod
    def _known_format(cls, value: str) -> str:
        if value.lower() not in ("json", "plain"):
            msg = "format must be json or plain"
            raise ValueError(msg)
        return value.lower()


class Config(BaseSettings):
    """Process configuration: repository store plus logging."""

    model_config = SettingsConfigDict(
        env_prefix="APPLIANCE_REPO_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    repository: RepositoryConfig = Field(default_factory=RepositoryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_yaml(cls, path: str | Path) -> Config:
        """
        Load configuration from a YAML file; a missing file yields defaults.

        Raises:
            ConfigurationError: If the file is not valid YAML or a value is invalid.
        """
        path = Path(path)
        if not path.exists():
            return cls()

        try:
            with path.open() as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError.validation_failed(str(path), None, f"invalid YAML: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError.validation_failed(str(path), type(data).__name__, "expected a mapping")

        try:
            return cls(**data)
        except ValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(part) for part in first["loc"])
            raise ConfigurationError.validation_failed(field, first.get("input"), first["msg"]) from e

    @classmethod
    def load(cls, config_path: str | None = None) -> Config:
        """
        Load configuration from the first file found, in order:

        1. ``config_path``
        2. ``$APPLIANCE_REPO_CONFIG``
        3. ``CONFIG_SEARCH_PATHS`` in the working directory

        Defaults apply when none exists.

        Raises:
            ConfigurationError: If ``config_path`` is given but missing.
        """
        if config_path is not None and not Path(config_path).exists():
            raise ConfigurationError.missing_file(config_path)

        candidates = [config_path, os.getenv(CONFIG_ENV_VAR), *CONFIG_SEARCH_PATHS]
        for candidate in candidates:
            if candidate and Path(candidate).exists():
                return cls.from_yaml(candidate)
        return cls()

    def to_yaml(self, path: str | Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w") as f:
            yaml.safe_dump(self.model_dump(), f, default_flow_style=False)


_config: Config | None = None


def get_config() -> Config:
    """Process-wide configuration, loaded on first use."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    global _config
    _config = config
