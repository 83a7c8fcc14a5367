"""Configuration management for deployctl using Pydantic."""

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator

from deployctl.core.exceptions import ConfigError
from deployctl.core.output import OutputFormat
from deployctl.core.logging import LogLevel


HALT_POLICIES = ("per-host", "all-or-nothing")


class PipelineConfig(BaseModel):
    """Pipeline execution engine settings."""

    state_dir: str | None = None
    default_stage_timeout: float = 300.0  # seconds, per stage-host pair
    probe_timeout: float = 10.0  # seconds
    output_limit: int = 4096  # characters of hook output kept per result
    halt_policy: str = "per-host"
    max_concurrent: int | None = None  # hosts dispatched at once, None = all
    ssh_options: list[str] = Field(
        default_factory=lambda: ["-o", "BatchMode=yes", "-o", "StrictHostKeyChecking=accept-new"]
    )

    @field_validator("halt_policy")
    @classmethod
    def validate_halt_policy(cls, v: str) -> str:
        if v not in HALT_POLICIES:
            raise ValueError("halt_policy must be 'per-host' or 'all-or-nothing'")
        return v

    @field_validator("default_stage_timeout", "probe_timeout")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeouts must be positive")
        return v

    @field_validator("output_limit")
    @classmethod
    def validate_output_limit(cls, v: int) -> int:
        if v < 0:
            raise ValueError("output_limit must not be negative")
        return v

    def get_state_dir(self) -> Path:
        """Get state directory from environment or config."""
        state_dir = os.environ.get("DEPLOYCTL_STATE_DIR") or self.state_dir
        if state_dir:
            return Path(state_dir).expanduser()
        return Path.home() / ".deployctl" / "deployments"

    def get_halt_policy(self) -> str:
        """Get halt policy from environment or config."""
        policy = os.environ.get("DEPLOYCTL_HALT_POLICY") or self.halt_policy
        if policy not in HALT_POLICIES:
            raise ConfigError(f"Invalid halt policy: {policy}")
        return policy


class GlobalConfig(BaseModel):
    """CLI presentation settings."""

    output_format: OutputFormat = OutputFormat.TABLE
    color: Literal["auto", "always", "never"] = "auto"
    verbosity: LogLevel = LogLevel.WARNING
    confirm_destructive: bool = True

    @property
    def use_color(self) -> bool:
        return self.color != "never"


class DeployCtlConfig(BaseModel):
    """Root of a deployctl.yaml document."""

    model_config = {"populate_by_name": True}

    version: str = "1"
    global_settings: GlobalConfig = Field(default_factory=GlobalConfig, alias="global")
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Merge override into a copy of base; nested mappings merge key by key."""
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged


class ConfigLoader:
    """Build a DeployCtlConfig from the user, project and explicit YAML files.

    Later sources win: ``~/.deployctl/config.yaml`` is overridden by the
    nearest ``deployctl.yaml`` above the working directory, which is
    overridden by a file passed with ``--config``.
    """

    PROJECT_FILENAMES = ("deployctl.yaml", "deployctl.yml", ".deployctl.yaml", ".deployctl.yml")

    @staticmethod
    def user_config_path() -> Path:
        return Path.home() / ".deployctl" / "config.yaml"

    def project_config_path(self, start: Path | None = None) -> Path | None:
        directory = (start or Path.cwd()).resolve()
        for candidate in (directory, *directory.parents):
            for filename in self.PROJECT_FILENAMES:
                path = candidate / filename
                if path.is_file():
                    return path
        return None

    def sources(self, config_file: str | Path | None = None) -> list[Path]:
        """Config files to merge, lowest priority first."""
        paths = [p for p in (self.user_config_path(), self.project_config_path()) if p and p.is_file()]
        if config_file:
            explicit = Path(config_file)
            if not explicit.is_file():
                raise ConfigError(f"Config file not found: {config_file}")
            if explicit.resolve() not in (p.resolve() for p in paths):
                paths.append(explicit)
        return paths

    def read(self, path: Path) -> dict[str, Any]:
        try:
            document = yaml.safe_load(path.read_text())
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}")
        except OSError as e:
            raise ConfigError(f"Cannot read {path}: {e}")

        if document is None:
            return {}
        if not isinstance(document, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")
        return document

    def load(self, config_file: str | Path | None = None) -> DeployCtlConfig:
        merged: dict[str, Any] = {}
        for path in self.sources(config_file):
            merged = deep_merge(merged, self.read(path))

        try:
            return DeployCtlConfig(**merged)
        except ValueError as e:
            raise ConfigError(f"Invalid configuration: {e}")


def load_config(config_file: str | Path | None = None) -> DeployCtlConfig:
    """Load configuration from the standard locations plus config_file."""
    return ConfigLoader().load(config_file)


def get_default_config() -> DeployCtlConfig:
    """Configuration with every setting at its default."""
    return DeployCtlConfig()
