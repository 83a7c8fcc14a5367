"""Hook script and host inventory file schemas."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator, model_validator

from deployctl.config import PipelineConfig
from deployctl.core.exceptions import ValidationError
from deployctl.pipeline.agent import HostAgent
from deployctl.pipeline.hooks import HostTransport, LocalTransport, SSHTransport
from deployctl.pipeline.models import Hook, HookScript


class HookSchema(BaseModel):
    """Schema for one lifecycle hook."""

    stage: str
    command: str
    timeout: float | None = None

    @field_validator("stage", "command")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, v: float | None) -> float | None:
        if v is not None and v <= 0:
            raise ValueError("timeout must be positive")
        return v


def _normalize_hooks(value: Any) -> Any:
    """Accept either a list of hooks or an ordered ``stage: command`` mapping."""
    if isinstance(value, dict):
        hooks = []
        for stage, definition in value.items():
            if isinstance(definition, str):
                hooks.append({"stage": stage, "command": definition})
            elif isinstance(definition, dict):
                hooks.append({"stage": stage, **definition})
            else:
                raise ValueError(f"hook '{stage}' must be a command string or a mapping")
        return hooks
    return value


class HookScriptSchema(BaseModel):
    """Schema for a hook script file."""

    name: str = "default"
    hooks: list[HookSchema] = Field(default_factory=list)
    rollback: list[HookSchema] = Field(default_factory=list)

    @field_validator("hooks", "rollback", mode="before")
    @classmethod
    def normalize_hooks(cls, v: Any) -> Any:
        return _normalize_hooks(v)

    @model_validator(mode="after")
    def validate_unique_stages(self) -> "HookScriptSchema":
        for group in (self.hooks, self.rollback):
            stages = [h.stage for h in group]
            duplicates = sorted({s for s in stages if stages.count(s) > 1})
            if duplicates:
                raise ValueError(f"duplicate stages: {', '.join(duplicates)}")
        if not self.hooks:
            raise ValueError("hook script must define at least one stage")
        return self

    def to_hook_script(self) -> HookScript:
        return HookScript(
            name=self.name,
            hooks=tuple(Hook(stage=h.stage, command=h.command, timeout=h.timeout) for h in self.hooks),
            rollback=tuple(Hook(stage=h.stage, command=h.command, timeout=h.timeout) for h in self.rollback),
        )


class HostSchema(BaseModel):
    """Schema for one inventory host."""

    id: str
    transport: Literal["local", "ssh"] = "local"
    address: str | None = None
    user: str | None = None
    port: int | None = None
    workdir: str | None = None
    ssh_options: list[str] | None = None

    @model_validator(mode="after")
    def validate_transport(self) -> "HostSchema":
        if self.transport == "ssh" and not self.address:
            raise ValueError(f"ssh host '{self.id}' requires an address")
        return self

    def to_transport(self, settings: PipelineConfig) -> HostTransport:
        if self.transport == "ssh":
            return SSHTransport(
                address=self.address or self.id,
                user=self.user,
                port=self.port,
                options=list(self.ssh_options if self.ssh_options is not None else settings.ssh_options),
            )
        return LocalTransport(workdir=self.workdir)


class InventorySchema(BaseModel):
    """Schema for a host inventory file."""

    hosts: list[HostSchema] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_unique_ids(self) -> "InventorySchema":
        ids = [h.id for h in self.hosts]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ValueError(f"duplicate host ids: {', '.join(duplicates)}")
        return self

    def build_agents(self, settings: PipelineConfig | None = None) -> dict[str, HostAgent]:
        """Create a HostAgent per inventory host."""
        settings = settings or PipelineConfig()
        return {
            host.id: HostAgent(
                host.id,
                transport=host.to_transport(settings),
                output_limit=settings.output_limit,
                probe_timeout=settings.probe_timeout,
            )
            for host in self.hosts
        }


def _load_yaml(path: str | Path) -> dict[str, Any]:
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ValidationError(f"Invalid YAML in {path}: {e}")
    except OSError as e:
        raise ValidationError(f"Cannot read {path}: {e}")

    if not isinstance(data, dict):
        raise ValidationError(f"{path} must contain a mapping, got {type(data).__name__}")
    return data


def load_hook_script(path: str | Path) -> HookScript:
    """Load and validate a hook script file.

    Raises:
        ValidationError: If the file is unreadable or malformed
    """
    try:
        return HookScriptSchema(**_load_yaml(path)).to_hook_script()
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid hook script {path}: {e}")


def load_inventory(path: str | Path, settings: PipelineConfig | None = None) -> dict[str, HostAgent]:
    """Load a host inventory file into HostAgents.

    Raises:
        ValidationError: If the file is unreadable or malformed
    """
    try:
        inventory = InventorySchema(**_load_yaml(path))
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid inventory {path}: {e}")
    return inventory.build_agents(settings)
