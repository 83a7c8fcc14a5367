"""Deployment pipeline data models."""

import os
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from urllib.parse import urlparse

from deployctl.core.exceptions import DeploymentError, ValidationError


# Reserved exit codes for faults synthesized by the engine. Real processes
# never report negative codes, so these cannot collide with hook exits.
EXIT_TIMEOUT = -1
EXIT_UNREACHABLE = -2
EXIT_EXECUTION_ERROR = -3

CHECKSUM_LENGTHS = {"md5": 32, "sha1": 40, "sha256": 64, "sha512": 128}
_CHECKSUM_RE = re.compile(r"^(?P<algo>[a-z0-9]+):(?P<digest>[0-9a-fA-F]+)$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _format_time(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class DeploymentStatus(str, Enum):
    """Deployment status."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class HostStatus(str, Enum):
    """Outcome of one host within a deployment."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class HaltPolicy(str, Enum):
    """What a single host failure stops."""

    PER_HOST = "per-host"
    ALL_OR_NOTHING = "all-or-nothing"


class FaultKind(str, Enum):
    """Classification of a failed stage result."""

    NONE = "none"
    SCRIPT_FAILURE = "script_failure"
    UNREACHABLE = "unreachable"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class ArtifactReference:
    """Opaque pointer to a previously built, versioned package."""

    location: str
    version: str
    checksum: str | None = None

    def resolve(self) -> dict[str, str]:
        """Validate the reference and return the hook environment for it.

        Raises:
            ValidationError: If the reference cannot be resolved
        """
        location = (self.location or "").strip()
        if not location:
            raise ValidationError("Artifact location is empty")

        parsed = urlparse(location)
        # single-letter schemes are Windows drive letters, not URIs
        if len(parsed.scheme) < 2 and not os.path.isabs(location):
            raise ValidationError(
                "Artifact location must be a URI or an absolute path",
                details={"location": location},
            )

        if not (self.version or "").strip():
            raise ValidationError("Artifact version is empty", details={"location": location})

        if self.checksum:
            match = _CHECKSUM_RE.match(self.checksum)
            if not match or CHECKSUM_LENGTHS.get(match.group("algo")) != len(match.group("digest")):
                raise ValidationError(
                    "Artifact checksum must look like '<md5|sha1|sha256|sha512>:<hex digest>'",
                    details={"checksum": self.checksum},
                )

        return {
            "ARTIFACT_LOCATION": location,
            "ARTIFACT_VERSION": self.version.strip(),
            "ARTIFACT_CHECKSUM": self.checksum or "",
        }

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "location": self.location,
            "version": self.version,
            "checksum": self.checksum,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ArtifactReference":
        """Create from dictionary."""
        return cls(
            location=data.get("location", ""),
            version=data.get("version", ""),
            checksum=data.get("checksum"),
        )


@dataclass(frozen=True)
class Hook:
    """Script bound to one lifecycle stage."""

    stage: str
    command: str
    timeout: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"stage": self.stage, "command": self.command, "timeout": self.timeout}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Hook":
        return cls(stage=data["stage"], command=data["command"], timeout=data.get("timeout"))


@dataclass(frozen=True)
class HookScript:
    """Ordered lifecycle hooks for one deployment type.

    ``hooks`` run forward during a deployment, ``rollback`` runs in its own
    declared order when a failed deployment is rolled back.
    """

    name: str
    hooks: tuple[Hook, ...]
    rollback: tuple[Hook, ...] = ()

    @property
    def stages(self) -> list[str]:
        """Stage names in execution order."""
        return [hook.stage for hook in self.hooks]

    def hook_for(self, stage: str) -> Hook:
        for hook in self.hooks:
            if hook.stage == stage:
                return hook
        raise KeyError(stage)

    def validate(self) -> None:
        """Check the script can drive a deployment.

        Raises:
            ValidationError: If stages are missing, duplicated or empty
        """
        if not self.hooks:
            raise ValidationError(f"Hook script '{self.name}' defines no stages")

        for group, hooks in (("stage", self.hooks), ("rollback stage", self.rollback)):
            seen: set[str] = set()
            for hook in hooks:
                if not hook.stage:
                    raise ValidationError(f"Hook script '{self.name}' has an unnamed {group}")
                if hook.stage in seen:
                    raise ValidationError(f"Duplicate {group} '{hook.stage}' in '{self.name}'")
                if not hook.command.strip():
                    raise ValidationError(f"{group.capitalize()} '{hook.stage}' has no command")
                if hook.timeout is not None and hook.timeout <= 0:
                    raise ValidationError(f"{group.capitalize()} '{hook.stage}' has a non-positive timeout")
                seen.add(hook.stage)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "hooks": [h.to_dict() for h in self.hooks],
            "rollback": [h.to_dict() for h in self.rollback],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HookScript":
        """Create from dictionary."""
        return cls(
            name=data.get("name", ""),
            hooks=tuple(Hook.from_dict(h) for h in data.get("hooks", [])),
            rollback=tuple(Hook.from_dict(h) for h in data.get("rollback", [])),
        )


@dataclass(frozen=True)
class StageResult:
    """Result of one hook run on one host. Immutable once recorded.

    ``dispatched`` is False only for results synthesized when a host failed
    its reachability check and the hook was never sent to it.
    """

    stage_name: str
    exit_code: int
    started_at: datetime
    finished_at: datetime
    output: str = ""
    fault: FaultKind = FaultKind.NONE
    dispatched: bool = True

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "stage_name": self.stage_name,
            "exit_code": self.exit_code,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "output": self.output,
            "fault": self.fault.value,
            "dispatched": self.dispatched,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StageResult":
        """Create from dictionary."""
        return cls(
            stage_name=data["stage_name"],
            exit_code=data["exit_code"],
            started_at=datetime.fromisoformat(data["started_at"]),
            finished_at=datetime.fromisoformat(data["finished_at"]),
            output=data.get("output", ""),
            fault=FaultKind(data.get("fault", "none")),
            dispatched=data.get("dispatched", True),
        )


@dataclass
class HostOutcome:
    """Progress of a single host through the stage sequence."""

    host_id: str
    current_stage: str | None = None
    stage_results: list[StageResult] = field(default_factory=list)
    outcome: HostStatus = HostStatus.RUNNING
    failure_reason: str | None = None
    rollback_results: list[StageResult] = field(default_factory=list)

    @property
    def started(self) -> bool:
        """Whether any stage ran on this host."""
        return bool(self.stage_results)

    @property
    def next_stage_index(self) -> int:
        return len(self.stage_results)

    def record(self, result: StageResult, stages: list[str]) -> None:
        """Append a stage result, keeping results ordered by stage position."""
        position = len(self.stage_results)
        if position >= len(stages) or stages[position] != result.stage_name:
            raise DeploymentError(
                f"Out-of-order result '{result.stage_name}' for host {self.host_id}",
                details={"expected": stages[position] if position < len(stages) else None},
            )
        self.stage_results.append(result)
        self.current_stage = result.stage_name

    def fail(self, reason: str) -> None:
        self.outcome = HostStatus.FAILED
        self.failure_reason = reason

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "host_id": self.host_id,
            "current_stage": self.current_stage,
            "outcome": self.outcome.value,
            "failure_reason": self.failure_reason,
            "stage_results": [r.to_dict() for r in self.stage_results],
            "rollback_results": [r.to_dict() for r in self.rollback_results],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HostOutcome":
        """Create from dictionary."""
        return cls(
            host_id=data["host_id"],
            current_stage=data.get("current_stage"),
            stage_results=[StageResult.from_dict(r) for r in data.get("stage_results", [])],
            outcome=HostStatus(data.get("outcome", "running")),
            failure_reason=data.get("failure_reason"),
            rollback_results=[StageResult.from_dict(r) for r in data.get("rollback_results", [])],
        )


@dataclass
class DeploymentEvent:
    """Deployment event for audit trail."""

    timestamp: datetime
    event_type: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type,
            "message": self.message,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeploymentEvent":
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            event_type=data["event_type"],
            message=data.get("message", ""),
            details=data.get("details", {}),
        )


@dataclass
class Deployment:
    """Deployment record. Mutated only by the controller."""

    artifact: ArtifactReference
    hook_script: HookScript
    target_hosts: list[str] = field(default_factory=list)
    halt_policy: HaltPolicy = HaltPolicy.PER_HOST

    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])

    # Status
    status: DeploymentStatus = DeploymentStatus.PENDING
    per_host_status: dict[str, HostOutcome] = field(default_factory=dict)
    message: str = ""
    abort_requested: bool = False

    # Timing
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    # History
    events: list[DeploymentEvent] = field(default_factory=list)

    def __post_init__(self) -> None:
        for host_id in self.target_hosts:
            self.per_host_status.setdefault(host_id, HostOutcome(host_id=host_id))

    @property
    def stages(self) -> list[str]:
        return self.hook_script.stages

    def add_event(self, event_type: str, message: str, details: dict[str, Any] | None = None) -> None:
        """Add an event to the deployment history."""
        self.events.append(
            DeploymentEvent(
                timestamp=utcnow(),
                event_type=event_type,
                message=message,
                details=details or {},
            )
        )

    def hosts_with(self, outcome: HostStatus) -> list[str]:
        return [h for h in self.target_hosts if self.per_host_status[h].outcome == outcome]

    @property
    def duration_seconds(self) -> float | None:
        """Get deployment duration in seconds."""
        if self.started_at:
            end = self.completed_at or utcnow()
            return (end - self.started_at).total_seconds()
        return None

    @property
    def is_active(self) -> bool:
        """Check if deployment is still moving through the pipeline."""
        return self.status in (DeploymentStatus.PENDING, DeploymentStatus.IN_PROGRESS)

    @property
    def is_complete(self) -> bool:
        """Check if deployment reached a terminal status."""
        return not self.is_active

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "artifact": self.artifact.to_dict(),
            "hook_script": self.hook_script.to_dict(),
            "target_hosts": list(self.target_hosts),
            "stages": self.stages,
            "halt_policy": self.halt_policy.value,
            "status": self.status.value,
            "message": self.message,
            "abort_requested": self.abort_requested,
            "per_host_status": {h: o.to_dict() for h, o in self.per_host_status.items()},
            "created_at": self.created_at.isoformat(),
            "started_at": _format_time(self.started_at),
            "completed_at": _format_time(self.completed_at),
            "events": [e.to_dict() for e in self.events],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Deployment":
        """Create from dictionary."""
        deployment = cls(
            id=data["id"],
            artifact=ArtifactReference.from_dict(data.get("artifact", {})),
            hook_script=HookScript.from_dict(data.get("hook_script", {})),
            target_hosts=list(data.get("target_hosts", [])),
            halt_policy=HaltPolicy(data.get("halt_policy", "per-host")),
            status=DeploymentStatus(data.get("status", "pending")),
            per_host_status={
                h: HostOutcome.from_dict(o) for h, o in data.get("per_host_status", {}).items()
            },
            message=data.get("message", ""),
            abort_requested=data.get("abort_requested", False),
            events=[DeploymentEvent.from_dict(e) for e in data.get("events", [])],
        )

        if data.get("created_at"):
            deployment.created_at = datetime.fromisoformat(data["created_at"])
        deployment.started_at = _parse_time(data.get("started_at"))
        deployment.completed_at = _parse_time(data.get("completed_at"))

        return deployment
