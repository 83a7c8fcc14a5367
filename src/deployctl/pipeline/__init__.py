"""Deployment pipeline execution engine."""

from deployctl.pipeline.models import (
    ArtifactReference,
    Deployment,
    DeploymentStatus,
    FaultKind,
    HaltPolicy,
    Hook,
    HookScript,
    HostOutcome,
    HostStatus,
    StageResult,
)
from deployctl.pipeline.agent import HostAgent
from deployctl.pipeline.controller import DeploymentController
from deployctl.pipeline.hooks import HookRunner, LocalTransport, SSHTransport
from deployctl.pipeline.stage import StageExecutor
from deployctl.pipeline.state import DeploymentState

__all__ = [
    "ArtifactReference",
    "Deployment",
    "DeploymentController",
    "DeploymentState",
    "DeploymentStatus",
    "FaultKind",
    "HaltPolicy",
    "Hook",
    "HookRunner",
    "HookScript",
    "HostAgent",
    "HostOutcome",
    "HostStatus",
    "LocalTransport",
    "SSHTransport",
    "StageExecutor",
    "StageResult",
]
