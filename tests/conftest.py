"""Pytest fixtures for deployctl tests."""

import asyncio
import logging
import os
from collections.abc import Callable
from typing import Generator

import pytest
from click.testing import CliRunner

from deployctl.config import DeployCtlConfig, GlobalConfig, PipelineConfig
from deployctl.core.context import DeployCtlContext
from deployctl.core.exceptions import HostUnreachableError
from deployctl.core.output import OutputFormat
from deployctl.pipeline.agent import HostAgent
from deployctl.pipeline.hooks import HostTransport, ProcessOutput
from deployctl.pipeline.models import ArtifactReference, Hook, HookScript
from deployctl.pipeline.state import DeploymentState


class FakeTransport(HostTransport):
    """In-memory transport that records calls and returns scripted exit codes.

    ``lost_at`` names a stage whose hook starts and then loses the connection.
    """

    def __init__(
        self,
        host_id: str,
        journal: list[tuple[str, str, str]],
        exit_codes: dict[str, int] | None = None,
        delays: dict[str, float] | None = None,
        reachable: bool = True,
        on_execute: Callable[[str, str], None] | None = None,
        lost_at: str | None = None,
    ):
        self.host_id = host_id
        self.journal = journal
        self.exit_codes = exit_codes or {}
        self.delays = delays or {}
        self.reachable = reachable
        self.on_execute = on_execute
        self.lost_at = lost_at
        self.calls: list[tuple[str, dict[str, str]]] = []

    @property
    def description(self) -> str:
        return f"fake:{self.host_id}"

    async def execute(self, command: str, env: dict[str, str]) -> ProcessOutput:
        stage = env["LIFECYCLE_EVENT"]
        self.calls.append((stage, dict(env)))
        self.journal.append(("start", self.host_id, stage))
        if self.on_execute:
            self.on_execute(self.host_id, stage)
        await asyncio.sleep(self.delays.get(stage, 0))
        if stage == self.lost_at:
            raise HostUnreachableError(f"connection to {self.host_id} closed", host=self.host_id)
        self.journal.append(("end", self.host_id, stage))
        return ProcessOutput(exit_code=self.exit_codes.get(stage, 0), output=f"{command} on {self.host_id}")

    async def probe(self, timeout: float) -> bool:
        return self.reachable


class Fleet:
    """A set of fake hosts sharing one execution journal."""

    def __init__(self) -> None:
        self.journal: list[tuple[str, str, str]] = []
        self.transports: dict[str, FakeTransport] = {}

    def add(self, host_id: str, **kwargs) -> HostAgent:
        transport = FakeTransport(host_id, self.journal, **kwargs)
        self.transports[host_id] = transport
        return HostAgent(host_id, transport=transport)

    def inventory(self, hosts: dict[str, dict] | list[str]) -> dict[str, HostAgent]:
        if isinstance(hosts, list):
            hosts = {h: {} for h in hosts}
        return {host_id: self.add(host_id, **kwargs) for host_id, kwargs in hosts.items()}

    def stages_run(self, host_id: str) -> list[str]:
        return [stage for stage, _ in self.transports[host_id].calls]


@pytest.fixture
def cli_runner() -> CliRunner:
    """Create a Click CLI runner."""
    return CliRunner()


@pytest.fixture
def fleet() -> Fleet:
    return Fleet()


@pytest.fixture
def state(tmp_path) -> DeploymentState:
    return DeploymentState(tmp_path / "deployments")


@pytest.fixture
def settings() -> PipelineConfig:
    return PipelineConfig(default_stage_timeout=5.0, probe_timeout=1.0)


@pytest.fixture
def artifact() -> ArtifactReference:
    return ArtifactReference(
        location="s3://builds/web/app-1.4.2.tar.gz",
        version="1.4.2",
        checksum="sha256:" + "ab" * 32,
    )


@pytest.fixture
def hook_script() -> HookScript:
    return HookScript(
        name="web",
        hooks=(
            Hook("install", "./install.sh"),
            Hook("start", "./start.sh"),
            Hook("validate", "./validate.sh"),
        ),
        rollback=(
            Hook("stop", "./stop.sh"),
            Hook("uninstall", "./uninstall.sh"),
        ),
    )


@pytest.fixture
def mock_config(tmp_path) -> DeployCtlConfig:
    """Create a configuration pointing at a temporary state directory."""
    return DeployCtlConfig(
        global_settings=GlobalConfig(confirm_destructive=False),
        pipeline=PipelineConfig(state_dir=str(tmp_path / "state")),
    )


@pytest.fixture
def mock_context(mock_config: DeployCtlConfig) -> DeployCtlContext:
    """Create a mock deployctl context."""
    return DeployCtlContext(
        config=mock_config,
        output_format=OutputFormat.TABLE,
        verbose=0,
        quiet=False,
        color=False,
    )


@pytest.fixture(autouse=True)
def clean_env() -> Generator[None, None, None]:
    """Clean environment variables before each test."""
    env_vars = [
        "DEPLOYCTL_STATE_DIR",
        "DEPLOYCTL_HALT_POLICY",
        "DEPLOYCTL_CONFIG",
    ]

    original = {k: os.environ.get(k) for k in env_vars}

    for k in env_vars:
        os.environ.pop(k, None)

    yield

    for k, v in original.items():
        if v is not None:
            os.environ[k] = v
        else:
            os.environ.pop(k, None)


@pytest.fixture(autouse=True)
def reset_logging() -> Generator[None, None, None]:
    """Drop handlers installed by CLI invocations bound to closed streams."""
    yield
    logger = logging.getLogger("deployctl")
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
    logger.propagate = True
