"""Lifecycle hook execution on a single host."""

import asyncio
import os
import re
import shlex
import signal
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from jinja2 import BaseLoader, Environment, StrictUndefined, TemplateError

from deployctl.core.exceptions import HostUnreachableError
from deployctl.core.logging import StructuredLogger
from deployctl.pipeline.models import (
    EXIT_EXECUTION_ERROR,
    EXIT_TIMEOUT,
    EXIT_UNREACHABLE,
    FaultKind,
    StageResult,
    utcnow,
)

logger = StructuredLogger(__name__)

# ssh reports its own connection failures with this status
SSH_CONNECTION_FAILURE = 255


@dataclass
class ProcessOutput:
    """Exit status and combined stdout/stderr of a finished hook process."""

    exit_code: int
    output: str = ""


async def _communicate(proc: asyncio.subprocess.Process, process_group: bool = False) -> bytes:
    """Wait for a process, killing it if the waiting task is cancelled.

    With process_group, the whole group led by proc is killed so children
    holding the output pipe die with it.
    """
    try:
        stdout, _ = await proc.communicate()
    except asyncio.CancelledError:
        if proc.returncode is None:
            try:
                if process_group:
                    os.killpg(proc.pid, signal.SIGKILL)
                else:
                    proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
        raise
    return stdout or b""


class HostTransport(ABC):
    """How commands reach a host."""

    @property
    @abstractmethod
    def description(self) -> str:
        """Human readable target description."""
        pass

    @abstractmethod
    async def execute(self, command: str, env: dict[str, str]) -> ProcessOutput:
        """Run a shell command with extra environment variables.

        Raises:
            HostUnreachableError: If the host could not be contacted
            OSError: If the process could not be started
        """
        pass

    @abstractmethod
    async def probe(self, timeout: float) -> bool:
        """Check the host answers within timeout."""
        pass


@dataclass
class LocalTransport(HostTransport):
    """Run hooks as shell commands on the controller machine."""

    workdir: str | None = None

    @property
    def description(self) -> str:
        return "local"

    async def execute(self, command: str, env: dict[str, str]) -> ProcessOutput:
        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env={**os.environ, **env},
            cwd=self.workdir,
            start_new_session=True,
        )
        stdout = await _communicate(proc, process_group=True)
        return ProcessOutput(
            exit_code=proc.returncode if proc.returncode is not None else EXIT_EXECUTION_ERROR,
            output=stdout.decode("utf-8", errors="replace"),
        )

    async def probe(self, timeout: float) -> bool:
        return True


@dataclass
class SSHTransport(HostTransport):
    """Run hooks through the system ssh client."""

    address: str
    user: str | None = None
    port: int | None = None
    options: list[str] = field(default_factory=list)

    @property
    def description(self) -> str:
        return self.target

    @property
    def target(self) -> str:
        return f"{self.user}@{self.address}" if self.user else self.address

    def build_command(self, remote_command: str, extra_options: list[str] | None = None) -> list[str]:
        """Build the ssh argv for a remote command."""
        argv = ["ssh", *self.options, *(extra_options or [])]
        if self.port:
            argv.extend(["-p", str(self.port)])
        argv.append(self.target)
        argv.append(remote_command)
        return argv

    @staticmethod
    def wrap_remote(command: str, env: dict[str, str]) -> str:
        """Export env inline and run command under a POSIX shell on the remote side."""
        assignments = " ".join(f"{k}={shlex.quote(v)}" for k, v in sorted(env.items()))
        prefix = f"env {assignments} " if assignments else ""
        return f"{prefix}sh -c {shlex.quote(command)}"

    async def execute(self, command: str, env: dict[str, str]) -> ProcessOutput:
        argv = self.build_command(self.wrap_remote(command, env))
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            stdin=asyncio.subprocess.DEVNULL,
        )
        stdout = await _communicate(proc)
        output = stdout.decode("utf-8", errors="replace")

        if proc.returncode == SSH_CONNECTION_FAILURE:
            raise HostUnreachableError(
                f"ssh connection to {self.target} failed",
                host=self.address,
                details={"output": output.strip()[-200:]},
            )

        return ProcessOutput(
            exit_code=proc.returncode if proc.returncode is not None else EXIT_EXECUTION_ERROR,
            output=output,
        )

    async def probe(self, timeout: float) -> bool:
        argv = self.build_command("true", ["-o", f"ConnectTimeout={max(1, int(timeout))}"])
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                stdin=asyncio.subprocess.DEVNULL,
            )
            await asyncio.wait_for(_communicate(proc), timeout=timeout)
        except (OSError, asyncio.TimeoutError):
            return False
        return proc.returncode == 0


def env_key(stage_name: str) -> str:
    """Normalize a stage name for use inside an environment variable name."""
    return re.sub(r"[^A-Za-z0-9]", "_", stage_name).upper()


def stage_env(results: list[StageResult]) -> dict[str, str]:
    """Environment describing the outcome of earlier stages on a host."""
    env: dict[str, str] = {}
    for result in results:
        key = env_key(result.stage_name)
        env[f"STAGE_{key}_EXIT_CODE"] = str(result.exit_code)
        env[f"STAGE_{key}_OUTPUT"] = result.output
    return env


def truncate_output(output: str, limit: int) -> str:
    """Keep the tail of output within limit characters."""
    if len(output) <= limit:
        return output
    if limit <= 0:
        return ""
    dropped = len(output) - limit
    return f"[... {dropped} characters truncated]\n{output[-limit:]}"


class HookRunner:
    """Execute lifecycle scripts through one host's transport.

    Every fault is reported as a StageResult; ``run`` never raises.
    """

    def __init__(self, transport: HostTransport, output_limit: int = 4096):
        self.transport = transport
        self.output_limit = output_limit
        self._jinja = Environment(loader=BaseLoader(), undefined=StrictUndefined)

    def render(self, script: str, env: dict[str, str]) -> str:
        """Render Jinja2 placeholders in a hook command."""
        if "{{" not in script and "{%" not in script:
            return script
        template = self._jinja.from_string(script)
        return template.render(**self._template_vars(env))

    @staticmethod
    def _template_vars(env: dict[str, str]) -> dict[str, Any]:
        return {
            "env": env,
            "deployment_id": env.get("DEPLOYMENT_ID", ""),
            "host": env.get("DEPLOYMENT_HOST", ""),
            "stage": env.get("LIFECYCLE_EVENT", ""),
            "artifact": {
                "location": env.get("ARTIFACT_LOCATION", ""),
                "version": env.get("ARTIFACT_VERSION", ""),
                "checksum": env.get("ARTIFACT_CHECKSUM", ""),
            },
        }

    async def run(
        self,
        host: str,
        stage_name: str,
        script: str,
        timeout: float,
        env: dict[str, str] | None = None,
    ) -> StageResult:
        """Run one hook script on host.

        Args:
            host: Host id, exported as DEPLOYMENT_HOST
            stage_name: Lifecycle stage, exported as LIFECYCLE_EVENT
            script: Shell command or script path
            timeout: Seconds to wait before the hook is killed
            env: Deployment environment (artifact, earlier stage outputs)

        Returns:
            StageResult; nonzero exit_code on any fault
        """
        log = logger.bind(host=host, stage=stage_name)
        hook_env = {**(env or {}), "DEPLOYMENT_HOST": host, "LIFECYCLE_EVENT": stage_name}
        started_at = utcnow()

        def result(exit_code: int, output: str, fault: FaultKind) -> StageResult:
            return StageResult(
                stage_name=stage_name,
                exit_code=exit_code,
                started_at=started_at,
                finished_at=utcnow(),
                output=truncate_output(output, self.output_limit),
                fault=fault,
            )

        try:
            command = self.render(script, hook_env)
        except TemplateError as e:
            log.warning("Hook command could not be rendered", error=str(e))
            return result(EXIT_EXECUTION_ERROR, f"template error: {e}", FaultKind.SCRIPT_FAILURE)

        log.debug("Running hook", target=self.transport.description, timeout=timeout)

        try:
            process = await asyncio.wait_for(self.transport.execute(command, hook_env), timeout=timeout)
        except asyncio.TimeoutError:
            log.warning("Hook timed out", timeout=timeout)
            return result(EXIT_TIMEOUT, f"hook timed out after {timeout}s", FaultKind.TIMEOUT)
        except HostUnreachableError as e:
            log.warning("Host unreachable during hook", error=str(e))
            return result(EXIT_UNREACHABLE, str(e), FaultKind.UNREACHABLE)
        except OSError as e:
            log.warning("Hook could not be started", error=str(e))
            return result(EXIT_EXECUTION_ERROR, f"execution error: {e}", FaultKind.SCRIPT_FAILURE)
        except Exception as e:
            log.exception("Unexpected hook failure")
            return result(EXIT_EXECUTION_ERROR, f"execution error: {e}", FaultKind.SCRIPT_FAILURE)

        fault = FaultKind.NONE if process.exit_code == 0 else FaultKind.SCRIPT_FAILURE
        log.debug("Hook finished", exit_code=process.exit_code)
        return result(process.exit_code, process.output, fault)
