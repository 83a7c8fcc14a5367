"""Deployment target hosts."""

from deployctl.core.logging import StructuredLogger
from deployctl.pipeline.hooks import HookRunner, HostTransport, LocalTransport
from deployctl.pipeline.models import StageResult

logger = StructuredLogger(__name__)


class HostAgent:
    """One deployment target, bound to its own HookRunner."""

    def __init__(
        self,
        host_id: str,
        transport: HostTransport | None = None,
        output_limit: int = 4096,
        probe_timeout: float = 10.0,
    ):
        self.host_id = host_id
        self.transport = transport or LocalTransport()
        self.probe_timeout = probe_timeout
        self._runner = HookRunner(self.transport, output_limit=output_limit)

    def __repr__(self) -> str:
        return f"HostAgent({self.host_id!r}, {self.transport.description!r})"

    @property
    def runner(self) -> HookRunner:
        return self._runner

    async def execute_stage(
        self,
        stage_name: str,
        script: str,
        timeout: float,
        env: dict[str, str] | None = None,
    ) -> StageResult:
        """Run the hook for stage_name on this host."""
        return await self._runner.run(self.host_id, stage_name, script, timeout, env)

    async def is_reachable(self) -> bool:
        """Probe the host before dispatch. Any probe error counts as unreachable."""
        try:
            reachable = await self.transport.probe(self.probe_timeout)
        except Exception as e:
            logger.warning("Host probe failed", host=self.host_id, error=str(e))
            return False

        if not reachable:
            logger.warning("Host unreachable", host=self.host_id, target=self.transport.description)
        return reachable
