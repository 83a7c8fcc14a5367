"""Parallel execution of one stage across hosts."""

import time
from collections.abc import Collection, Mapping

from deployctl.core.async_utils import gather_with_concurrency
from deployctl.core.logging import StructuredLogger
from deployctl.pipeline.agent import HostAgent
from deployctl.pipeline.models import (
    EXIT_UNREACHABLE,
    FaultKind,
    HaltPolicy,
    HookScript,
    StageResult,
    utcnow,
)

logger = StructuredLogger(__name__)


class StageExecutor:
    """Dispatch a stage to every eligible host and wait for all of them.

    ``run`` returns only after every dispatched host has finished or timed
    out, so callers can treat it as the barrier between stages.
    """

    def __init__(
        self,
        hook_script: HookScript,
        default_timeout: float = 300.0,
        max_concurrent: int | None = None,
    ):
        self.hook_script = hook_script
        self.default_timeout = default_timeout
        self.max_concurrent = max_concurrent

    def timeout_for(self, stage_name: str) -> float:
        hook = self.hook_script.hook_for(stage_name)
        return hook.timeout or self.default_timeout

    def eligible(
        self,
        hosts: Mapping[str, HostAgent],
        policy: HaltPolicy,
        excluded: Collection[str] = (),
    ) -> list[str]:
        """Host ids that should receive the next dispatch."""
        if policy == HaltPolicy.ALL_OR_NOTHING and excluded:
            return []
        return [host_id for host_id in hosts if host_id not in excluded]

    async def run(
        self,
        stage_name: str,
        hosts: Mapping[str, HostAgent],
        policy: HaltPolicy,
        excluded: Collection[str] = (),
        env: Mapping[str, dict[str, str]] | None = None,
    ) -> dict[str, StageResult]:
        """Run stage_name on every eligible host concurrently.

        Args:
            stage_name: Stage to run
            hosts: Candidate hosts by id
            policy: Halt policy of the deployment
            excluded: Hosts already failed; skipped and absent from the result
            env: Per-host hook environment

        Returns:
            Mapping of dispatched host id to its StageResult
        """
        hook = self.hook_script.hook_for(stage_name)
        timeout = self.timeout_for(stage_name)
        targets = self.eligible(hosts, policy, excluded)
        log = logger.bind(stage=stage_name)

        if not targets:
            log.info("No eligible hosts for stage", policy=policy.value)
            return {}

        log.info("Dispatching stage", hosts=len(targets), timeout=timeout)
        start = time.monotonic()

        async def dispatch(host_id: str) -> StageResult:
            agent = hosts[host_id]
            if not await agent.is_reachable():
                now = utcnow()
                return StageResult(
                    stage_name=stage_name,
                    exit_code=EXIT_UNREACHABLE,
                    started_at=now,
                    finished_at=now,
                    output=f"host {host_id} unreachable before dispatch",
                    fault=FaultKind.UNREACHABLE,
                    dispatched=False,
                )
            return await agent.execute_stage(
                stage_name,
                hook.command,
                timeout,
                dict((env or {}).get(host_id, {})),
            )

        results = await gather_with_concurrency(
            self.max_concurrent,
            *[dispatch(host_id) for host_id in targets],
        )

        failed = [h for h, r in zip(targets, results) if not r.succeeded]
        log.info(
            "Stage barrier closed",
            succeeded=len(targets) - len(failed),
            failed=len(failed),
            duration=f"{time.monotonic() - start:.1f}s",
        )

        return dict(zip(targets, results))
