"""Deployment state machine: stage sequencing, halt policy and rollback."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable, Mapping

from deployctl.config import PipelineConfig
from deployctl.core.exceptions import DeploymentError, ValidationError
from deployctl.core.logging import StructuredLogger
from deployctl.pipeline.agent import HostAgent
from deployctl.pipeline.hooks import stage_env
from deployctl.pipeline.models import (
    ArtifactReference,
    Deployment,
    DeploymentStatus,
    FaultKind,
    HaltPolicy,
    HookScript,
    HostStatus,
    StageResult,
    utcnow,
)
from deployctl.pipeline.stage import StageExecutor
from deployctl.pipeline.state import DeploymentState

logger = StructuredLogger(__name__)

ArtifactResolver = Callable[[ArtifactReference], bool]


class DeploymentController:
    """Run deployments through their stages against a host inventory.

    Each deployment is an explicit record passed through every step, so
    several deployments can run concurrently on one controller. The record is
    saved after every transition and every stage barrier; ``get_status``
    always reads the saved document.
    """

    def __init__(
        self,
        state: DeploymentState,
        inventory: Mapping[str, HostAgent],
        settings: PipelineConfig | None = None,
        resolver: ArtifactResolver | None = None,
    ):
        """Initialize controller.

        Args:
            state: Durable deployment store
            inventory: Provisioned hosts by id
            settings: Pipeline settings (timeouts, concurrency, default policy)
            resolver: Optional artifact store check for submitted references
        """
        self.state = state
        self.inventory = dict(inventory)
        self.settings = settings or PipelineConfig()
        self._resolver = resolver
        self._cancel_events: dict[str, asyncio.Event] = {}
        self._tasks: dict[str, asyncio.Task[Deployment]] = {}
        self._running: set[str] = set()

    # -- exposed operations ---------------------------------------------

    def submit(
        self,
        artifact: ArtifactReference,
        target_hosts: Iterable[str],
        hook_script: HookScript,
        halt_policy: HaltPolicy | str | None = None,
    ) -> str:
        """Validate a deployment request and record it as pending.

        Raises:
            ValidationError: If the request is malformed; nothing is recorded

        Returns:
            Deployment id
        """
        hosts = list(target_hosts)
        policy = self._validate(artifact, hosts, hook_script, halt_policy)

        deployment = Deployment(
            artifact=artifact,
            hook_script=hook_script,
            target_hosts=hosts,
            halt_policy=policy,
        )
        deployment.add_event(
            "submitted",
            f"Deployment of {artifact.version} to {len(hosts)} hosts submitted",
            {"stages": deployment.stages, "halt_policy": policy.value},
        )
        self.state.save(deployment)

        logger.info("Deployment submitted", id=deployment.id, hosts=len(hosts), policy=policy.value)
        return deployment.id

    async def run(self, deployment_id: str) -> Deployment:
        """Run a pending deployment to a terminal status."""
        deployment = self.state.load(deployment_id)

        if deployment.status != DeploymentStatus.PENDING:
            if deployment.abort_requested and deployment.is_complete:
                return deployment
            raise DeploymentError(
                f"Deployment is not pending (status: {deployment.status.value})",
                deployment_id=deployment_id,
            )

        agents = self._agents_for(deployment)

        if deployment.abort_requested:
            self._finish(deployment, DeploymentStatus.FAILED, "Deployment aborted before start")
            return deployment

        deployment.status = DeploymentStatus.IN_PROGRESS
        deployment.started_at = utcnow()
        deployment.add_event("started", "Deployment started")
        self.state.save(deployment)

        return await self._drive(deployment, agents)

    async def deploy(
        self,
        artifact: ArtifactReference,
        target_hosts: Iterable[str],
        hook_script: HookScript,
        halt_policy: HaltPolicy | str | None = None,
    ) -> Deployment:
        """Submit and run a deployment."""
        deployment_id = self.submit(artifact, target_hosts, hook_script, halt_policy)
        return await self.run(deployment_id)

    def start(self, deployment_id: str) -> "asyncio.Task[Deployment]":
        """Schedule a pending deployment on the running event loop."""
        task = asyncio.create_task(self.run(deployment_id), name=f"deployment-{deployment_id}")
        self._tasks[deployment_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(deployment_id, None))
        return task

    async def resume(self, deployment_id: str) -> Deployment:
        """Continue a deployment interrupted by a restart.

        In-progress deployments continue from each host's last recorded
        stage. Failed deployments whose rollback did not finish continue the
        rollback. Terminal deployments are returned unchanged.
        """
        deployment = self.state.load(deployment_id)

        if deployment.status == DeploymentStatus.PENDING:
            return await self.run(deployment_id)

        if deployment.status == DeploymentStatus.IN_PROGRESS:
            agents = self._agents_for(deployment)
            deployment.add_event("resumed", "Deployment resumed from last completed stages")
            self.state.save(deployment)
            logger.info("Resuming deployment", id=deployment_id)
            return await self._drive(deployment, agents)

        if deployment.status == DeploymentStatus.FAILED and deployment.completed_at is None:
            agents = self._agents_for(deployment)
            self._running.add(deployment_id)
            try:
                await self._rollback(deployment, agents)
            finally:
                self._running.discard(deployment_id)
            return deployment

        logger.info("Deployment already terminal", id=deployment_id, status=deployment.status.value)
        return deployment

    def get_status(self, deployment_id: str) -> Deployment:
        """Return a snapshot of the latest saved deployment record."""
        return self.state.load(deployment_id)

    def list(self, status: DeploymentStatus | None = None, limit: int = 50) -> list[Deployment]:
        return self.state.list(status=status, limit=limit)

    def abort(self, deployment_id: str) -> Deployment:
        """Request cancellation of a deployment.

        Dispatched hooks are allowed to finish; the deployment then fails and
        rolls back. Aborting a terminal deployment does nothing.
        """
        deployment = self.state.load(deployment_id)

        if deployment.is_complete:
            logger.info("Abort ignored, deployment terminal", id=deployment_id, status=deployment.status.value)
            return deployment

        self._cancel_event(deployment_id).set()

        if deployment_id in self._running:
            # the running coroutine records the abort at its next stage boundary
            return deployment

        if deployment.status == DeploymentStatus.PENDING:
            deployment.abort_requested = True
            self._finish(deployment, DeploymentStatus.FAILED, "Deployment aborted before start")
            return deployment

        # running in another process; it picks the marker up at its next stage boundary
        self.state.request_abort(deployment_id)
        deployment.abort_requested = True
        logger.info("Abort requested", id=deployment_id)
        return deployment

    # -- validation -------------------------------------------------------

    def _validate(
        self,
        artifact: ArtifactReference,
        hosts: list[str],
        hook_script: HookScript,
        halt_policy: HaltPolicy | str | None,
    ) -> HaltPolicy:
        if not hosts:
            raise ValidationError("Deployment has no target hosts")

        duplicates = sorted({h for h in hosts if hosts.count(h) > 1})
        if duplicates:
            raise ValidationError("Duplicate target hosts", details={"hosts": duplicates})

        unknown = [h for h in hosts if h not in self.inventory]
        if unknown:
            raise ValidationError("Unknown target hosts", details={"hosts": unknown})

        artifact.resolve()
        if self._resolver is not None and not self._resolver(artifact):
            raise ValidationError(
                "Artifact not found in artifact store",
                details={"location": artifact.location, "version": artifact.version},
            )

        hook_script.validate()

        try:
            return HaltPolicy(halt_policy or self.settings.get_halt_policy())
        except ValueError:
            raise ValidationError(f"Unknown halt policy: {halt_policy}")

    def _agents_for(self, deployment: Deployment) -> dict[str, HostAgent]:
        missing = [h for h in deployment.target_hosts if h not in self.inventory]
        if missing:
            raise DeploymentError(
                "Target hosts missing from inventory",
                deployment_id=deployment.id,
                details={"hosts": missing},
            )
        return {h: self.inventory[h] for h in deployment.target_hosts}

    # -- state machine ----------------------------------------------------

    async def _drive(self, deployment: Deployment, agents: dict[str, HostAgent]) -> Deployment:
        self._running.add(deployment.id)
        try:
            halted = await self._run_stages(deployment, agents)
            status = self._conclude(deployment, halted)

            if status == DeploymentStatus.SUCCEEDED:
                self._finish(deployment, status, deployment.message or "Deployment succeeded")
                return deployment

            deployment.status = DeploymentStatus.FAILED
            deployment.message = deployment.message or "All target hosts failed"
            deployment.add_event("failed", deployment.message)
            self.state.save(deployment)
            logger.error("Deployment failed", id=deployment.id, reason=deployment.message)

            await self._rollback(deployment, agents)
            return deployment
        finally:
            self._running.discard(deployment.id)
            self._cancel_events.pop(deployment.id, None)

    async def _run_stages(self, deployment: Deployment, agents: dict[str, HostAgent]) -> bool:
        """Run remaining stages. Returns True if the deployment was halted."""
        log = logger.bind(id=deployment.id)
        executor = StageExecutor(
            deployment.hook_script,
            default_timeout=self.settings.default_stage_timeout,
            max_concurrent=self.settings.max_concurrent,
        )
        stages = deployment.stages
        base_env = {"DEPLOYMENT_ID": deployment.id, **deployment.artifact.resolve()}

        if deployment.halt_policy == HaltPolicy.ALL_OR_NOTHING and deployment.hosts_with(HostStatus.FAILED):
            self._halt(deployment, "halted after an earlier host failure")
            return True

        for index, stage in enumerate(stages):
            if self._abort_requested(deployment):
                self._stop_for_abort(deployment, "Abort request received, halting before next stage")
                log.warning("Deployment aborted", stage=stage)
                return True

            running = deployment.hosts_with(HostStatus.RUNNING)
            if not running:
                break

            # after a restart some hosts may already hold this stage's result
            pending = {
                h: agents[h] for h in running if deployment.per_host_status[h].next_stage_index == index
            }
            if not pending:
                continue

            for host_id in pending:
                deployment.per_host_status[host_id].current_stage = stage
            deployment.add_event("stage_started", f"Stage {stage} dispatched", {"hosts": list(pending)})
            self.state.save(deployment)

            env = {
                h: {**base_env, **stage_env(deployment.per_host_status[h].stage_results)} for h in pending
            }
            results = await executor.run(
                stage,
                pending,
                deployment.halt_policy,
                excluded=deployment.hosts_with(HostStatus.FAILED),
                env=env,
            )

            failed = self._record_stage(deployment, stage, index == len(stages) - 1, results)
            deployment.add_event(
                "stage_completed",
                f"Stage {stage} completed",
                {"succeeded": len(results) - len(failed), "failed": failed},
            )
            self.state.save(deployment)

            if failed and deployment.halt_policy == HaltPolicy.ALL_OR_NOTHING:
                deployment.message = f"Stage {stage} failed on {', '.join(failed)}"
                self._halt(deployment, f"halted after {stage} failed on {', '.join(failed)}")
                log.warning("Deployment halted", stage=stage, failed=failed)
                return True

        # an abort accepted during the last stage still fails the deployment
        if self._abort_requested(deployment):
            self._stop_for_abort(deployment, "Abort request received during the final stage")
            log.warning("Deployment aborted after final stage")
            return True

        return False

    def _record_stage(
        self,
        deployment: Deployment,
        stage: str,
        terminal: bool,
        results: Mapping[str, StageResult],
    ) -> list[str]:
        """Apply one stage's results to host outcomes. Returns failed host ids."""
        failed: list[str] = []

        for host_id, result in results.items():
            outcome = deployment.per_host_status[host_id]

            if not result.dispatched:
                # no stage slot is consumed by a host that never ran the hook
                outcome.fail(f"unreachable at {stage}")
            else:
                outcome.record(result, deployment.stages)
                if result.fault == FaultKind.UNREACHABLE:
                    outcome.fail(f"connection lost during {stage}")
                elif result.fault == FaultKind.TIMEOUT:
                    outcome.fail(f"{stage} timed out")
                elif not result.succeeded:
                    outcome.fail(f"{stage} exited with {result.exit_code}")
                elif terminal:
                    outcome.outcome = HostStatus.SUCCEEDED

            if outcome.outcome == HostStatus.FAILED:
                failed.append(host_id)
                deployment.add_event(
                    "host_failed",
                    f"Host {host_id} failed: {outcome.failure_reason}",
                    {"host": host_id, "stage": stage, "exit_code": result.exit_code},
                )

        return failed

    def _halt(self, deployment: Deployment, reason: str) -> None:
        for host_id in deployment.hosts_with(HostStatus.RUNNING):
            deployment.per_host_status[host_id].fail(reason)
        deployment.add_event("halted", f"Deployment halted: {reason}")
        self.state.save(deployment)

    def _stop_for_abort(self, deployment: Deployment, message: str) -> None:
        deployment.message = "Deployment aborted"
        deployment.add_event("aborted", message)
        for host_id in deployment.hosts_with(HostStatus.SUCCEEDED):
            deployment.per_host_status[host_id].fail("aborted")
        self._halt(deployment, "aborted")

    def _conclude(self, deployment: Deployment, halted: bool) -> DeploymentStatus:
        if halted:
            return DeploymentStatus.FAILED

        succeeded = deployment.hosts_with(HostStatus.SUCCEEDED)
        if deployment.halt_policy == HaltPolicy.ALL_OR_NOTHING:
            if len(succeeded) == len(deployment.target_hosts):
                return DeploymentStatus.SUCCEEDED
            return DeploymentStatus.FAILED

        if not succeeded:
            return DeploymentStatus.FAILED

        failed = deployment.hosts_with(HostStatus.FAILED)
        if failed:
            deployment.message = f"Deployment succeeded with {len(failed)} failed hosts: {', '.join(failed)}"
        return DeploymentStatus.SUCCEEDED

    async def _rollback(self, deployment: Deployment, agents: dict[str, HostAgent]) -> None:
        """Run rollback hooks on every host that started the deployment.

        Rollback failures are recorded and never retried. The deployment
        becomes rolled_back only if every rollback hook succeeded, otherwise
        it stays failed.
        """
        log = logger.bind(id=deployment.id)
        hooks = deployment.hook_script.rollback
        hosts = [h for h in deployment.target_hosts if deployment.per_host_status[h].started]

        if not hooks or not hosts:
            reason = "no rollback hooks defined" if not hooks else "no host started the deployment"
            deployment.add_event("rollback_skipped", f"Rollback skipped: {reason}")
            self._finish(deployment, DeploymentStatus.FAILED, deployment.message)
            return

        deployment.add_event("rollback_started", "Rolling back deployment", {"hosts": hosts})
        self.state.save(deployment)
        log.info("Rolling back", hosts=hosts)

        rollback_script = HookScript(name=f"{deployment.hook_script.name}-rollback", hooks=hooks)
        executor = StageExecutor(
            rollback_script,
            default_timeout=self.settings.default_stage_timeout,
            max_concurrent=self.settings.max_concurrent,
        )
        base_env = {
            "DEPLOYMENT_ID": deployment.id,
            "DEPLOYMENT_ROLLBACK": "true",
            **deployment.artifact.resolve(),
        }

        for index, hook in enumerate(hooks):
            failed_hosts = [h for h in hosts if self._rollback_failed(deployment, h)]
            pending = {
                h: agents[h]
                for h in hosts
                if h not in failed_hosts and len(deployment.per_host_status[h].rollback_results) == index
            }
            if not pending:
                continue

            env = {
                h: {**base_env, **stage_env(deployment.per_host_status[h].stage_results)} for h in pending
            }
            results = await executor.run(hook.stage, pending, HaltPolicy.PER_HOST, excluded=failed_hosts, env=env)

            for host_id, result in results.items():
                deployment.per_host_status[host_id].rollback_results.append(result)
                if not result.succeeded:
                    deployment.add_event(
                        "rollback_host_failed",
                        f"Rollback {hook.stage} failed on {host_id}",
                        {"host": host_id, "exit_code": result.exit_code},
                    )
            self.state.save(deployment)

        if any(self._rollback_failed(deployment, h) for h in hosts):
            deployment.add_event("rollback_failed", "Rollback finished with failures")
            log.error("Rollback finished with failures")
            self._finish(deployment, DeploymentStatus.FAILED, deployment.message)
            return

        deployment.add_event("rolled_back", "Deployment rolled back")
        log.info("Deployment rolled back")
        self._finish(deployment, DeploymentStatus.ROLLED_BACK, deployment.message)

    @staticmethod
    def _rollback_failed(deployment: Deployment, host_id: str) -> bool:
        return any(not r.succeeded for r in deployment.per_host_status[host_id].rollback_results)

    # -- persistence and cancellation ---------------------------------------

    def _finish(self, deployment: Deployment, status: DeploymentStatus, message: str) -> None:
        deployment.status = status
        deployment.message = message
        deployment.completed_at = utcnow()
        if status == DeploymentStatus.SUCCEEDED:
            deployment.add_event("succeeded", message)
            logger.info("Deployment succeeded", id=deployment.id)
        self.state.save(deployment)

    def _cancel_event(self, deployment_id: str) -> asyncio.Event:
        if deployment_id not in self._cancel_events:
            self._cancel_events[deployment_id] = asyncio.Event()
        return self._cancel_events[deployment_id]

    def _abort_requested(self, deployment: Deployment) -> bool:
        event = self._cancel_events.get(deployment.id)
        if event is not None and event.is_set():
            deployment.abort_requested = True
        elif not deployment.abort_requested and self.state.abort_marked(deployment.id):
            deployment.abort_requested = True
        return deployment.abort_requested
