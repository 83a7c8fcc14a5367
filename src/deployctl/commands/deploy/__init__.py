"""Deploy command group."""

import sys

import click

from deployctl.core.async_utils import run_sync
from deployctl.core.context import pass_context, DeployCtlContext
from deployctl.core.exceptions import DeployCtlError
from deployctl.core.output import OutputFormat, format_duration, format_status
from deployctl.pipeline import (
    ArtifactReference,
    Deployment,
    DeploymentController,
    DeploymentStatus,
)
from deployctl.pipeline.schema import load_hook_script, load_inventory


@click.group()
@pass_context
def deploy(ctx: DeployCtlContext) -> None:
    """Deployments - run, status, list, abort, resume.

    \b
    Examples:
        deployctl deploy run --hooks appspec.yaml --hosts hosts.yaml \\
            --artifact s3://builds/app.tar.gz --artifact-version 1.4.2
        deployctl deploy status abc123
        deployctl deploy abort abc123
        deployctl deploy resume abc123 --hosts hosts.yaml
    """
    pass


def _print_deployment(ctx: DeployCtlContext, deployment: Deployment) -> None:
    """Render a deployment snapshot."""
    if ctx.output_format != OutputFormat.TABLE:
        ctx.output.print_data(deployment.to_dict())
        return

    ctx.output.print_header(f"Deployment: {deployment.id}")
    ctx.output.print(f"Status: {format_status(deployment.status.value)}")
    ctx.output.print(f"Artifact: {deployment.artifact.location} ({deployment.artifact.version})")
    ctx.output.print(f"Halt policy: {deployment.halt_policy.value}")
    ctx.output.print(f"Stages: {' -> '.join(deployment.stages)}")
    if deployment.duration_seconds is not None:
        ctx.output.print(f"Duration: {format_duration(deployment.duration_seconds)}")
    if deployment.message:
        ctx.output.print(f"Message: {deployment.message}")

    rows = []
    for host_id in deployment.target_hosts:
        outcome = deployment.per_host_status[host_id]
        rows.append({
            "host": host_id,
            "outcome": format_status(outcome.outcome.value),
            "stage": outcome.current_stage or "-",
            "completed": f"{outcome.next_stage_index}/{len(deployment.stages)}",
            "rollback": ", ".join(
                f"{r.stage_name}={r.exit_code}" for r in outcome.rollback_results
            ) or "-",
            "reason": outcome.failure_reason or "",
        })
    ctx.output.print_data(
        rows,
        headers=["host", "outcome", "stage", "completed", "rollback", "reason"],
        title="Hosts",
    )

    if deployment.events:
        ctx.output.print("\nRecent Events:")
        for event in deployment.events[-5:]:
            ctx.output.print(f"  [{event.timestamp.strftime('%H:%M:%S')}] {event.event_type}: {event.message}")


@deploy.command("run")
@click.option("--hooks", "hooks_file", required=True, type=click.Path(exists=True), help="Hook script YAML")
@click.option("--hosts", "hosts_file", required=True, type=click.Path(exists=True), help="Host inventory YAML")
@click.option("--artifact", required=True, help="Artifact location (URI or absolute path)")
@click.option("--artifact-version", required=True, help="Artifact version")
@click.option("--checksum", default=None, help="Artifact checksum, e.g. sha256:<hex>")
@click.option("--policy", type=click.Choice(["per-host", "all-or-nothing"]), default=None, help="Halt policy")
@click.option("--host", "hosts", multiple=True, help="Deploy to this host only (repeatable)")
@click.option("-y", "--yes", is_flag=True, help="Skip confirmation")
@pass_context
def run(
    ctx: DeployCtlContext,
    hooks_file: str,
    hosts_file: str,
    artifact: str,
    artifact_version: str,
    checksum: str | None,
    policy: str | None,
    hosts: tuple[str, ...],
    yes: bool,
) -> None:
    """Submit a deployment and run it to completion.

    \b
    Examples:
        deployctl deploy run --hooks appspec.yaml --hosts hosts.yaml \\
            --artifact s3://builds/app.tar.gz --artifact-version 1.4.2
        deployctl deploy run ... --policy all-or-nothing --host web-1 --host web-2
    """
    try:
        hook_script = load_hook_script(hooks_file)
        inventory = load_inventory(hosts_file, ctx.pipeline)
        targets = list(hosts) or list(inventory)

        controller = DeploymentController(ctx.state, inventory, ctx.pipeline)
        deployment_id = controller.submit(
            ArtifactReference(location=artifact, version=artifact_version, checksum=checksum),
            targets,
            hook_script,
            policy,
        )

        if not yes and not ctx.confirm(f"Deploy {artifact_version} to {len(targets)} hosts?"):
            controller.abort(deployment_id)
            ctx.output.print_info("Cancelled")
            return

        ctx.output.print_info(f"Deployment {deployment_id} started")
        deployment = run_sync(controller.run(deployment_id))
        _print_deployment(ctx, deployment)

        if deployment.status == DeploymentStatus.SUCCEEDED:
            ctx.output.print_success(f"Deployment {deployment.id} succeeded")
        else:
            ctx.output.print_error(f"Deployment {deployment.id} {deployment.status.value}: {deployment.message}")
            sys.exit(1)

    except DeployCtlError as e:
        ctx.output.print_error(f"Deployment failed: {e}")
        raise click.Abort()


@deploy.command("status")
@click.argument("deployment_id")
@pass_context
def status(ctx: DeployCtlContext, deployment_id: str) -> None:
    """Show deployment status.

    \b
    Examples:
        deployctl deploy status abc123
        deployctl -o json deploy status abc123
    """
    try:
        controller = DeploymentController(ctx.state, {}, ctx.pipeline)
        _print_deployment(ctx, controller.get_status(deployment_id))

    except DeployCtlError as e:
        ctx.output.print_error(f"Failed to get status: {e}")
        raise click.Abort()


@deploy.command("list")
@click.option(
    "--status",
    "status_filter",
    type=click.Choice([s.value for s in DeploymentStatus]),
    default=None,
    help="Filter by status",
)
@click.option("--limit", default=20, help="Max results")
@pass_context
def list_deployments(ctx: DeployCtlContext, status_filter: str | None, limit: int) -> None:
    """List deployments.

    \b
    Examples:
        deployctl deploy list
        deployctl deploy list --status in_progress
    """
    try:
        controller = DeploymentController(ctx.state, {}, ctx.pipeline)
        deployments = controller.list(
            status=DeploymentStatus(status_filter) if status_filter else None,
            limit=limit,
        )

        if not deployments:
            ctx.output.print_info("No deployments found")
            return

        rows = []
        for dep in deployments:
            rows.append({
                "id": dep.id,
                "version": dep.artifact.version,
                "hosts": len(dep.target_hosts),
                "policy": dep.halt_policy.value,
                "status": dep.status.value,
                "created": dep.created_at.strftime("%Y-%m-%d %H:%M"),
            })

        ctx.output.print_data(
            rows,
            headers=["id", "version", "hosts", "policy", "status", "created"],
            title="Deployments",
        )

    except DeployCtlError as e:
        ctx.output.print_error(f"Failed to list deployments: {e}")
        raise click.Abort()


@deploy.command("abort")
@click.argument("deployment_id")
@click.option("-y", "--yes", is_flag=True, help="Skip confirmation")
@pass_context
def abort(ctx: DeployCtlContext, deployment_id: str, yes: bool) -> None:
    """Abort a deployment; it fails and rolls back after running hooks finish.

    \b
    Examples:
        deployctl deploy abort abc123
    """
    try:
        controller = DeploymentController(ctx.state, {}, ctx.pipeline)
        deployment = controller.get_status(deployment_id)

        if not deployment.is_active:
            ctx.output.print_info(f"Deployment is not active (status: {deployment.status.value})")
            return

        if not yes and not ctx.confirm(f"Abort deployment {deployment_id}?"):
            ctx.output.print_info("Cancelled")
            return

        controller.abort(deployment_id)
        ctx.output.print_success(f"Abort requested for {deployment_id}")

    except DeployCtlError as e:
        ctx.output.print_error(f"Abort failed: {e}")
        raise click.Abort()


@deploy.command("resume")
@click.argument("deployment_id")
@click.option("--hosts", "hosts_file", required=True, type=click.Path(exists=True), help="Host inventory YAML")
@pass_context
def resume(ctx: DeployCtlContext, deployment_id: str, hosts_file: str) -> None:
    """Resume a deployment interrupted by a restart.

    \b
    Examples:
        deployctl deploy resume abc123 --hosts hosts.yaml
    """
    try:
        inventory = load_inventory(hosts_file, ctx.pipeline)
        controller = DeploymentController(ctx.state, inventory, ctx.pipeline)
        deployment = run_sync(controller.resume(deployment_id))
        _print_deployment(ctx, deployment)

        if deployment.status != DeploymentStatus.SUCCEEDED:
            sys.exit(1)

    except DeployCtlError as e:
        ctx.output.print_error(f"Resume failed: {e}")
        raise click.Abort()
