"""Command line entry point for deployctl."""

import sys

import click
from rich.console import Console

from deployctl import __version__
from deployctl.config import load_config
from deployctl.core.context import DeployCtlContext
from deployctl.core.exceptions import ConfigError, DeployCtlError, ValidationError
from deployctl.core.output import OutputFormat

CONTEXT_SETTINGS = {
    "help_option_names": ["-h", "--help"],
    "max_content_width": 120,
    "auto_envvar_prefix": "DEPLOYCTL",
}

# exit statuses of main()
EXIT_ERROR = 1
EXIT_INVALID_REQUEST = 2
EXIT_INTERRUPTED = 130


def _to_output_format(ctx: click.Context, param: click.Parameter, value: str | None) -> OutputFormat | None:
    return OutputFormat(value.lower()) if value else None


def _print_version(ctx: click.Context, param: click.Parameter, value: bool) -> None:
    if value and not ctx.resilient_parsing:
        click.echo(f"deployctl version {__version__}")
        ctx.exit()


@click.group(context_settings=CONTEXT_SETTINGS)
@click.option(
    "-o",
    "--output",
    "output_format",
    type=click.Choice([f.value for f in OutputFormat], case_sensitive=False),
    callback=_to_output_format,
    help="Output format for records.",
)
@click.option("-v", "--verbose", count=True, help="Log pipeline progress (-v info, -vv debug).")
@click.option("-q", "--quiet", is_flag=True, help="Only print records and errors.")
@click.option("--no-color", is_flag=True, help="Disable colored output.")
@click.option(
    "-c",
    "--config",
    "config_file",
    type=click.Path(exists=True, dir_okay=False),
    metavar="FILE",
    envvar="DEPLOYCTL_CONFIG",
    help="Configuration file merged over user and project config.",
)
@click.option(
    "--state-dir",
    type=click.Path(file_okay=False),
    metavar="DIR",
    help="Directory holding deployment records.",
)
@click.option(
    "--version",
    is_flag=True,
    callback=_print_version,
    expose_value=False,
    is_eager=True,
    help="Show version and exit.",
)
@click.pass_context
def cli(
    ctx: click.Context,
    output_format: OutputFormat | None,
    verbose: int,
    quiet: bool,
    no_color: bool,
    config_file: str | None,
    state_dir: str | None,
) -> None:
    """deployctl - run lifecycle-hook deployments across a fleet of hosts.

    \b
    Examples:
        deployctl deploy run --hooks appspec.yaml --hosts hosts.yaml \\
            --artifact s3://builds/app.tar.gz --artifact-version 1.4.2
        deployctl deploy status abc123
        deployctl deploy abort abc123

    \b
    Configuration:
        ~/.deployctl/config.yaml    User configuration
        ./deployctl.yaml            Project configuration
        DEPLOYCTL_STATE_DIR         Deployment record directory
        DEPLOYCTL_HALT_POLICY       Default halt policy
    """
    try:
        config = load_config(config_file)
    except ConfigError as e:
        Console(stderr=True).print(f"[red]Configuration error:[/red] {e}")
        sys.exit(EXIT_ERROR)

    if state_dir:
        config.pipeline.state_dir = state_dir

    ctx.obj = DeployCtlContext(
        config=config,
        output_format=output_format,
        verbose=verbose,
        quiet=quiet,
        color=not no_color and config.global_settings.use_color,
    )


@cli.command()
@click.pass_obj
def config(deployctl_ctx: DeployCtlContext) -> None:
    """Show the effective pipeline configuration."""
    pipeline = deployctl_ctx.pipeline
    try:
        halt_policy = pipeline.get_halt_policy()
    except ConfigError as e:
        deployctl_ctx.output.print_error(str(e))
        raise click.Abort()

    deployctl_ctx.output.print_data(
        {
            "output_format": deployctl_ctx.output_format.value,
            "verbose": deployctl_ctx.verbose,
            "state_dir": str(pipeline.get_state_dir()),
            "halt_policy": halt_policy,
            "default_stage_timeout": pipeline.default_stage_timeout,
            "probe_timeout": pipeline.probe_timeout,
            "output_limit": pipeline.output_limit,
            "max_concurrent": pipeline.max_concurrent or "unbounded",
            "ssh_options": " ".join(pipeline.ssh_options),
        },
        title="Effective Configuration",
    )


def register_commands() -> None:
    """Attach command groups to the top-level group."""
    from deployctl.commands.deploy import deploy

    cli.add_command(deploy)


register_commands()


def main() -> None:
    """Console script entry point."""
    stderr = Console(stderr=True)
    try:
        cli()
    except ValidationError as e:
        stderr.print(f"[red]Invalid request:[/red] {e}")
        sys.exit(EXIT_INVALID_REQUEST)
    except DeployCtlError as e:
        stderr.print(f"[red]Error:[/red] {e}")
        sys.exit(EXIT_ERROR)
    except KeyboardInterrupt:
        stderr.print("\n[yellow]Interrupted[/yellow]")
        sys.exit(EXIT_INTERRUPTED)


if __name__ == "__main__":
    main()
