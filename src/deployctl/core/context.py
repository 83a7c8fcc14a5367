"""Click context object for sharing state across commands."""

from __future__ import annotations

from typing import TYPE_CHECKING

import click

from deployctl.config import DeployCtlConfig, PipelineConfig, get_default_config
from deployctl.core.output import OutputFormat, OutputFormatter
from deployctl.core.logging import LogLevel, setup_logging, StructuredLogger

if TYPE_CHECKING:
    from deployctl.pipeline.state import DeploymentState


class DeployCtlContext:
    """Shared context object for deployctl commands.

    This object is passed through Click's context mechanism and provides
    access to configuration, the deployment store, and output utilities.
    """

    def __init__(
        self,
        config: DeployCtlConfig | None = None,
        output_format: OutputFormat | None = None,
        verbose: int = 0,
        quiet: bool = False,
        color: bool = True,
    ):
        self._config = config or get_default_config()

        # Output settings (CLI overrides config)
        self._output_format = output_format or self._config.global_settings.output_format
        self._verbose = verbose
        self._quiet = quiet
        self._color = color

        setup_logging(
            LogLevel.from_flags(verbose, quiet, self._config.global_settings.verbosity),
            rich_output=color,
        )
        self._logger = StructuredLogger("context")

        self._output = OutputFormatter(
            format=self._output_format,
            color=color,
            quiet=quiet,
        )

        self._state: DeploymentState | None = None

    @property
    def config(self) -> DeployCtlConfig:
        """Get the loaded configuration."""
        return self._config

    @property
    def pipeline(self) -> PipelineConfig:
        """Get pipeline settings."""
        return self._config.pipeline

    @property
    def output(self) -> OutputFormatter:
        """Get the output formatter."""
        return self._output

    @property
    def output_format(self) -> OutputFormat:
        """Get the output format."""
        return self._output_format

    @property
    def verbose(self) -> int:
        """Get verbosity level."""
        return self._verbose

    @property
    def quiet(self) -> bool:
        """Check if quiet mode is enabled."""
        return self._quiet

    @property
    def logger(self) -> StructuredLogger:
        """Get the context logger."""
        return self._logger

    @property
    def state(self) -> "DeploymentState":
        """Get or create the deployment store."""
        if self._state is None:
            from deployctl.pipeline.state import DeploymentState

            self._state = DeploymentState(self.pipeline.get_state_dir())
        return self._state

    def confirm(self, message: str, default: bool = False) -> bool:
        """Ask for user confirmation unless confirmations are disabled."""
        if not self._config.global_settings.confirm_destructive:
            return True
        return self._output.confirm(message, default)


# Click decorator for passing context
pass_context = click.make_pass_decorator(DeployCtlContext, ensure=True)
