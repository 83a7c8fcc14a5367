"""Console rendering for CLI commands, built on Rich."""

import json
from collections.abc import Sequence
from enum import Enum
from typing import Any

import click
import yaml
from rich.console import Console
from rich.syntax import Syntax
from rich.table import Table

console = Console()
error_console = Console(stderr=True)

STATUS_COLORS = {
    "succeeded": "green",
    "failed": "red",
    "rolled_back": "yellow",
    "in_progress": "blue",
    "running": "blue",
}


class OutputFormat(str, Enum):
    """Supported output formats."""

    TABLE = "table"
    JSON = "json"
    YAML = "yaml"
    RAW = "raw"


Records = list[dict[str, Any]] | dict[str, Any]


class OutputFormatter:
    """Print messages and records in the format chosen on the command line.

    Messages (info, success, warnings) are suppressed in quiet mode; data
    and errors never are.
    """

    def __init__(
        self,
        format: OutputFormat = OutputFormat.TABLE,
        color: bool = True,
        quiet: bool = False,
    ):
        self.format = format
        self.color = color
        self.quiet = quiet
        self._console = Console(force_terminal=color, no_color=not color, highlight=color)

    @property
    def console(self) -> Console:
        return self._console

    @property
    def structured(self) -> bool:
        """Whether records are printed as machine readable documents."""
        return self.format in (OutputFormat.JSON, OutputFormat.YAML)

    def _say(self, message: str, style: str | None = None) -> None:
        if not self.quiet:
            self._console.print(message, style=style)

    def print(self, message: str, style: str | None = None) -> None:
        self._say(message, style)

    def print_header(self, message: str) -> None:
        self._say(f"\n[bold cyan]{message}[/bold cyan]")

    def print_info(self, message: str) -> None:
        self._say(f"[blue]•[/blue] {message}")

    def print_success(self, message: str) -> None:
        self._say(f"[green]✓[/green] {message}")

    def print_warning(self, message: str) -> None:
        self._say(f"[yellow]![/yellow] {message}")

    def print_error(self, message: str) -> None:
        """Print an error to stderr, even in quiet mode."""
        error_console.print(f"[red]Error:[/red] {message}")

    def print_data(
        self,
        data: Records,
        headers: Sequence[str] | None = None,
        title: str | None = None,
    ) -> None:
        """Print a record or a list of records in the configured format."""
        if self.format == OutputFormat.JSON:
            self._emit(json.dumps(data, indent=2, default=str), "json")
        elif self.format == OutputFormat.YAML:
            self._emit(yaml.safe_dump(_plain(data), sort_keys=False, allow_unicode=True), "yaml")
        elif self.format == OutputFormat.RAW:
            self._print_raw(data)
        else:
            self._print_table(data, headers, title)

    def _emit(self, text: str, lexer: str) -> None:
        if self.color:
            self._console.print(Syntax(text, lexer, theme="monokai", background_color="default"))
        else:
            click.echo(text.rstrip("\n"))

    def _print_raw(self, data: Records) -> None:
        rows = data.items() if isinstance(data, dict) else enumerate(data)
        for key, value in rows:
            click.echo(f"{key}: {value}" if isinstance(data, dict) else value)

    def _print_table(self, data: Records, headers: Sequence[str] | None, title: str | None) -> None:
        if not data:
            self._console.print("[dim]Nothing to show[/dim]")
            return

        table = Table(title=title, header_style="bold cyan")
        if isinstance(data, dict):
            table.add_column("Field", style="dim")
            table.add_column("Value")
            for key, value in data.items():
                table.add_row(str(key), str(value))
        else:
            columns = list(headers or data[0].keys())
            for column in columns:
                table.add_column(column)
            for row in data:
                table.add_row(*(str(row.get(column, "")) for column in columns))

        self._console.print(table)

    def confirm(self, message: str, default: bool = False) -> bool:
        """Ask a yes/no question; quiet mode answers with the default."""
        if self.quiet:
            return default
        try:
            return click.confirm(message, default=default)
        except click.Abort:
            return False


def _plain(data: Any) -> Any:
    """Strip str-Enum subclasses so yaml.safe_dump accepts the document."""
    if isinstance(data, dict):
        return {str(k): _plain(v) for k, v in data.items()}
    if isinstance(data, (list, tuple)):
        return [_plain(v) for v in data]
    if isinstance(data, Enum):
        return data.value
    return data


def format_status(status: str) -> str:
    """Wrap a deployment or host status in Rich color markup."""
    color = STATUS_COLORS.get(status)
    return f"[{color}]{status}[/{color}]" if color else status


def format_duration(seconds: float) -> str:
    """Format seconds as a short human readable duration."""
    for unit, size in (("d", 86400), ("h", 3600), ("m", 60)):
        if seconds >= size:
            return f"{seconds / size:.1f}{unit}"
    return f"{seconds:.1f}s"
