"""Logging setup for deployctl.

Everything logs under the ``deployctl`` namespace. Pipeline code uses
:class:`StructuredLogger` so deployment, host and stage context travels with
each record as ``key=value`` pairs.
"""

import logging
import sys
from enum import Enum
from typing import Any

from rich.console import Console
from rich.logging import RichHandler

ROOT_LOGGER = "deployctl"

# context keys rendered first, in this order
_CONTEXT_ORDER = ("id", "host", "stage")


class LogLevel(str, Enum):
    """Log level enumeration."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"

    @classmethod
    def from_flags(cls, verbose: int, quiet: bool, default: "LogLevel") -> "LogLevel":
        """Map -v/-q command line flags onto a level."""
        if verbose >= 2:
            return cls.DEBUG
        if verbose == 1:
            return cls.INFO
        if quiet:
            return cls.ERROR
        return default

    @property
    def numeric(self) -> int:
        return logging.getLevelName(self.value.upper())


def setup_logging(level: LogLevel = LogLevel.WARNING, rich_output: bool = True) -> logging.Logger:
    """Install a single stderr handler on the deployctl logger.

    Calling this again replaces the handler, so each CLI invocation logs to
    the stderr of the moment.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    if rich_output:
        handler: logging.Handler = RichHandler(
            console=Console(stderr=True),
            show_path=False,
            markup=False,
            rich_tracebacks=True,
        )
        handler.setFormatter(logging.Formatter("%(message)s"))
    else:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)-7s %(name)s: %(message)s", datefmt="%H:%M:%S")
        )

    logger.addHandler(handler)
    logger.setLevel(level.numeric)
    logger.propagate = False

    # subprocess transports are chatty at debug level
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Return a logger inside the deployctl namespace."""
    if name == ROOT_LOGGER or name.startswith(f"{ROOT_LOGGER}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def _format_value(value: Any) -> str:
    text = str(value)
    return repr(text) if not text or " " in text else text


class StructuredLogger:
    """Logger carrying bound context, rendered as ``message [k=v ...]``."""

    def __init__(self, name: str, context: dict[str, Any] | None = None):
        self._logger = get_logger(name)
        self._context = dict(context or {})

    @property
    def name(self) -> str:
        return self._logger.name

    @property
    def context(self) -> dict[str, Any]:
        return dict(self._context)

    def bind(self, **kwargs: Any) -> "StructuredLogger":
        """Return a logger with kwargs added to the bound context."""
        return StructuredLogger(self._logger.name, {**self._context, **kwargs})

    def render(self, message: str, **kwargs: Any) -> str:
        context = {**self._context, **kwargs}
        if not context:
            return message
        keys = [k for k in _CONTEXT_ORDER if k in context]
        keys += [k for k in context if k not in _CONTEXT_ORDER]
        pairs = " ".join(f"{k}={_format_value(context[k])}" for k in keys)
        return f"{message} [{pairs}]"

    def _log(self, level: int, message: str, kwargs: dict[str, Any], exc_info: bool = False) -> None:
        if self._logger.isEnabledFor(level):
            self._logger.log(level, self.render(message, **kwargs), exc_info=exc_info)

    def debug(self, message: str, **kwargs: Any) -> None:
        self._log(logging.DEBUG, message, kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self._log(logging.INFO, message, kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._log(logging.WARNING, message, kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._log(logging.ERROR, message, kwargs)

    def exception(self, message: str, **kwargs: Any) -> None:
        """Log at error level with the active traceback."""
        self._log(logging.ERROR, message, kwargs, exc_info=True)
