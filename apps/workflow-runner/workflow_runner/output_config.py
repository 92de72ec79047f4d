"""Console output format selection."""

import os
from enum import Enum

from .config import LogFormat


class OutputFormat(str, Enum):
    AUTO = "auto"
    RICH = "rich"
    PLAIN = "plain"
    JSON = "json"


ENV_VAR_NAME = "CONSOLE_OUTPUT_FORMAT"


def get_output_format(cli_override: str | None = None) -> OutputFormat:
    """
    Resolve the output format: CLI flag, then environment variable, then auto.

    Unknown values are ignored at each level.
    """
    for candidate in (cli_override, os.environ.get(ENV_VAR_NAME)):
        if not candidate:
            continue
        try:
            return OutputFormat(candidate.lower())
        except ValueError:
            continue
    return OutputFormat.AUTO


def log_format_for(output_format: OutputFormat) -> LogFormat:
    """Map a console output format onto the structlog renderer name."""
    if output_format is OutputFormat.JSON:
        return "json"
    if output_format is OutputFormat.PLAIN:
        return "plain"
    return "console"
