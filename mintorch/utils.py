"""
Utility functions for mintorch.

Includes logging, console output, placeholder rendering and file checksums.
"""

import hashlib
import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Mapping

from rich.console import Console
from rich.logging import RichHandler

from mintorch.errors import ConfigError


# Global console for pretty output
console = Console()

PLACEHOLDER_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def setup_logging(log_file: Path, log_level: str = "INFO", log_format: str = "structured", console_output: bool = True) -> logging.Logger:
    """
    Set up logging for orchestrator runs.

    Args:
        log_file: Path to log file
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: "structured" (JSON) or "pretty" (human-readable)
        console_output: Also log to console

    Returns:
        Configured logger
    """
    log_file.parent.mkdir(parents=True, exist_ok=True)
    log_file.parent.chmod(0o700)

    logger = logging.getLogger("mintorch")
    logger.setLevel(getattr(logging, log_level.upper()))
    logger.handlers = []

    file_handler = logging.FileHandler(log_file)
    if log_format == "structured":
        file_handler.setFormatter(StructuredFormatter())
    else:
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
    logger.addHandler(file_handler)

    if console_output:
        if log_format == "pretty":
            console_handler = RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_time=False)
        else:
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(
                logging.Formatter("%(levelname)s: %(message)s")
            )
        # Subprocess output is streamed at DEBUG; keep it in the file unless verbose
        console_handler.setLevel(logging.DEBUG if log_level.upper() == "DEBUG" else logging.WARNING)
        logger.addHandler(console_handler)

    return logger


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if hasattr(record, "recipe"):
            log_data["recipe"] = record.recipe
        if hasattr(record, "network"):
            log_data["network"] = record.network
        if hasattr(record, "event"):
            log_data["event"] = record.event
        if hasattr(record, "metadata"):
            log_data["metadata"] = record.metadata

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def substitute_placeholders(text: str, values: Mapping[str, str]) -> str:
    """
    Substitute ${PLACEHOLDER} tokens.

    Args:
        text: Template text
        values: Placeholder values

    Returns:
        Text with every placeholder replaced

    Raises:
        ConfigError: If a placeholder has no value
    """
    def _replace(match: re.Match) -> str:
        key = match.group(1)
        if key not in values:
            raise ConfigError(f"Unresolved placeholder ${{{key}}} in {text!r}")
        return str(values[key])

    return PLACEHOLDER_PATTERN.sub(_replace, text)


def get_file_checksum(file_path: Path) -> str:
    """
    Calculate SHA256 checksum of file.

    Args:
        file_path: Path to file

    Returns:
        Hex digest of SHA256 checksum
    """
    sha256 = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(4096), b""):
            sha256.update(chunk)
    return sha256.hexdigest()


def tail_lines(text: str, count: int = 20) -> str:
    """Last ``count`` lines of text."""
    lines = text.rstrip().splitlines()
    return "\n".join(lines[-count:])


def format_duration(seconds: float) -> str:
    """
    Format duration in seconds to human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted string (e.g., "1m 23s", "45s", "0.4s")
    """
    if seconds < 1:
        return f"{seconds:.1f}s"
    if seconds < 60:
        return f"{int(seconds)}s"

    minutes = int(seconds // 60)
    remaining_seconds = int(seconds % 60)

    if minutes < 60:
        return f"{minutes}m {remaining_seconds}s"

    hours = minutes // 60
    remaining_minutes = minutes % 60
    return f"{hours}h {remaining_minutes}m {remaining_seconds}s"


def print_banner(title: str) -> None:
    """
    Print a banner to console.

    Args:
        title: Banner title
    """
    console.rule(f"[bold blue]{title}[/bold blue]")


def print_success(message: str) -> None:
    """Print success message to console."""
    console.print(f"[bold green]✓[/bold green] {message}")


def print_error(message: str) -> None:
    """Print error message to console."""
    console.print(f"[bold red]✗[/bold red] {message}")


def print_warning(message: str) -> None:
    """Print warning message to console."""
    console.print(f"[bold yellow]⚠[/bold yellow] {message}")


def print_info(message: str) -> None:
    """Print info message to console."""
    console.print(f"[bold cyan]ℹ[/bold cyan] {message}")


def print_report(report) -> None:
    """
    Render a RunReport.

    Failed recipes get the full captured output of the failing step; everything
    else gets one line.
    """
    for result in report.results:
        status = result.status.value
        if status == "failed":
            print_error(result.message)
            for outcome in result.steps:
                if outcome.status.value == "failed" and outcome.output:
                    console.rule(f"output of {outcome.step_id}", style="red")
                    console.print(outcome.output.rstrip(), markup=False, highlight=False)
                    console.rule(style="red")
        elif status == "done":
            print_success(f"{result.message} in {format_duration(result.elapsed_s)}")
        else:
            print_info(result.message)

    prefix = "[DRY-RUN] " if report.dry_run else ""
    if report.success:
        print_success(
            f"{prefix}{report.recipe} on {report.network} finished in {format_duration(report.elapsed_s)}"
        )
    else:
        print_error(f"{prefix}{report.recipe} on {report.network} failed (exit code {report.exit_code})")
