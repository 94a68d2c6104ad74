"""
Utility functions for trialkit.

Includes logging setup, retries, duration formatting and console output.

Log records may carry trial context through ``extra=``; the structured
formatter copies any of LOG_CONTEXT_FIELDS it finds into the JSON line:

    logger.info("Run 42: completed", extra={"run_id": "42", "workflow": "triage"})
"""

import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel

from trialkit.errors import PermanentError, TransientError


# Global console for pretty output
console = Console(stderr=True)

LOG_CONTEXT_FIELDS = ("workflow", "run_id", "host_repo", "cycle")

_PLAIN_FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(
    log_file: Optional[Path] = None,
    log_level: str = "INFO",
    log_format: str = "pretty",
    console_output: bool = True,
) -> logging.Logger:
    """
    Configure the "trialkit" logger for one command run.

    The log file (when given) gets JSON lines for the "structured" format
    and plain lines otherwise. The console gets rich output for "pretty".

    Returns:
        The configured "trialkit" logger
    """
    logger = logging.getLogger("trialkit")
    logger.setLevel(log_level.upper())
    logger.handlers = []

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        structured = log_format == "structured"
        file_handler.setFormatter(StructuredFormatter() if structured else logging.Formatter(_PLAIN_FILE_FORMAT))
        logger.addHandler(file_handler)

    if console_output:
        if log_format == "pretty":
            logger.addHandler(RichHandler(console=console, rich_tracebacks=True, show_time=False))
        else:
            stream_handler = logging.StreamHandler()
            stream_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
            logger.addHandler(stream_handler)

    return logger


class StructuredFormatter(logging.Formatter):
    """One JSON object per record, with any trial context attached."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update({
            name: getattr(record, name)
            for name in LOG_CONTEXT_FIELDS
            if getattr(record, name, None) is not None
        })
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def retry_with_backoff(
    func: Callable,
    max_attempts: int = 3,
    backoff_seconds: float = 2,
    backoff_multiplier: float = 2.0,
    retry_on: tuple = (TransientError,),
    logger: Optional[logging.Logger] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    """
    Call func until it returns, retrying only the exception types in retry_on.

    Any other exception, and PermanentError even when retry_on would
    match it, propagates from the first attempt. After max_attempts the
    last retryable error is re-raised.

    Args:
        func: Zero-argument callable
        max_attempts: Total attempts including the first
        backoff_seconds: Delay before the second attempt
        backoff_multiplier: Growth factor for each further delay
        retry_on: Exception types worth another attempt
        logger: Logger for retry messages
        sleep: Sleep function (injected by tests)
    """
    delay = backoff_seconds
    for attempt in range(1, max_attempts + 1):
        try:
            return func()
        except PermanentError:
            raise
        except retry_on as e:
            if attempt == max_attempts:
                if logger:
                    logger.error(f"Giving up after {max_attempts} attempts: {e}")
                raise
            if logger:
                logger.warning(f"Attempt {attempt}/{max_attempts} failed: {e}. Retrying in {delay}s")
            sleep(delay)
            delay *= backoff_multiplier


def format_duration(seconds: float) -> str:
    """Render seconds as e.g. "45s", "1m 23s" or "1h 2m 3s"."""
    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def print_banner(title: str) -> None:
    """
    Print a banner to console.

    Args:
        title: Banner title
    """
    console.rule(f"[bold blue]{title}[/bold blue]")


def print_panel(title: str, body: str) -> None:
    """Print a bordered section."""
    console.print(Panel(body, title=title, title_align="left", expand=False))


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


def wait_for_enter(message: str) -> None:
    """Block until the operator presses Enter."""
    console.input(f"[bold magenta]?[/bold magenta] {message}")
