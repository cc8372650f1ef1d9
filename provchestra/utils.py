"""
Utility functions for provchestra.

Includes logging setup, secret-safe error messages, and console output.
"""

import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler


# Global console for pretty output
console = Console()

_BEARER = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9\-._~+/]+=*")
_JWT = re.compile(r"\beyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]*")
_TOKEN_FIELD = re.compile(r'(?i)("?(?:access_?token|accessToken|password|client_secret)"?\s*[:=]\s*)("[^"]*"|\S+)')


def setup_logging(log_file: Path, log_level: str = "INFO", log_format: str = "structured", console_output: bool = True) -> logging.Logger:
    """
    Set up logging for a deployment run.

    Args:
        log_file: Path to log file
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: "structured" (JSON) or "pretty" (human-readable)
        console_output: Also log to console

    Returns:
        Configured logger
    """
    ensure_directory_permissions(log_file.parent)

    logger = logging.getLogger("provchestra")
    logger.setLevel(getattr(logging, log_level.upper()))
    logger.handlers = []  # Clear existing handlers

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
            console_handler = RichHandler(console=console, rich_tracebacks=True, show_time=False)
        else:
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(
                logging.Formatter("%(levelname)s: %(message)s")
            )
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

        # Add extra fields if present
        for key in ("run_id", "step", "resource"):
            if hasattr(record, key):
                log_data[key] = getattr(record, key)

        if record.exc_info:
            log_data["exception"] = sanitize_text(self.formatException(record.exc_info))

        return json.dumps(log_data)


def sanitize_text(message: str) -> str:
    """Redact bearer tokens, JWTs and token/password fields from text."""
    message = _BEARER.sub("Bearer [REDACTED]", message)
    message = _JWT.sub("[REDACTED]", message)
    message = _TOKEN_FIELD.sub(r"\1[REDACTED]", message)
    return message


def sanitize_error_message(error: Exception, max_length: int = 500) -> str:
    """
    Sanitize an error message before it is logged or persisted.

    Args:
        error: Exception to sanitize
        max_length: Maximum message length

    Returns:
        Sanitized error message
    """
    message = sanitize_text(str(error))

    # Truncate if too long
    if len(message) > max_length:
        message = message[:max_length] + "..."

    return message


def ensure_directory_permissions(directory: Path, mode: int = 0o700) -> None:
    """
    Ensure directory exists with correct permissions.

    Args:
        directory: Directory path
        mode: Permission mode (default: 0o700)
    """
    directory.mkdir(parents=True, exist_ok=True)
    directory.chmod(mode)


def format_duration(seconds: float) -> str:
    """
    Format duration in seconds to human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted string (e.g., "1m 23s", "45s")
    """
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
    """Print a banner to console."""
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
