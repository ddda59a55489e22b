"""Unified logging infrastructure for autofwd.

This module provides:
1. Centralized logging configuration
2. Debug mode via AUTOFWD_DEBUG env var or programmatic flag
3. Log levels via AUTOFWD_LOG_LEVEL env var
4. Rich console output for the CLI, optional rotating log file
5. Daemon mode: tagged stderr lines for agents and the forwarding server

Usage:
    from autofwd.utils.logging import get_logger, configure_logging

    # In a daemon entry point:
    configure_logging(daemon=True, tag="SSH-AGENT")

    # In any module:
    logger = get_logger(__name__)
    logger.info("Starting operation")
    logger.error("Something failed", exc=exception)

Environment Variables:
    AUTOFWD_DEBUG=1          Enable debug mode (verbose output)
    AUTOFWD_LOG_LEVEL=DEBUG  Set log level (DEBUG, INFO, WARNING, ERROR)
    AUTOFWD_LOG_FILE=/path   Also write logs to a rotating file
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from rich.console import Console

# Global state
_configured = False
_debug_mode = False
_daemon_mode = False
_tag = "MAIN"

# Shared Rich console instance
console = Console(stderr=True)

# Custom log level for success messages
SUCCESS_LEVEL = 25
logging.addLevelName(SUCCESS_LEVEL, "SUCCESS")


def is_debug_mode() -> bool:
    """Check if debug mode is enabled."""
    return _debug_mode or os.environ.get("AUTOFWD_DEBUG", "").lower() in ("1", "true", "yes")


class _TagFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.tag = _tag
        return True


def configure_logging(
    debug: bool = False,
    daemon: bool = False,
    tag: Optional[str] = None,
    log_level: Optional[str] = None,
    log_file: Optional[Path] = None,
) -> None:
    """Configure the logging system.

    Later calls only update the daemon tag, so every process entry point can
    name itself even if a module already triggered the default setup.

    Args:
        debug: Enable debug mode (verbose output)
        daemon: Daemon mode (tagged stderr lines, no Rich formatting)
        tag: Process tag printed in daemon mode, e.g. "SSH-AGENT"
        log_level: Override log level (DEBUG, INFO, WARNING, ERROR)
        log_file: Also write to this rotating log file
    """
    global _configured, _debug_mode, _daemon_mode, _tag

    if tag:
        _tag = tag

    if _configured and not daemon:
        return

    _debug_mode = debug or is_debug_mode()
    _daemon_mode = daemon

    if log_level:
        level_name = log_level.upper()
    else:
        level_name = os.environ.get("AUTOFWD_LOG_LEVEL", "DEBUG" if _debug_mode else "INFO").upper()

    level = getattr(logging, level_name, logging.INFO)

    root_logger = logging.getLogger("autofwd")
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    env_log_file = os.environ.get("AUTOFWD_LOG_FILE")
    target_file = log_file or (Path(env_log_file) if env_log_file else None)
    if target_file:
        try:
            target_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                target_file,
                maxBytes=10 * 1024 * 1024,  # 10MB
                backupCount=5,
                encoding="utf-8",
            )
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(
                logging.Formatter(
                    "%(asctime)s | %(levelname)-8s | %(tag)s | %(name)s | %(message)s",
                    datefmt="%Y-%m-%d %H:%M:%S",
                )
            )
            file_handler.addFilter(_TagFilter())
            root_logger.addHandler(file_handler)
        except (OSError, PermissionError):
            # Can't write log file, continue without it
            pass

    if _daemon_mode:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setLevel(level)
        stderr_handler.setFormatter(logging.Formatter("[%(tag)s][%(levelname)s] %(message)s"))
        stderr_handler.addFilter(_TagFilter())
        root_logger.addHandler(stderr_handler)

    if not root_logger.handlers:
        # CLI mode renders on the Rich console instead
        root_logger.addHandler(logging.NullHandler())

    _configured = True

    root_logger.debug(
        f"Logging configured: level={level_name}, debug={_debug_mode}, daemon={_daemon_mode}"
    )


class AutofwdLogger:
    """Logging wrapper with Rich console output.

    In daemon mode everything goes through the stdlib handlers; in CLI mode
    messages are also rendered on the Rich console.
    """

    def __init__(self, name: str):
        self.name = name
        self.logger = logging.getLogger(name)
        self.console = console

    def _echo(self, markup: str) -> None:
        if not _daemon_mode:
            self.console.print(markup)

    def debug(self, message: str, console_output: bool = False) -> None:
        """Log debug message.

        Debug goes to the handlers only, unless console_output is set or
        AUTOFWD_DEBUG is enabled.
        """
        self.logger.debug(message)
        if console_output or is_debug_mode():
            self._echo(f"[dim][DEBUG] {message}[/dim]")

    def info(self, message: str, console_output: bool = True) -> None:
        self.logger.info(message)
        if console_output:
            self._echo(f"[blue]{message}[/blue]")

    def success(self, message: str, console_output: bool = True) -> None:
        """Log success message (green output)."""
        self.logger.log(SUCCESS_LEVEL, message)
        if console_output:
            self._echo(f"[green]✓ {message}[/green]")

    def warning(self, message: str, console_output: bool = True) -> None:
        self.logger.warning(message)
        if console_output:
            self._echo(f"[yellow]⚠ {message}[/yellow]")

    def error(
        self,
        message: str,
        exc: Optional[BaseException] = None,
        console_output: bool = True,
    ) -> None:
        """Log error message (red output).

        Args:
            message: Error message
            exc: Optional exception to include in log
            console_output: Output to console
        """
        if exc:
            error_msg = f"{message}: {exc}"
            self.logger.error(error_msg, exc_info=exc if is_debug_mode() else None)
        else:
            error_msg = message
            self.logger.error(message)

        if console_output:
            self._echo(f"[red]✗ {error_msg}[/red]")


def get_logger(name: str) -> AutofwdLogger:
    """Get or create a logger for a module.

    Example:
        logger = get_logger(__name__)
        logger.info("Operation started")
    """
    if not _configured:
        configure_logging()

    # Ensure name is under autofwd namespace
    if not name.startswith("autofwd"):
        name = f"autofwd.{name}"

    return AutofwdLogger(name)
