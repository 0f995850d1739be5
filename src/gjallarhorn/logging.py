"""Centralized logging: Rich console lines for people, structlog JSON for files.

This module provides:
1. Icon vocabulary (Icon class namespace)
2. Core log functions (log, info, warn, error)
3. Domain-specific helpers (worker_state_changed, worker_denied, etc.)
4. Structlog configuration for the client (configure) and the worker
   (configure_worker)

The worker's stdout carries the wire protocol, so worker logs only ever go
to stderr, where the client drains them into its own log.
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from datetime import datetime
from typing import TYPE_CHECKING

import structlog
from rich.console import Console

if TYPE_CHECKING:
    from gjallarhorn.config import Config

# Rich console for colorful human-readable output
_console = Console(highlight=False, stderr=True)

# The dashboard owns the terminal; console lines are suppressed while it runs
_console_enabled = True


# ─────────────────────────────────────────────────────────────────────────────
# Icons
# ─────────────────────────────────────────────────────────────────────────────


class Icon:
    """Icon vocabulary for console output."""

    OK = "[bold green]✓[/]"
    FAIL = "[bold red]✗[/]"
    LOCK = "🔒"
    SIGNAL = "⚡"
    CONNECTED = "[green]⬤[/]"
    DISCONNECTED = "[red]⬤[/]"


_LEVEL_STYLES = {
    "info": "[bright_blue]\\[info][/]",
    "warn": "[yellow]\\[warn][/]",
    "error": "[bold red]\\[err][/] ",
}


# ─────────────────────────────────────────────────────────────────────────────
# Core Functions
# ─────────────────────────────────────────────────────────────────────────────


def log(level: str, msg: str, icon: str = "") -> None:
    """Print a log message with timestamp and level.

    Args:
        level: Log level (info, warn, error)
        msg: Message to print (can include Rich markup)
        icon: Optional icon to show after level (e.g., Icon.OK)
    """
    if not _console_enabled:
        return
    ts = datetime.now().strftime("%H:%M:%S")
    lvl = _LEVEL_STYLES.get(level, f"[{level}]")
    icon_part = f" {icon}" if icon else ""
    _console.print(f"[dim]{ts}[/] {lvl}{icon_part} {msg}")


def info(msg: str, icon: str = "") -> None:
    """Log an info message."""
    log("info", msg, icon)


def warn(msg: str, icon: str = "") -> None:
    """Log a warning message."""
    log("warn", msg, icon)


def error(msg: str, icon: str = "") -> None:
    """Log an error message."""
    log("error", msg, icon)


def set_console_enabled(enabled: bool) -> None:
    global _console_enabled
    _console_enabled = enabled


# ─────────────────────────────────────────────────────────────────────────────
# Domain Helpers
# ─────────────────────────────────────────────────────────────────────────────


def monitor_started(cadence_ms: int, worker_enabled: bool) -> None:
    """Log pipeline startup."""
    worker = "with privileged worker" if worker_enabled else "unprivileged only"
    info(f"Monitoring every [bold]{cadence_ms}ms[/] [dim]({worker})[/]", Icon.OK)


def monitor_stopped() -> None:
    info("Monitor stopped", Icon.OK)


def worker_state_changed(old: str, new: str) -> None:
    """Log a worker lifecycle transition."""
    icon = Icon.CONNECTED if new in ("authorized", "streaming") else Icon.DISCONNECTED
    info(f"Worker [dim]{old}[/] → [bold]{new}[/]", icon)


def worker_denied(reason: str) -> None:
    """Log refused or impossible elevation. Session continues unprivileged."""
    warn(f"Elevation denied [dim]({reason})[/]; disk and memory details unavailable", Icon.LOCK)


def worker_crashed(returncode: int | None) -> None:
    warn(f"Privileged worker exited unexpectedly [dim](code {returncode})[/]", Icon.FAIL)


def worker_error(reason: str) -> None:
    warn(f"Worker reported: {reason}")


def signal_received(name: str) -> None:
    """Log signal received."""
    info(f"Received [bold]{name}[/]", Icon.SIGNAL)


def config_created(path: str) -> None:
    info(f"Created config [dim]{path}[/]", Icon.OK)


# ─────────────────────────────────────────────────────────────────────────────
# Structlog Configuration
# ─────────────────────────────────────────────────────────────────────────────


def _add_source(source: str) -> structlog.types.Processor:
    """Create a processor that adds a source field to log events."""

    def processor(
        logger: structlog.types.WrappedLogger,
        method_name: str,
        event_dict: structlog.types.EventDict,
    ) -> structlog.types.EventDict:
        event_dict["source"] = source
        return event_dict

    return processor


def _json_formatter(source: str) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processor=structlog.processors.JSONRenderer(),
        foreign_pre_chain=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
            structlog.processors.add_log_level,
            _add_source(source),
            structlog.processors.format_exc_info,
        ],
    )


def _configure_structlog() -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
            structlog.processors.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


def configure(config: Config, console: bool = True) -> None:
    """Configure client logging: JSON Lines file plus optional Rich console lines.

    Args:
        config: Application config with paths and rotation settings
        console: False while the dashboard owns the terminal
    """
    set_console_enabled(console)
    config.state_dir.mkdir(parents=True, exist_ok=True)

    level = _level(config.system.log_level)
    file_handler = logging.handlers.RotatingFileHandler(
        config.log_path,
        maxBytes=config.system.log_max_bytes,
        backupCount=config.system.log_backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(_json_formatter("client"))

    stdlib_root = logging.getLogger()
    stdlib_root.setLevel(level)
    stdlib_root.handlers.clear()
    stdlib_root.addHandler(file_handler)

    _configure_structlog()


def configure_worker(level: str = "info") -> None:
    """Configure worker logging: JSON Lines on stderr only."""
    set_console_enabled(False)
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(_level(level))
    handler.setFormatter(_json_formatter("worker"))

    stdlib_root = logging.getLogger()
    stdlib_root.setLevel(_level(level))
    stdlib_root.handlers.clear()
    stdlib_root.addHandler(handler)

    _configure_structlog()
