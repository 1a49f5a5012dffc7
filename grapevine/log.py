"""
Grapevine client logging configuration

Centralized logging setup for consistent formatting across the package.
Console output by default, an extra file handler when GRAPEVINE_LOG_FILE
is set.

Usage:
    from grapevine.log import get_logger

    logger = get_logger(__name__)
    logger.info("Connecting to hub...")
    logger.warning("Request timed out", extra={"event": "tells/send", "ref": "6c1f..."})
"""

from __future__ import annotations
import logging
import os
import sys
from pathlib import Path
from typing import Any, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from grapevine.frame import Frame


# ========================================
#           LOGGING FORMATTERS
# ========================================

_CONTEXT_FIELDS = ("event", "ref", "game", "state")


def _context_prefix(record: logging.LogRecord) -> str:
    context = []
    for name in _CONTEXT_FIELDS:
        value = getattr(record, name, None)
        if value is None:
            continue
        if name == "ref" and isinstance(value, str) and len(value) > 8:
            value = f"{value[:8]}..."
        context.append(f"{name}={value}")
    return f"[{' '.join(context)}] " if context else ""


class GenericFormatter(logging.Formatter):
    """Formatter that prefixes grapevine context taken from ``extra`` fields"""

    def format(self, record: logging.LogRecord) -> str:
        prefix = _context_prefix(record)
        if prefix and not getattr(record, "_grapevine_prefixed", False):
            record.msg = f"{prefix}{record.msg}"
            record._grapevine_prefixed = True
        return super().format(record)


class ColoredFormatter(GenericFormatter):
    """Colored formatter for console output"""

    # ANSI Color codes
    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
        'RESET': '\033[0m'       # Reset
    }

    def format(self, record: logging.LogRecord) -> str:
        levelname = record.levelname
        if levelname in self.COLORS:
            record.levelname = f"{self.COLORS[levelname]}{levelname}{self.COLORS['RESET']}"
        try:
            return super().format(record)
        finally:
            record.levelname = levelname


# ========================================
#           LOGGING CONFIGURATION
# ========================================

_loggers_configured = set()


def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """
    Get a configured logger for the given module.

    Args:
        name: Usually __name__ from the calling module
        level: Override log level ("DEBUG", "INFO", "WARNING", "ERROR")

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    # Only configure each logger once
    if name not in _loggers_configured:
        _configure_logger(logger, level)
        _loggers_configured.add(name)

    return logger


def _configure_logger(logger: logging.Logger, level: Optional[str] = None) -> None:
    """Configure a logger with appropriate handlers and formatters"""

    logger.setLevel(_get_log_level(level))

    # Clear existing handlers to avoid duplicates
    logger.handlers.clear()

    _add_console_handler(logger, colored=_is_development())
    log_file = os.getenv("GRAPEVINE_LOG_FILE")
    if log_file:
        _add_file_handler(logger, Path(log_file))

    # Prevent duplicate messages from parent loggers
    logger.propagate = False


def _get_log_level(level: Optional[str] = None) -> int:
    """Determine appropriate log level"""

    level = level or os.getenv("GRAPEVINE_LOG_LEVEL")
    if level:
        return getattr(logging, level.upper(), logging.INFO)

    return logging.DEBUG if os.getenv("PYTHON_ENV", "").lower() in ("dev", "development") else logging.INFO


def _is_development() -> bool:
    """Detect if we're in development mode"""
    return os.getenv('PYTHON_ENV', '').lower() in ['dev', 'development'] or 'pytest' in sys.modules


def _add_console_handler(logger: logging.Logger, colored: bool = True) -> None:
    """Add console handler with appropriate formatter"""

    fmt = '[%(levelname)-8s][%(asctime)s][%(name)-5s]: %(message)s'
    handler = logging.StreamHandler(sys.stderr)

    if colored and _supports_color():
        formatter: logging.Formatter = ColoredFormatter(fmt=fmt, datefmt='%H:%M:%S')
    else:
        formatter = GenericFormatter(fmt=fmt, datefmt='%Y-%m-%d %H:%M:%S')

    handler.setFormatter(formatter)
    logger.addHandler(handler)


def _add_file_handler(logger: logging.Logger, log_file: Path) -> None:
    """Add file handler for persistent logging"""

    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_file, encoding="utf-8")

    formatter = GenericFormatter(
        fmt='%(asctime)s | %(name)-30s | %(levelname)-8s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    handler.setFormatter(formatter)
    logger.addHandler(handler)


def _supports_color() -> bool:
    """Check if terminal supports color output"""

    # stderr must be a terminal
    if not (hasattr(sys.stderr, "isatty") and sys.stderr.isatty()):
        return False

    # TERM should not be dumb
    if os.getenv("TERM", "") == "dumb":
        return False

    # On modern Windows terminals, ANSI colors are supported
    if sys.platform == "win32":
        return os.getenv("ANSICON") is not None or os.getenv("WT_SESSION") is not None or os.getenv("TERM_PROGRAM") == "vscode"

    return True


# ========================================
#           CONVENIENCE FUNCTIONS
# ========================================

def configure_root_logging(level: str = "INFO") -> None:
    """
    Configure root logging for an application embedding the client.
    Call this once at application startup.

    Args:
        level: Root log level ("DEBUG", "INFO", "WARNING", "ERROR")
    """
    root_logger = logging.getLogger()
    _configure_logger(root_logger, level)
    for name in _loggers_configured:
        logging.getLogger(name).setLevel(_get_log_level(level))


def log_frame(logger: logging.Logger, level: str, message: str,
              frame: Optional["Frame"] = None, **context: Any) -> None:
    """
    Log a grapevine frame with structured context.

    Args:
        logger: Logger instance
        level: Log level ("debug", "info", "warning", "error")
        message: Log message
        frame: Frame for automatic context extraction
        **context: Additional context fields

    Example:
        log_frame(logger, "debug", "Dispatching push", frame=frame, state="ready")
    """
    extra_context = {}

    if frame is not None:
        extra_context["event"] = frame.event
        if frame.ref is not None:
            extra_context["ref"] = frame.ref
        game = frame.payload.get("game") if isinstance(frame.payload, dict) else None
        if game:
            extra_context["game"] = game

    extra_context.update(context)

    log_func = getattr(logger, level.lower())
    log_func(message, extra=extra_context)
