"""
Logging configuration module for contact_reconcile.

Provides centralized logging configuration with support for:
- Console and file logging
- Configurable log levels via environment variables
- Verbose mode for detailed output
- Colored output for better readability (when supported)
- A dedicated trace log recording every emitted store operation
"""

import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from contact_reconcile.utils.paths import default_log_dir

# Default log format
DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Simplified format for console (less verbose)
CONSOLE_FORMAT = "%(levelname)s: %(message)s"

# Verbose format (includes more details)
VERBOSE_FORMAT = (
    "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
)

# Date format for log timestamps
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Environment variable names
ENV_LOG_LEVEL = "CONTACT_RECONCILE_LOG_LEVEL"
ENV_DEBUG = "CONTACT_RECONCILE_DEBUG"
ENV_LOG_FILE = "CONTACT_RECONCILE_LOG_FILE"

# Logger names
ROOT_LOGGER_NAME = "contact_reconcile"
TRACE_LOGGER_NAME = "contact_reconcile.trace"

# Trace log format with millisecond timestamps
TRACE_LOG_FORMAT = "%(asctime)s.%(msecs)03d - %(levelname)s - %(message)s"
TRACE_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Log file name prefixes, also used by cleanup_old_logs()
LOG_FILE_PREFIX = "contact_reconcile_"
TRACE_FILE_PREFIX = "trace_"

# Log directory configured by the last setup_logging() call
_configured_log_dir: Optional[Path] = None


class ColoredFormatter(logging.Formatter):
    """
    A logging formatter that adds ANSI color codes to log messages.

    Colors are only applied when output is to a terminal that supports them.
    """

    # ANSI color codes
    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(
        self,
        fmt: Optional[str] = None,
        datefmt: Optional[str] = None,
        use_colors: bool = True,
    ):
        super().__init__(fmt, datefmt)
        self.use_colors = use_colors and self._supports_color()

    def _supports_color(self) -> bool:
        """Check if the terminal supports colors."""
        if not hasattr(sys.stderr, "isatty") or not sys.stderr.isatty():
            return False

        # https://no-color.org/
        if os.environ.get("NO_COLOR"):
            return False

        return os.environ.get("TERM", "") != "dumb"

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with optional colors."""
        record = logging.makeLogRecord(record.__dict__)

        if self.use_colors and record.levelname in self.COLORS:
            color = self.COLORS[record.levelname]
            record.levelname = f"{color}{record.levelname}{self.RESET}"
            record.msg = f"{color}{record.msg}{self.RESET}"

        return super().format(record)


def get_log_level_from_env() -> int:
    """
    Get the logging level from environment variables.

    CONTACT_RECONCILE_DEBUG takes precedence over
    CONTACT_RECONCILE_LOG_LEVEL; unknown level names fall back to INFO.

    Returns:
        Logging level constant (e.g., logging.DEBUG, logging.INFO)
    """
    if os.environ.get(ENV_DEBUG, "").lower() in ("1", "true", "yes"):
        return logging.DEBUG

    level_str = os.environ.get(ENV_LOG_LEVEL, "INFO").upper()

    level_map = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "WARN": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }

    return level_map.get(level_str, logging.INFO)


def _daily_log_name() -> str:
    return f"{LOG_FILE_PREFIX}{datetime.now().strftime('%Y%m%d')}.log"


def get_log_file_path() -> Optional[Path]:
    """
    Get the log file path from environment or default location.

    Returns:
        Path to log file, or None if file logging is disabled
    """
    log_file = os.environ.get(ENV_LOG_FILE)
    if log_file is not None:
        if log_file.lower() in ("none", "disabled", ""):
            return None
        return Path(log_file)

    return default_log_dir() / _daily_log_name()


def setup_logging(
    level: Optional[int] = None,
    verbose: bool = False,
    log_dir: Optional[Path] = None,
    log_file: Optional[Path] = None,
    enable_file_logging: bool = True,
    use_colors: bool = True,
) -> logging.Logger:
    """
    Configure logging for the contact_reconcile application.

    Sets up both console and file logging handlers with appropriate
    formatters and levels.

    Args:
        level: Logging level (e.g., logging.DEBUG). If None, determined from
               environment variables.
        verbose: If True, use verbose format with more details.
        log_dir: Directory for log files. If provided, overrides default.
        log_file: Path to log file. If None, uses log_dir or default.
        enable_file_logging: If False, disable file logging entirely.
        use_colors: If True, use colored output for console (when supported).

    Returns:
        The root logger for contact_reconcile

    Example:
        # Verbose mode for CLI
        setup_logging(verbose=True)

        # Custom log directory from config
        setup_logging(log_dir=Path('/path/to/logs'))
    """
    global _configured_log_dir

    if level is None:
        level = get_log_level_from_env()
    if verbose:
        level = logging.DEBUG

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(level)
    logger.handlers.clear()

    # Prevent propagation to root logger to avoid duplicate messages
    logger.propagate = False

    console_format = VERBOSE_FORMAT if verbose else CONSOLE_FORMAT

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)

    console_formatter: logging.Formatter
    if use_colors:
        console_formatter = ColoredFormatter(console_format, DATE_FORMAT)
    else:
        console_formatter = logging.Formatter(console_format, DATE_FORMAT)

    console_handler.setFormatter(console_formatter)
    logger.addHandler(console_handler)

    if enable_file_logging:
        file_path: Optional[Path]
        if log_file:
            file_path = log_file
        elif log_dir:
            file_path = log_dir / _daily_log_name()
        else:
            file_path = get_log_file_path()

        if file_path:
            try:
                file_path.parent.mkdir(parents=True, exist_ok=True)

                file_handler = logging.FileHandler(file_path, encoding="utf-8")
                file_handler.setLevel(logging.DEBUG)  # Always capture debug in file
                file_handler.setFormatter(
                    logging.Formatter(VERBOSE_FORMAT, DATE_FORMAT)
                )
                logger.addHandler(file_handler)

                logger.debug(f"Log file: {file_path}")
            except OSError as e:
                logger.warning(f"Could not create log file {file_path}: {e}")

    if log_dir:
        _configured_log_dir = log_dir
    elif log_file:
        _configured_log_dir = log_file.parent
    else:
        _configured_log_dir = None

    return logger


def _resolve_log_dir(log_dir: Optional[Path]) -> Path:
    if log_dir:
        return log_dir
    if _configured_log_dir:
        return _configured_log_dir
    return default_log_dir()


def cleanup_old_logs(log_dir: Optional[Path] = None, keep_count: int = 10) -> int:
    """
    Clean up old log files, keeping only the most recent ones.

    Removes old contact_reconcile_*.log and trace_*.log files from the log
    directory, keeping only the specified number of most recent files of
    each type.

    Args:
        log_dir: Directory containing log files. If None, uses configured
                 directory or the default one.
        keep_count: Number of log files to keep for each type. Set to 0 to
                    disable cleanup.

    Returns:
        Number of files deleted.
    """
    if keep_count <= 0:
        return 0

    logs_dir = _resolve_log_dir(log_dir)
    if not logs_dir.exists():
        return 0

    deleted_count = 0
    for prefix in (LOG_FILE_PREFIX, TRACE_FILE_PREFIX):
        log_files = sorted(
            logs_dir.glob(f"{prefix}*.log"),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )
        for old_log in log_files[keep_count:]:
            try:
                old_log.unlink()
                deleted_count += 1
            except OSError:
                pass  # Ignore errors deleting old logs

    return deleted_count


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for a specific module.

    Returns a child logger of the contact_reconcile logger hierarchy.

    Args:
        name: Name of the module (typically __name__)

    Returns:
        Logger instance for the module
    """
    if not name.startswith(ROOT_LOGGER_NAME):
        name = f"{ROOT_LOGGER_NAME}.{name}"

    return logging.getLogger(name)


def set_log_level(level: int) -> None:
    """
    Change the logging level at runtime.

    Args:
        level: New logging level (e.g., logging.DEBUG)
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(level)

    for handler in logger.handlers:
        # Keep file handler at DEBUG for complete logs
        if not isinstance(handler, logging.FileHandler):
            handler.setLevel(level)


def get_trace_log_path(log_dir: Optional[Path] = None) -> Path:
    """
    Get the path for the trace log file of this session.

    Args:
        log_dir: Optional directory for log files. If None, uses configured
                 directory from setup_logging() or the default one.

    Returns:
        Path to a timestamped trace log file
    """
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return _resolve_log_dir(log_dir) / f"{TRACE_FILE_PREFIX}{timestamp}.log"


def setup_trace_logger(
    log_file: Optional[Path] = None,
    level: int = logging.DEBUG,
) -> logging.Logger:
    """
    Set up a dedicated logger for reconciliation traces.

    The trace log records, per reconciliation session:
    - Every snapshot processed with its identity and chosen path
    - Every operation emitted for it
    - Flush results and the resulting watermark

    Args:
        log_file: Optional custom path for the log file. If None, uses a
                  timestamped file in the log directory.
        level: Logging level (default: DEBUG for comprehensive logging)

    Returns:
        Logger instance for reconciliation traces
    """
    logger = logging.getLogger(TRACE_LOGGER_NAME)
    logger.setLevel(level)
    logger.handlers.clear()
    logger.propagate = False

    file_path = log_file if log_file else get_trace_log_path()

    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(file_path, encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(
            logging.Formatter(TRACE_LOG_FORMAT, TRACE_DATE_FORMAT)
        )
        logger.addHandler(file_handler)

        logger.info("=" * 80)
        logger.info(f"Trace session started at {datetime.now().isoformat()}")
        logger.info(f"Log file: {file_path}")
        logger.info("=" * 80)

    except OSError as e:
        # Fall back to the console if the file cannot be created
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        console_handler.setFormatter(
            logging.Formatter(TRACE_LOG_FORMAT, TRACE_DATE_FORMAT)
        )
        logger.addHandler(console_handler)
        logger.warning(f"Could not create trace log file {file_path}: {e}")
        logger.warning("Falling back to console output for trace logs")

    return logger


def get_trace_logger() -> logging.Logger:
    """
    Get the trace logger instance.

    If setup_trace_logger() has not been called, records propagate to the
    contact_reconcile logger like any other module logger.
    """
    return logging.getLogger(TRACE_LOGGER_NAME)


__all__ = [
    "setup_logging",
    "get_logger",
    "set_log_level",
    "cleanup_old_logs",
    "ColoredFormatter",
    "get_log_level_from_env",
    "get_log_file_path",
    "setup_trace_logger",
    "get_trace_logger",
    "get_trace_log_path",
    "DEFAULT_FORMAT",
    "CONSOLE_FORMAT",
    "VERBOSE_FORMAT",
    "DATE_FORMAT",
    "TRACE_LOG_FORMAT",
    "TRACE_DATE_FORMAT",
]
