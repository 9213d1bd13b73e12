"""
Centralized logging setup and configuration.

Provides structured, colored logging for the certificate expiry notifier.
Policies are evaluated on scheduler worker threads, so every line carries
the thread name, and APScheduler's own messages (missed runs, skipped
instances) are routed through the same handlers.
"""

import logging
import sys
from typing import List, Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(threadName)s] %(message)s"

# Third-party loggers that share the notifier's handlers
LIBRARY_LOGGERS = ("apscheduler",)


class ColoredFormatter(logging.Formatter):
    """
    Formatter that adds ANSI colors to the level name.

    Colors are only applied when output is to a terminal.
    """

    COLORS = {
        "DEBUG": "\033[36m",     # Cyan
        "INFO": "\033[32m",      # Green
        "WARNING": "\033[33m",   # Yellow
        "ERROR": "\033[31m",     # Red
        "CRITICAL": "\033[35m",  # Magenta
        "RESET": "\033[0m",
    }

    def __init__(self, fmt: str = None, use_colors: bool = True):
        """
        Initialize the formatter.

        Args:
            fmt: Log message format string (defaults to LOG_FORMAT)
            use_colors: Whether to use colors when stdout is a terminal
        """
        super().__init__(fmt or LOG_FORMAT)
        self.use_colors = use_colors and sys.stdout.isatty()

    def format(self, record: logging.LogRecord) -> str:
        """
        Format the log record, coloring the level and warning/error text.

        Args:
            record: Log record to format

        Returns:
            Formatted log message
        """
        original_levelname = record.levelname
        original_msg = record.msg

        if self.use_colors:
            color = self.COLORS.get(record.levelname, "")
            reset = self.COLORS["RESET"]
            record.levelname = f"{color}{record.levelname}{reset}"
            if record.levelno >= logging.WARNING:
                record.msg = f"{color}{record.msg}{reset}"

        try:
            return super().format(record)
        finally:
            record.levelname = original_levelname
            record.msg = original_msg


class StructuredLogger(logging.Logger):
    """
    Logger with helpers for section headers and outcome lines.
    """

    def section(self, title: str) -> None:
        """
        Log a section header.

        Args:
            title: Section title
        """
        self.info("")
        self.info("=" * 60)
        self.info(title)
        self.info("=" * 60)

    def subsection(self, title: str) -> None:
        """
        Log a subsection header.

        Args:
            title: Subsection title
        """
        self.info("")
        self.info(f"--- {title} ---")

    def success(self, message: str) -> None:
        """
        Log a success message (INFO level with [OK] prefix).

        Args:
            message: Success message
        """
        self.info(f"[OK] {message}")

    def failure(self, message: str) -> None:
        """
        Log a failure message (ERROR level with [FAIL] prefix).

        Args:
            message: Failure message
        """
        self.error(f"[FAIL] {message}")


# Global logger instance
_logger: Optional[StructuredLogger] = None


def _build_handlers(level: int, use_colors: bool, log_file: Optional[str]) -> List[logging.Handler]:
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(ColoredFormatter(use_colors=use_colors))
    handlers: List[logging.Handler] = [console_handler]

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handlers.append(file_handler)

    return handlers


def setup_logger(
    name: str = "CertNotifier",
    verbose: bool = False,
    use_colors: bool = True,
    log_file: Optional[str] = None,
) -> StructuredLogger:
    """
    Setup and configure the global logger.

    Library loggers listed in LIBRARY_LOGGERS get the same handlers; they
    log at WARNING unless verbose is set.

    Args:
        name: Logger name
        verbose: Enable debug-level logging
        use_colors: Enable colored output
        log_file: Optional file path for log output

    Returns:
        Configured StructuredLogger instance
    """
    global _logger

    logging.setLoggerClass(StructuredLogger)
    logger = logging.getLogger(name)
    logger.__class__ = StructuredLogger

    level = logging.DEBUG if verbose else logging.INFO
    logger.setLevel(level)

    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()

    handlers = _build_handlers(level, use_colors, log_file)
    for handler in handlers:
        logger.addHandler(handler)

    for library_name in LIBRARY_LOGGERS:
        library_logger = logging.getLogger(library_name)
        library_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
        library_logger.handlers.clear()
        for handler in handlers:
            library_logger.addHandler(handler)
        library_logger.propagate = False

    _logger = logger
    return logger


def get_logger() -> StructuredLogger:
    """
    Get the global logger instance, creating a default one on first use.

    Returns:
        The configured StructuredLogger instance
    """
    global _logger

    if _logger is None:
        _logger = setup_logger()

    return _logger
