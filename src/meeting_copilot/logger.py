"""
Centralized logging for Meeting Copilot.

Logs to a file under logs/ (or MEETING_COPILOT_LOG_DIR). Falls back to stderr
when the directory cannot be created, e.g. on a read-only install.
"""

import logging
import os
import sys
from pathlib import Path

LOGGER_NAME = "meeting_copilot"
LOG_FILENAME = "meeting_copilot.log"


def _default_logs_dir() -> Path:
    override = os.environ.get("MEETING_COPILOT_LOG_DIR")
    if override:
        return Path(override)
    return Path(__file__).resolve().parent.parent.parent / "logs"


class CopilotLogger:
    """Centralized logger for the application."""

    _instance = None
    _logger = None

    def __init__(self):
        """Initialize the logger (singleton)."""
        if CopilotLogger._logger is None:
            CopilotLogger._logger = self._setup_logger()

    @classmethod
    def get_logger(cls):
        """Get the singleton logger instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._logger

    @classmethod
    def set_level(cls, level):
        """Change the level of the logger and all of its handlers.

        Args:
            level: logging level name ("DEBUG", "INFO", ...) or number
        """
        if isinstance(level, str):
            level = logging.getLevelName(level.upper())
            if not isinstance(level, int):
                raise ValueError(f"Unknown log level: {level}")
        logger = cls.get_logger()
        logger.setLevel(level)
        for handler in logger.handlers:
            handler.setLevel(level)

    def _setup_logger(self):
        """Set up the file logger (stderr if the logs directory is unusable)."""
        logger = logging.getLogger(LOGGER_NAME)
        logger.setLevel(logging.WARNING)

        # Remove any existing handlers
        logger.handlers = []

        try:
            logs_dir = _default_logs_dir()
            logs_dir.mkdir(parents=True, exist_ok=True)
            handler = logging.FileHandler(logs_dir / LOG_FILENAME, mode='a', encoding='utf-8')
        except OSError:
            handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.WARNING)

        # Format: [2024-01-15 14:30:25] ERROR - message
        formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        handler.setFormatter(formatter)

        logger.addHandler(handler)

        return logger


def log_error(message, exception=None):
    """
    Log an error message.

    Args:
        message: Error message string
        exception: Optional exception object to include traceback
    """
    logger = CopilotLogger.get_logger()
    if exception:
        logger.error(f"{message}: {str(exception)}", exc_info=exception)
    else:
        logger.error(message)


def log_exception(exception, context=""):
    """
    Log an exception with full traceback.

    Args:
        exception: Exception object
        context: Optional context string (e.g., "in insight dispatch")
    """
    logger = CopilotLogger.get_logger()
    if context:
        logger.error(f"Exception {context}", exc_info=exception)
    else:
        logger.error("Exception occurred", exc_info=exception)


def log_warning(message):
    CopilotLogger.get_logger().warning(message)


def log_info(message):
    CopilotLogger.get_logger().info(message)


def log_debug(message):
    CopilotLogger.get_logger().debug(message)


_print_to_terminal = True


def set_console_output(enabled: bool):
    """Enable or disable tagged status lines on stdout."""
    global _print_to_terminal
    _print_to_terminal = bool(enabled)


def console_print(message):
    """Print a tagged status line (e.g. "[Session] Listening") if enabled."""
    if _print_to_terminal:
        print(message)
