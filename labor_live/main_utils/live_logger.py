import logging
import os
import sys
from pathlib import Path
from typing import Optional

# ANSI Color Codes
RESET = "\033[0m"
GREY = "\033[90m"
CYAN = "\033[96m"
YELLOW = "\033[93m"
RED = "\033[91m"
BOLD_RED = "\033[1;91m"

LOG_FORMAT = "%(asctime)s - [%(name)s] - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

NOISY_LIBRARIES = [
    "httpcore",
    "httpx",
    "websockets",
    "google_genai",
    "google.genai",
]


class ColorFormatter(logging.Formatter):
    """
    Formatter for Console Output.
    Adds color based on log level.
    """

    FORMATS = {
        logging.DEBUG: GREY + LOG_FORMAT + RESET,
        logging.INFO: CYAN + LOG_FORMAT + RESET,
        logging.WARNING: YELLOW + LOG_FORMAT + RESET,
        logging.ERROR: RED + LOG_FORMAT + RESET,
        logging.CRITICAL: BOLD_RED + LOG_FORMAT + RESET,
    }

    def format(self, record):
        log_fmt = self.FORMATS.get(record.levelno, self.FORMATS[logging.INFO])
        formatter = logging.Formatter(log_fmt, datefmt=DATE_FORMAT)
        return formatter.format(record)


class PlainFormatter(logging.Formatter):
    """
    Formatter for File Output.
    Clean text, no colors.
    """
    def __init__(self):
        super().__init__(LOG_FORMAT, datefmt=DATE_FORMAT)


def setup_logging(logger_name: str, log_file_path: Optional[Path] = None, level=logging.INFO, console_output=True):
    """
    Sets up the root logger with:
    1. StreamHandler (stderr) - Colorized
    2. FileHandler (File) - Plain Text (if log_file_path provided)

    Console goes to stderr so the conversation view on stdout stays readable.
    Returns the logger for `logger_name`.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Remove existing handlers to avoid duplicates on restart/reload
    if root_logger.hasHandlers():
        root_logger.handlers.clear()

    if console_output:
        c_handler = logging.StreamHandler(sys.stderr)
        c_handler.setLevel(level)
        c_handler.setFormatter(ColorFormatter() if sys.stderr.isatty() else PlainFormatter())
        root_logger.addHandler(c_handler)

    if log_file_path:
        log_file_path = Path(log_file_path)
        log_file_path.parent.mkdir(parents=True, exist_ok=True)

        f_handler = logging.FileHandler(log_file_path, encoding="utf-8")
        f_handler.setLevel(logging.DEBUG)  # files always get everything
        f_handler.setFormatter(PlainFormatter())
        root_logger.addHandler(f_handler)

    def handle_exception(exc_type, exc_value, exc_traceback):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_traceback)
            return
        root_logger.critical("Uncaught Exception:", exc_info=(exc_type, exc_value, exc_traceback))

    sys.excepthook = handle_exception

    # Keep third-party chatter out of the session log
    for lib in NOISY_LIBRARIES:
        logging.getLogger(lib).setLevel(logging.WARNING)

    return logging.getLogger(logger_name)


def level_from_env(debug: bool) -> int:
    """DEBUG when LIVE_DEBUG is on, otherwise LOG_LEVEL or INFO."""
    if debug:
        return logging.DEBUG
    level = getattr(logging, (os.getenv("LOG_LEVEL") or "INFO").strip().upper(), None)
    return level if isinstance(level, int) else logging.INFO


def get_live_logger(name: str):
    """
    Helper to get a logger for a module.
    Assumes setup_logging has been called by the process entry point.
    """
    return logging.getLogger(name)
