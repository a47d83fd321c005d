from __future__ import annotations
import logging
import sys
import json
from typing import Optional
from datetime import datetime, timezone
from pathlib import Path

# Attributes every LogRecord carries; anything else came in through ``extra``
_RECORD_ATTRS = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
    'filename', 'module', 'lineno', 'funcName', 'created',
    'msecs', 'relativeCreated', 'thread', 'threadName',
    'processName', 'process', 'getMessage', 'exc_info',
    'exc_text', 'stack_info', 'taskName', 'message',
}

THIRD_PARTY_LOGGERS = ("aiohttp", "urllib3", "charset_normalizer", "asyncio")


class JSONFormatter(logging.Formatter):
    """JSON lines formatter for machine-readable logs."""

    def __init__(self, service_name: str = "docskills"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRS:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


class ColoredFormatter(logging.Formatter):
    """Compact, optionally colored formatter for terminal output."""

    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
    }
    RESET = '\033[0m'

    def __init__(self, use_colors: bool = True, show_logger: bool = False):
        super().__init__()
        self.use_colors = use_colors
        self.show_logger = show_logger

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')
        level = f"{record.levelname:7}"
        if self.use_colors and record.levelname in self.COLORS:
            level = f"{self.COLORS[record.levelname]}{level}{self.RESET}"

        origin = f" {record.name}:" if self.show_logger else ""
        message = f"{timestamp} {level}{origin} {record.getMessage()}"

        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)

        return message


def level_for_verbosity(verbose: int = 0, quiet: bool = False) -> str:
    """Map ``-v`` count / ``-q`` to a log level name."""
    if quiet:
        return "ERROR"
    if verbose >= 1:
        return "DEBUG"
    return "INFO"


def setup_logging(
    level: str = "INFO",
    service_name: str = "docskills",
    log_file: Optional[str] = None,
    use_json: bool = False,
    use_colors: Optional[bool] = None,
    verbose: int = 0
) -> None:
    """Setup logging configuration.

    Console output goes to stderr so that stdout stays free for documents.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        service_name: Name of the service for structured logging
        log_file: Optional file path for JSON lines logging
        use_json: Whether to use JSON formatting on the console
        use_colors: Colored console output; defaults to whether stderr is a TTY
        verbose: ``-v`` count; 2 or more also lets third-party debug logs through
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(numeric_level)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(numeric_level)

    if use_json:
        console_formatter = JSONFormatter(service_name)
    else:
        if use_colors is None:
            use_colors = sys.stderr.isatty()
        console_formatter = ColoredFormatter(use_colors, show_logger=numeric_level <= logging.DEBUG)

    console_handler.setFormatter(console_formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(numeric_level)
        # Always use JSON for file logging
        file_handler.setFormatter(JSONFormatter(service_name))
        root_logger.addHandler(file_handler)

    third_party_level = numeric_level if verbose >= 2 else max(numeric_level, logging.WARNING)
    for name in THIRD_PARTY_LOGGERS:
        logging.getLogger(name).setLevel(third_party_level)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with the given name."""
    return logging.getLogger(name)
