"""
Logging configuration.

Console output is human-readable by default; ``json_format`` switches to
one JSON object per line for pipelines that ship logs to an aggregator.
"""

from __future__ import annotations

import json
import logging
import sys
import traceback
from datetime import datetime, timezone
from typing import Any

# Record attributes copied into structured output when present
CONTEXT_FIELDS = ("scope", "step", "attempt", "duration_ms", "status_code")


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(
        self,
        include_exc_info: bool = True,
        extra_fields: dict[str, Any] | None = None,
    ):
        super().__init__()
        self.include_exc_info = include_exc_info
        self.extra_fields = extra_fields or {}

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "thread": record.threadName,
        }
        log_data.update(self.extra_fields)

        for name in CONTEXT_FIELDS:
            if hasattr(record, name):
                log_data[name] = getattr(record, name)

        if self.include_exc_info and record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info),
            }

        return json.dumps(log_data, ensure_ascii=False, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Coloured single-line console formatter."""

    COLORS = {
        "DEBUG": "\033[36m",      # Cyan
        "INFO": "\033[32m",       # Green
        "WARNING": "\033[33m",    # Yellow
        "ERROR": "\033[31m",      # Red
        "CRITICAL": "\033[35m",   # Magenta
        "RESET": "\033[0m",
    }

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors and sys.stdout.isatty()

    def format(self, record: logging.LogRecord) -> str:
        levelname = record.levelname
        if self.use_colors:
            color = self.COLORS.get(levelname, self.COLORS["RESET"])
            levelname = f"{color}{levelname:8}{self.COLORS['RESET']}"
        else:
            levelname = f"{levelname:8}"

        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc).strftime("%H:%M:%S")
        message = record.getMessage()

        extra_info = [f"{name}={getattr(record, name)}" for name in CONTEXT_FIELDS if hasattr(record, name)]
        if extra_info:
            message = f"{message} [{', '.join(extra_info)}]"

        exc_text = ""
        if record.exc_info:
            exc_text = "\n" + "".join(traceback.format_exception(*record.exc_info))

        return f"{timestamp} {levelname} [{record.threadName}] {record.name}: {message}{exc_text}"


def setup_structured_logging(
    level: int = logging.INFO,
    json_format: bool = False,
    log_file: str | None = None,
    service_name: str = "azops-discovery",
) -> logging.Logger:
    """
    Setup logging for the application.

    Args:
        level: Logging level
        json_format: If True, use JSON formatter; otherwise human-readable
        log_file: Optional file path for log output
        service_name: Service name added to JSON output

    Returns:
        Configured logger for the azops_discovery package
    """
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter: logging.Formatter = StructuredFormatter(extra_fields={"service": service_name})
    else:
        formatter = HumanReadableFormatter(use_colors=True)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(level)

    root_logger.setLevel(level)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        file_handler.setLevel(level)
        root_logger.addHandler(file_handler)

    # urllib3 logs every connection at DEBUG
    logging.getLogger("urllib3").setLevel(max(level, logging.WARNING))

    logger = logging.getLogger("azops_discovery")
    logger.setLevel(level)
    return logger
