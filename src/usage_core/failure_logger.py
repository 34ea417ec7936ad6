import json
import logging
import os
import time
from logging.handlers import RotatingFileHandler
from typing import Optional

from .errors import describe_error
from .types import ProviderKind

FAILURE_LOGGER_NAME = "usage_core.failures"


class JsonFormatter(logging.Formatter):
    def format(self, record):
        log_record = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "message": record.msg if isinstance(record.msg, dict) else record.getMessage(),
        }
        return json.dumps(log_record)


def setup_failure_logger(log_dir: str = "logs") -> logging.Logger:
    """Sets up a dedicated JSON logger for failed provider fetches."""
    os.makedirs(log_dir, exist_ok=True)

    logger = logging.getLogger(FAILURE_LOGGER_NAME)
    logger.setLevel(logging.INFO)

    # Prevent failure records from reaching the console handlers
    logger.propagate = False

    # Add handler only if it hasn't been added before
    if not any(isinstance(h, RotatingFileHandler) for h in logger.handlers):
        handler = RotatingFileHandler(
            os.path.join(log_dir, "failures.log"),
            maxBytes=5 * 1024 * 1024,  # 5 MB
            backupCount=2,
        )
        handler.setFormatter(JsonFormatter())
        logger.addHandler(handler)

    return logger


def log_failure(
    provider: ProviderKind,
    error: BaseException,
    cycle_started_at: Optional[float] = None,
) -> None:
    """Logs a structured record for a failed provider fetch."""
    failure_logger = logging.getLogger(FAILURE_LOGGER_NAME)
    if not failure_logger.handlers:
        failure_logger.addHandler(logging.NullHandler())
        failure_logger.propagate = False

    # ProbeError and httpx errors carry the response body
    raw_response = None
    response = getattr(error, "response", None)
    if response is not None and hasattr(response, "text"):
        try:
            raw_response = response.text[:1000]
        except (UnicodeDecodeError, RuntimeError):
            raw_response = None

    log_data = {
        "provider": provider.value,
        "error_type": type(error).__name__,
        "error_message": str(error),
        "label": describe_error(error),
        "status_code": getattr(error, "status_code", None),
        "raw_response": raw_response,
        "cycle_started_at": cycle_started_at or time.time(),
    }
    failure_logger.error(log_data)
