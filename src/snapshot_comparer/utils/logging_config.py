"""
Logging Setup for the Snapshot Comparer

Console logging for operators, optional structured JSON logging for log
shippers, and a run id carried in a context variable so that every
record of one comparison run can be correlated.
"""

import contextvars
import json
import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)

PACKAGE_LOGGER = "snapshot_comparer"

# Extra record attributes copied into JSON output
_EXTRA_FIELDS = ("table", "partition", "policy", "duration")

_run_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    'run_id',
    default=None
)


def generate_run_id() -> str:
    """Generate a new run id using UUID4."""
    return str(uuid.uuid4())


def get_run_id() -> Optional[str]:
    """
    Get the current run id from context.

    Returns:
        Current run id or None if not set
    """
    return _run_id.get()


class RunContext:
    """
    Context manager binding a run id to all logging inside it.

    The previous run id is restored on exit.
    """

    def __init__(self, run_id: Optional[str] = None):
        """
        Initialize run context.

        Args:
            run_id: Run id to use; a new one is generated if not provided
        """
        self.run_id = run_id or generate_run_id()
        self._token = None

    def __enter__(self) -> str:
        self._token = _run_id.set(self.run_id)
        logger.debug(f"Entered run context: {self.run_id}")
        return self.run_id

    def __exit__(self, exc_type, exc_val, exc_tb):
        _run_id.reset(self._token)
        self._token = None


def run_id_filter(record):
    """
    Logging filter to add the run id to log records.

    Args:
        record: Log record to augment

    Returns:
        True (always allow record)
    """
    record.run_id = get_run_id() or "N/A"
    return True


class StructuredJSONFormatter(logging.Formatter):
    """JSON formatter with run id support."""

    def format(self, record):
        log_data = {
            'timestamp': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'run_id': getattr(record, 'run_id', None) or get_run_id() or "N/A",
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        # Add extra fields
        for name in _EXTRA_FIELDS:
            if hasattr(record, name):
                key = 'duration_seconds' if name == 'duration' else name
                log_data[key] = getattr(record, name)

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def json_logging_requested() -> bool:
    """Return True if the JSON_LOGGING environment variable enables JSON logs."""
    return os.getenv('JSON_LOGGING', 'false').lower() == 'true'


def setup_logging(
    verbose: bool = False,
    json_logs: bool = False,
    stream=None
) -> logging.Logger:
    """
    Configure the package logger.

    Human-readable records always go to the console (stderr by default).
    With json_logs, a JSON handler is added as well and records stop
    propagating to the root logger.

    Args:
        verbose: Log at DEBUG instead of INFO
        json_logs: Also emit structured JSON records
        stream: Stream for both handlers (defaults to stderr)

    Returns:
        The configured package logger
    """
    stream = stream or sys.stderr
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()

    # Human-readable handler for console
    console_handler = logging.StreamHandler(stream)
    console_handler.setFormatter(logging.Formatter(
        '[%(asctime)s] %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))
    console_handler.addFilter(run_id_filter)
    package_logger.addHandler(console_handler)

    if json_logs:
        json_handler = logging.StreamHandler(stream)
        json_handler.setFormatter(StructuredJSONFormatter())
        json_handler.addFilter(run_id_filter)
        package_logger.addHandler(json_handler)
        package_logger.propagate = False
    else:
        package_logger.propagate = True

    return package_logger
