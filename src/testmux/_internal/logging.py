"""Structured logging setup for testmux."""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime


# Attributes engine log calls attach through ``extra=`` to identify the
# worker and test file a record is about.
_CONTEXT_FIELDS = ("worker_id", "path")


class _JsonFormatter(logging.Formatter):
    """Structured JSON log formatter.

    Emits one-line JSON objects with keys: timestamp, level, logger,
    message, plus ``worker_id`` and ``path`` when the record carries them.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as a JSON string.

        Args:
            record: The log record to format.

        Returns:
            A single-line JSON string.
        """
        log_entry: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in _CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = value
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def setup_logging(
    level: int = logging.INFO,
    *,
    json_format: bool = False,
) -> logging.Logger:
    """Configure and return the root testmux logger.

    Sets up a handler on the ``testmux`` logger namespace. Subsequent
    calls are idempotent: handlers are not duplicated.

    Worker child processes never call this. Their stderr is a frame
    channel and must not carry log lines.

    Args:
        level: Logging level (e.g., ``logging.DEBUG``). Defaults to INFO.
        json_format: If True, emit structured JSON logs. If False, emit
            human-readable logs.

    Returns:
        The configured ``testmux`` root logger.
    """
    logger = logging.getLogger("testmux")
    logger.setLevel(level)

    if logger.handlers:
        for handler in logger.handlers:
            handler.setLevel(level)
        return logger

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)

    if json_format:
        formatter: logging.Formatter = _JsonFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)-8s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    handler.setFormatter(formatter)
    logger.addHandler(handler)

    # Prevent propagation to root logger to avoid duplicate output
    logger.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """Return a child logger under the ``testmux`` namespace.

    Args:
        name: Logger name, appended to ``testmux.`` prefix.
            Example: ``get_logger("engine.pool")`` returns
            ``logging.getLogger("testmux.engine.pool")``.

    Returns:
        A configured child logger.
    """
    return logging.getLogger(f"testmux.{name}")
