"""
Logging configuration for ChangeLink.

Colored console output and rotating log files for the package logger, plus
two structured channels written as JSON lines to their own file:
audit entries (which ad or configuration changed, before and after) and
performance entries (how long an operation took).
"""

import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

from .config import get_config

AUDIT_LOGGER = "changelink.audit"
PERFORMANCE_LOGGER = "changelink.performance"

audit_logger = logging.getLogger(AUDIT_LOGGER)
performance_logger = logging.getLogger(PERFORMANCE_LOGGER)

_MAX_BYTES = 10 * 1024 * 1024  # 10MB
_BACKUPS = 5


class ColoredFormatter(logging.Formatter):
    """Console formatter; colors the level name only."""

    COLORS = {
        logging.DEBUG: '\033[36m',
        logging.INFO: '\033[32m',
        logging.WARNING: '\033[33m',
        logging.ERROR: '\033[31m',
        logging.CRITICAL: '\033[35m',
    }
    RESET = '\033[0m'

    def formatMessage(self, record):
        # file handlers format the same record, so leave levelname untouched
        color = self.COLORS.get(record.levelno, "")
        return super().formatMessage(record).replace(
            record.levelname, f"{color}{record.levelname}{self.RESET}", 1
        )


def _rotating(path: Path, level: int, formatter: logging.Formatter) -> RotatingFileHandler:
    handler = RotatingFileHandler(path, maxBytes=_MAX_BYTES, backupCount=_BACKUPS)
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(
    name: str = "changelink",
    log_dir: Optional[Path] = None,
    level: Optional[str] = None
) -> logging.Logger:
    """
    Configure and return the `name` logger.

    Console, `<name>.log` and `<name>_errors.log` handlers go on the logger
    itself; audit and performance entries additionally land in
    `<name>_audit.log`. Calling it again returns the configured logger.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    cfg = get_config()
    logger.setLevel(getattr(logging, (level or cfg.LOG_LEVEL).upper(), logging.INFO))

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(ColoredFormatter(
        '%(asctime)s | %(levelname)s | %(name)s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))
    logger.addHandler(console)

    log_dir = Path(log_dir or cfg.LOG_DIR)
    log_dir.mkdir(parents=True, exist_ok=True)

    detailed = logging.Formatter(
        '%(asctime)s | %(levelname)s | %(name)s | %(funcName)s:%(lineno)d | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    logger.addHandler(_rotating(log_dir / f"{name}.log", logging.DEBUG, detailed))
    logger.addHandler(_rotating(log_dir / f"{name}_errors.log", logging.ERROR, detailed))

    structured = _rotating(
        log_dir / f"{name}_audit.log", logging.INFO, logging.Formatter('%(asctime)s %(message)s')
    )
    for channel in (audit_logger, performance_logger):
        channel.setLevel(logging.INFO)
        channel.addHandler(structured)

    return logger


def _dump(entry: dict) -> str:
    return json.dumps(entry, default=str, ensure_ascii=True)


def log_audit(action: str, resource: str, before: Any = None, after: Any = None, success: bool = True, **details):
    """One audit entry: action on resource, state before and after."""
    entry = {
        "action": action,
        "resource": resource,
        "before": before,
        "after": after,
        "success": success,
    }
    if details:
        entry["details"] = details
    level = logging.INFO if success else logging.WARNING
    audit_logger.log(level, f"AUDIT {_dump(entry)}")


def log_performance(operation: str, duration_ms: float, **resources):
    """One performance entry: operation, duration and any resource counters."""
    entry = {"operation": operation, "duration_ms": round(duration_ms, 2)}
    if resources:
        entry["resources"] = resources
    performance_logger.info(f"PERF {_dump(entry)}")
