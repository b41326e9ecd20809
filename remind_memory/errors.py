"""Error types for the memory store.

Every failure the store, ranker or consolidation agent can report is a
``RemindError`` subclass so callers can catch, log and classify it. Severity
decides whether a failure is recoverable inside an agent turn (warning) or
fatal for the whole turn (critical).
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import datetime
from enum import Enum
from pathlib import Path

DEFAULT_LOG_DIR = Path.home() / ".config" / "remind" / "data"

logger = logging.getLogger("remind")

# Status string used instead of an exception when a delete touched no rows.
NOTHING_DELETED = "nothing_deleted"


class Severity(str, Enum):
    """Error severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class RemindError(Exception):
    """Base exception for all memory-layer errors."""

    severity: Severity = Severity.ERROR

    def __init__(self, message: str, *, component: str = "memory", detail: str = ""):
        super().__init__(message)
        self.component = component
        self.detail = detail
        self.timestamp = datetime.now().isoformat()


class ConfigError(RemindError):
    """Invalid configuration, including an embedding dimension mismatch."""

    severity = Severity.ERROR


class EmbeddingFailure(RemindError):
    """The embedding provider was unreachable or returned malformed output."""

    severity = Severity.WARNING

    def __init__(self, message: str = "failed to generate embeddings", **kwargs):
        kwargs.setdefault("component", "embedding")
        super().__init__(message, **kwargs)


class UpdateFailed(RemindError):
    """An update was rolled back. ``reason`` says why."""

    severity = Severity.WARNING

    def __init__(self, reason: str, **kwargs):
        kwargs.setdefault("component", "store")
        super().__init__(f"update failed: {reason}", **kwargs)
        self.reason = reason


class StoreUnavailable(RemindError):
    """The database could not be opened or a transaction could not run."""

    severity = Severity.CRITICAL

    def __init__(self, message: str = "memory store unavailable", **kwargs):
        kwargs.setdefault("component", "store")
        super().__init__(message, **kwargs)


def is_fatal(error: BaseException) -> bool:
    """True when ``error`` must abort the current conversational turn.

    An unreachable store and a misconfigured deployment (including an
    embedding dimensionality mismatch) cannot be recovered by retrying.
    """
    return isinstance(error, (StoreUnavailable, ConfigError))


def log_error(
    error: RemindError | Exception,
    *,
    component: str = "memory",
    log_dir: Path | None = None,
) -> dict:
    """Record an error in ``<log_dir>/errors.log`` as one JSON line.

    Returns the entry that was written. Writing the file is best-effort; the
    entry is always passed on to the Python logger.
    """
    log_dir = log_dir or DEFAULT_LOG_DIR
    tb = traceback.format_exc()
    entry = {
        "timestamp": datetime.now().isoformat(),
        "component": getattr(error, "component", component),
        "severity": getattr(error, "severity", Severity.ERROR).value,
        "type": type(error).__name__,
        "message": str(error),
        "detail": getattr(error, "detail", ""),
        "traceback": tb if tb.strip() != "NoneType: None" else "",
    }
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        with open(log_dir / "errors.log", "a") as f:
            f.write(json.dumps(entry, default=str) + "\n")
    except OSError:
        logger.debug("could not write error log in %s", log_dir)

    level = getattr(logging, entry["severity"].upper(), logging.ERROR)
    logger.log(level, "[%s] %s", entry["component"], entry["message"])
    return entry


def get_recent_errors(limit: int = 20, *, log_dir: Path | None = None) -> list[dict]:
    """Read the most recent entries from the error log."""
    path = (log_dir or DEFAULT_LOG_DIR) / "errors.log"
    if not path.exists():
        return []
    errors = []
    for line in path.read_text().strip().split("\n")[-limit:]:
        try:
            errors.append(json.loads(line))
        except json.JSONDecodeError:
            continue
    return errors


def clear_error_log(*, log_dir: Path | None = None) -> None:
    """Clear the error log."""
    path = (log_dir or DEFAULT_LOG_DIR) / "errors.log"
    if path.exists():
        path.write_text("")
