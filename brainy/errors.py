"""Error types for Brainy.

Every error carries the component that raised it and a severity, so the
background analyzer and the bot can log failures uniformly without ever
letting them take the process down.
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum


class Severity(str, Enum):
    """Error severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class BrainyError(Exception):
    """Base exception for all Brainy errors."""

    severity: Severity = Severity.ERROR

    def __init__(self, message: str, *, component: str = "brainy", detail: str = ""):
        super().__init__(message)
        self.component = component
        self.detail = detail
        self.timestamp = datetime.now().isoformat()


class ConfigError(BrainyError):
    """Invalid or incomplete configuration."""

    severity = Severity.WARNING


class StorageError(BrainyError):
    """A store backend failed (database locked, disk error, bad record)."""

    severity = Severity.WARNING


class CompletionError(BrainyError):
    """The completion service failed: transport, timeout or service error."""

    severity = Severity.WARNING


class AnalysisParseError(CompletionError):
    """The completion response was not the expected JSON shape.

    ``detail`` holds the raw response text.
    """


def log_error(error: BrainyError | Exception, logger: logging.Logger, *, component: str = "brainy"):
    """Log an error at the level that matches its severity."""
    comp = getattr(error, "component", component)
    severity = getattr(error, "severity", Severity.ERROR)
    level = getattr(logging, severity.value.upper(), logging.ERROR)
    detail = getattr(error, "detail", "")
    if detail:
        logger.log(level, "[%s] %s (%s)", comp, error, detail[:500])
    else:
        logger.log(level, "[%s] %s", comp, error)


def mask_secret(value: str) -> str:
    """Show only the first five characters of a secret."""
    if not value:
        return "?"
    if len(value) > 5:
        return value[:5] + "***"
    return "***"
