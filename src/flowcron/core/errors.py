"""flowcron · Error hierarchy.

All custom exceptions inherit from FlowcronError, which carries an error_code
and an optional details dict for programmatic handling.

Usage::

    from flowcron.core.errors import ScheduleParseError

    raise ScheduleParseError("Wrong number of fields", expression="* *")
"""

from __future__ import annotations

from pathlib import Path


class FlowcronError(Exception):
    """Base exception for all flowcron errors."""

    def __init__(
        self,
        message: str,
        error_code: str = "FLOWCRON_ERROR",
        details: dict | None = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.details = details or {}


class ConfigError(FlowcronError):
    """Configuration errors (unreadable file, failed validation)."""

    def __init__(
        self,
        message: str,
        error_code: str = "CONFIG_ERROR",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


class ScheduleParseError(FlowcronError, ValueError):
    """A schedule expression could not be turned into a timer.

    Raised synchronously on the schedule path. At startup replay it is
    caught and logged per job.
    """

    def __init__(
        self,
        message: str,
        expression: str = "",
        error_code: str = "SCHEDULE_PARSE_ERROR",
        details: dict | None = None,
    ) -> None:
        merged = {"expression": expression, **(details or {})}
        super().__init__(message, error_code=error_code, details=merged)
        self.expression = expression


class PersistenceError(FlowcronError):
    """Base class for durable record failures."""

    def __init__(
        self,
        message: str,
        path: Path | str | None = None,
        error_code: str = "PERSISTENCE_ERROR",
        details: dict | None = None,
    ) -> None:
        merged = {"path": str(path) if path is not None else None, **(details or {})}
        super().__init__(message, error_code=error_code, details=merged)
        self.path = Path(path) if path is not None else None


class PersistenceReadError(PersistenceError):
    """The durable record exists but could not be read or parsed."""

    def __init__(
        self,
        message: str,
        path: Path | str | None = None,
        error_code: str = "PERSISTENCE_READ_ERROR",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, path=path, error_code=error_code, details=details)


class PersistenceWriteError(PersistenceError):
    """The durable record could not be written."""

    def __init__(
        self,
        message: str,
        path: Path | str | None = None,
        error_code: str = "PERSISTENCE_WRITE_ERROR",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, path=path, error_code=error_code, details=details)
