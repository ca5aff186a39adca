"""flowcron · Core: shared error types."""

from flowcron.core.errors import (
    ConfigError,
    FlowcronError,
    PersistenceError,
    PersistenceReadError,
    PersistenceWriteError,
    ScheduleParseError,
)

__all__ = [
    "ConfigError",
    "FlowcronError",
    "PersistenceError",
    "PersistenceReadError",
    "PersistenceWriteError",
    "ScheduleParseError",
]
