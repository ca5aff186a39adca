"""flowcron · Persistent cron scheduler for workflow-engine triggers."""

from flowcron.core.errors import (
    PersistenceReadError,
    PersistenceWriteError,
    ScheduleParseError,
)
from flowcron.cron import CronEngine, JobRegistry, JobStore
from flowcron.models import JobDefinition, job_key

__version__ = "0.1.0"

__all__ = [
    "CronEngine",
    "JobDefinition",
    "JobRegistry",
    "JobStore",
    "PersistenceReadError",
    "PersistenceWriteError",
    "ScheduleParseError",
    "__version__",
    "job_key",
]
