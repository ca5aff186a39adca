"""flowcron · Cron module: persistent recurring workflow triggers."""

from flowcron.cron.engine import CronEngine
from flowcron.cron.jobs import JobStore
from flowcron.cron.registry import JobRegistry, OnFire, parse_schedule

__all__ = ["CronEngine", "JobRegistry", "JobStore", "OnFire", "parse_schedule"]
