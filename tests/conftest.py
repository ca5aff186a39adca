"""
flowcron · Shared test fixtures.

Every test gets its own job record under tmp_path and its own scheduler,
so tests are isolated and never touch ./data.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from flowcron.cron.engine import CronEngine
from flowcron.cron.jobs import JobStore
from flowcron.cron.registry import JobRegistry

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from pathlib import Path


@pytest.fixture
def jobs_path(tmp_path: Path) -> Path:
    """Job record inside a not-yet-existing data directory."""
    return tmp_path / "data" / "cron-jobs.json"


@pytest.fixture
def store(jobs_path: Path) -> JobStore:
    return JobStore(jobs_path)


@pytest.fixture
def registry() -> JobRegistry:
    """Registry evaluating cron in UTC (scheduler not started)."""
    return JobRegistry(timezone="UTC")


@pytest.fixture
def engine(store: JobStore, registry: JobRegistry) -> CronEngine:
    return CronEngine(store, registry)


@pytest.fixture
def fire_all(registry: JobRegistry) -> Callable[[], Awaitable[int]]:
    """Simulates one tick of every armed timer and waits for the dispatches.

    The returned coroutine function yields the number of timers that ticked.
    """

    async def _fire() -> int:
        jobs = registry.scheduler.get_jobs()
        for job in jobs:
            await job.func(*job.args, **job.kwargs)
        await registry.drain(timeout=5)
        return len(jobs)

    return _fire
