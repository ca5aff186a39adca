"""Cron engine: persistent recurring workflow triggers.

Coordinates the JobStore (durable record) and the JobRegistry (live
timers). Every job is identified by ``(engine, workflow_id)``; scheduling
the same pair again replaces both the timer and the stored definition.

Ordering rule: arm first, persist second. A schedule that cannot be armed
never reaches disk. If the write fails afterwards the timer stays armed and
the caller gets ``False``; the job is then lost on the next restart but is
never fired twice. Both steps of ``schedule_job`` and ``remove_job`` run
under one engine lock, so calls for the same key cannot interleave between
the timer and the record.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import TYPE_CHECKING

from flowcron.core.errors import ScheduleParseError
from flowcron.cron.jobs import DEFAULT_JOBS_FILE, JobStore
from flowcron.cron.registry import JobRegistry, OnFire
from flowcron.models import JobDefinition, job_key
from flowcron.utils.logging import get_logger

if TYPE_CHECKING:
    from datetime import datetime

    from flowcron.config import FlowcronConfig

log = get_logger(__name__)


class CronEngine:
    """Schedules, removes and restores recurring workflow triggers.

    Attributes:
        store: Durable job record.
        registry: Live timers.
    """

    def __init__(
        self,
        store: JobStore | None = None,
        registry: JobRegistry | None = None,
        *,
        jobs_path: Path | str | None = None,
    ) -> None:
        """Initialises the CronEngine.

        Args:
            store: JobStore to persist to. Default: a store at ``jobs_path``.
            registry: JobRegistry to arm timers in. Default: a new registry
                with its own AsyncIOScheduler.
            jobs_path: Record path when no store is given. Default:
                ``data/cron-jobs.json`` under the working directory.
        """
        self.store = store if store is not None else JobStore(Path(jobs_path or DEFAULT_JOBS_FILE))
        self.registry = registry if registry is not None else JobRegistry()
        self._on_fire: OnFire | None = None
        self._initialized = False
        self._lock = threading.RLock()

    @classmethod
    def from_config(cls, config: FlowcronConfig) -> CronEngine:
        """Builds an engine from the loaded configuration."""
        registry = JobRegistry(
            timezone=config.timezone,
            misfire_grace_seconds=config.misfire_grace_seconds,
        )
        return cls(JobStore(config.jobs_path), registry)

    # === Lifecycle ===

    @property
    def running(self) -> bool:
        """Whether the timer backend is running."""
        return self.registry.running

    async def start(self) -> None:
        """Starts the timer backend. Must be called inside the event loop."""
        if self.running:
            log.warning("cron_engine_already_running")
            return
        self.registry.start()
        log.info("cron_engine_started", jobs=len(self.registry))

    async def stop(self) -> None:
        """Disarms all timers and stops the backend.

        Dispatches already running are not cancelled.
        """
        if not self.running and not len(self.registry):
            return
        self.registry.shutdown()
        await self.registry.wait_stopped()
        self._initialized = False
        log.info("cron_engine_stopped")

    # === Public API ===

    def schedule_job(self, definition: JobDefinition, on_fire: OnFire) -> bool:
        """Arms and persists a job, replacing any job with the same key.

        Args:
            definition: Job to schedule.
            on_fire: Dispatcher called on every tick.

        Returns:
            True if the job is armed and persisted, False if it is armed but
            the durable write failed.

        Raises:
            ScheduleParseError: If the schedule is invalid. Any previous timer
                for the key is cancelled and the record is left unchanged.
        """
        key = definition.key
        with self._lock:
            self.registry.arm(key, definition, on_fire)
            self._on_fire = on_fire
            persisted = self.store.upsert(definition)

        if not persisted:
            log.error("job_persist_failed", key=key, path=str(self.store.path))
            return False

        log.info("job_scheduled", key=key, schedule=definition.schedule)
        return True

    def remove_job(self, workflow_id: str, engine: str) -> bool:
        """Disarms and forgets a job. Unknown jobs are a no-op.

        Args:
            workflow_id: ID of the workflow.
            engine: Engine tag of the workflow.

        Returns:
            False only if the durable write failed (the timer is disarmed
            regardless).
        """
        key = job_key(workflow_id, engine)
        with self._lock:
            was_armed = self.registry.disarm(key)
            persisted = self.store.remove(key)

        if not persisted:
            log.error("job_unpersist_failed", key=key, path=str(self.store.path))
            return False

        log.info("job_removed", key=key, was_armed=was_armed)
        return True

    async def initialize_jobs(self, on_fire: OnFire) -> int:
        """Restores every persisted job at process start.

        Starts the backend if needed. A job whose stored schedule cannot be
        armed is logged and skipped; the others are still armed.

        Args:
            on_fire: Dispatcher for all restored jobs.

        Returns:
            Number of jobs armed.
        """
        if self._initialized:
            log.warning("cron_jobs_already_initialized")
            return 0

        if not self.running:
            await self.start()

        self._on_fire = on_fire
        armed = 0
        for definition in self.store.load_all():
            try:
                with self._lock:
                    self.registry.arm(definition.key, definition, on_fire)
            except ScheduleParseError as exc:
                log.error(
                    "job_restore_failed",
                    key=definition.key,
                    schedule=definition.schedule,
                    error=str(exc),
                )
                continue
            except Exception:
                log.exception("job_restore_failed", key=definition.key)
                continue
            armed += 1

        self._initialized = True
        log.info("cron_jobs_initialized", armed=armed, path=str(self.store.path))
        return armed

    # === Introspection & manual runs ===

    @property
    def job_count(self) -> int:
        """Number of armed jobs."""
        return len(self.registry)

    def list_jobs(self) -> list[JobDefinition]:
        """All persisted job definitions."""
        return self.store.load_all()

    def get_next_run_times(self) -> dict[str, datetime | None]:
        """Next fire time per armed job key."""
        return {key: self.registry.next_run_time(key) for key in sorted(self.registry.keys())}

    async def trigger_now(
        self,
        workflow_id: str,
        engine: str,
        on_fire: OnFire | None = None,
    ) -> bool:
        """Dispatches a persisted job immediately, outside its schedule.

        Args:
            workflow_id: ID of the workflow.
            engine: Engine tag of the workflow.
            on_fire: Dispatcher to use. Default: the one the job's timer was
                armed with, else the last one registered.

        Returns:
            True if the job exists and was dispatched.
        """
        key = job_key(workflow_id, engine)
        dispatcher = on_fire or self.registry.dispatcher_for(key) or self._on_fire
        if dispatcher is None:
            log.warning("trigger_without_dispatcher", key=key)
            return False

        definition = self.store.get(key)
        if definition is None:
            return False

        await self.registry.dispatch(definition, dispatcher)
        return True
