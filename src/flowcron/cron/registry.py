"""Job registry: the live timers, one per job key.

Timers are APScheduler jobs. The registry is the only owner of them and
guarantees that at most one timer exists per key: arming cancels the
previous timer first, and all mutations run under one lock. A key whose
new schedule fails to parse is left without a timer.

A timer tick never waits for the dispatcher. It spawns the guarded
``on_fire`` call as a background task and returns, so a slow workflow
engine cannot hold up the scheduler and overlapping runs of the same job
are possible. Exceptions from ``on_fire`` are logged and swallowed inside
that task. Plain (non-coroutine) dispatchers run in a worker thread so a
blocking call cannot stall the event loop.
"""

from __future__ import annotations

import asyncio
import inspect
import threading
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.combining import OrTrigger
from apscheduler.triggers.cron import CronTrigger

from flowcron.core.errors import ScheduleParseError
from flowcron.models import JobDefinition
from flowcron.utils.logging import bind_context, get_logger, unbind_context

if TYPE_CHECKING:
    from datetime import datetime

    from apscheduler.schedulers.base import BaseScheduler
    from apscheduler.triggers.base import BaseTrigger

log = get_logger(__name__)

# Dispatcher callback (the workflow-engine trigger)
OnFire = Callable[[JobDefinition], Awaitable[None] | None]

# Ticks only spawn a task, so overlapping ticks are never skipped
_MAX_TICK_INSTANCES = 32

# Standard cron numbering: 0 and 7 are Sunday
_CRON_DAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")


# ============================================================================
# Schedule parsing
# ============================================================================


def _parse_cron_fields(expression: str) -> dict[str, str]:
    """Splits a five-field cron expression into CronTrigger fields.

    Args:
        expression: Cron expression, e.g. ``"0 9 * * 1-5"``.

    Returns:
        Dict with the APScheduler CronTrigger field names.

    Raises:
        ValueError: If the expression does not have exactly five fields.
    """
    parts = expression.strip().split()
    if len(parts) != 5:
        msg = f"Cron expression must have 5 fields, got {len(parts)}: '{expression}'"
        raise ValueError(msg)

    return {
        "minute": parts[0],
        "hour": parts[1],
        "day": parts[2],
        "month": parts[3],
        "day_of_week": parts[4],
    }


def _day_value(token: str) -> int:
    if token.isdigit():
        value = int(token)
        if not 0 <= value <= 7:
            msg = f"Day of week out of range (0-7): '{token}'"
            raise ValueError(msg)
        return value
    name = token.lower()
    if name in _CRON_DAY_NAMES:
        return _CRON_DAY_NAMES.index(name)
    msg = f"Invalid day of week: '{token}'"
    raise ValueError(msg)


def _translate_day_of_week(field: str) -> str:
    """Converts a cron day-of-week field into APScheduler weekday names.

    APScheduler counts Monday as 0, cron counts Sunday as 0 (and 7). Naming
    the days explicitly sidesteps the difference.
    """
    if field == "*":
        return "*"

    days: set[int] = set()
    for part in field.split(","):
        body, sep, step_text = part.partition("/")
        step = 1
        if sep:
            if not step_text.isdigit() or int(step_text) == 0:
                msg = f"Invalid step in day of week: '{part}'"
                raise ValueError(msg)
            step = int(step_text)

        if body == "*":
            first, last = 0, 6
        elif "-" in body:
            start, _, end = body.partition("-")
            first, last = _day_value(start), _day_value(end)
            if first > last:
                msg = f"Invalid day of week range: '{body}'"
                raise ValueError(msg)
        else:
            first = _day_value(body)
            last = 7 if sep else first

        days.update(day % 7 for day in range(first, last + 1, step))

    return ",".join(_CRON_DAY_NAMES[day] for day in sorted(days))


def parse_schedule(expression: str, timezone: Any | None = None) -> BaseTrigger:
    """Builds an APScheduler trigger from a standard cron expression.

    When both day-of-month and day-of-week are restricted, cron fires on
    either match; that case becomes an OrTrigger of two CronTriggers.

    Args:
        expression: Five-field cron expression.
        timezone: Zone to evaluate in. None = local zone.

    Returns:
        Trigger for the expression.

    Raises:
        ScheduleParseError: If the expression is not valid cron syntax.
    """
    try:
        fields = _parse_cron_fields(expression)
        day, weekday = fields["day"], fields["day_of_week"]
        fields["day_of_week"] = _translate_day_of_week(weekday)
        tz_kwargs = {"timezone": timezone} if timezone is not None else {}

        if day.startswith("*") or weekday.startswith("*"):
            return CronTrigger(**fields, **tz_kwargs)

        by_day = CronTrigger(**{**fields, "day_of_week": "*"}, **tz_kwargs)
        by_weekday = CronTrigger(**{**fields, "day": "*"}, **tz_kwargs)
        return OrTrigger([by_day, by_weekday])
    except ValueError as exc:
        raise ScheduleParseError(
            f"Invalid schedule '{expression}': {exc}",
            expression=expression,
        ) from exc


# ============================================================================
# Registry
# ============================================================================


class JobRegistry:
    """Live timers keyed by job key.

    Build one per process (or per test) and hand it to the CronEngine.

    Attributes:
        timezone: Zone cron expressions are evaluated in (None = local).
        misfire_grace_seconds: How late a tick may still fire.
    """

    def __init__(
        self,
        scheduler: BaseScheduler | None = None,
        *,
        timezone: Any | None = None,
        misfire_grace_seconds: int = 60,
    ) -> None:
        """Initialises the registry.

        Args:
            scheduler: APScheduler instance to arm timers on. Default: a new
                AsyncIOScheduler in ``timezone``.
            timezone: Zone for cron evaluation. None = local zone.
            misfire_grace_seconds: Grace period for late ticks.
        """
        if scheduler is None:
            scheduler = AsyncIOScheduler(**({"timezone": timezone} if timezone is not None else {}))
        self._scheduler = scheduler
        self.timezone = timezone
        self.misfire_grace_seconds = misfire_grace_seconds
        self._timers: dict[str, str] = {}  # job key -> scheduler job id
        self._dispatchers: dict[str, OnFire] = {}
        self._lock = threading.RLock()
        self._inflight: set[asyncio.Task[None]] = set()
        self._stopping = False

    # === Scheduler lifecycle ===

    @property
    def scheduler(self) -> BaseScheduler:
        """The underlying APScheduler instance."""
        return self._scheduler

    @property
    def running(self) -> bool:
        """True while the scheduler processes ticks."""
        return bool(self._scheduler.running)

    def start(self, *, paused: bool = False) -> None:
        """Starts the scheduler (needs a running event loop for asyncio)."""
        if not self._scheduler.running:
            self._scheduler.start(paused=paused)

    def shutdown(self) -> None:
        """Disarms every timer and stops the scheduler.

        In-flight dispatches keep running. Await ``wait_stopped`` before
        starting again: AsyncIOScheduler may finish the shutdown only on
        the next event loop iteration.
        """
        self.clear()
        if self._scheduler.running:
            self._stopping = True
            self._scheduler.shutdown(wait=False)

    async def wait_stopped(self) -> None:
        """Yields to the event loop until a requested shutdown took effect."""
        while self._stopping and self._scheduler.running:
            await asyncio.sleep(0)
        self._stopping = False

    # === Arm / disarm ===

    def arm(self, key: str, definition: JobDefinition, on_fire: OnFire) -> None:
        """Arms the timer for ``key``, replacing any existing one.

        The existing timer is cancelled before the new schedule is parsed,
        so a failed arm leaves ``key`` without a timer.

        Args:
            key: Job key.
            definition: Job to dispatch on every tick.
            on_fire: Dispatcher callback.

        Raises:
            ScheduleParseError: If ``definition.schedule`` is invalid.
        """
        with self._lock:
            replaced = self._cancel(key)
            try:
                trigger = parse_schedule(definition.schedule, self.timezone)
            except ScheduleParseError:
                if replaced:
                    log.warning("job_disarmed_invalid_schedule", key=key, schedule=definition.schedule)
                raise

            job_id = f"flowcron-{key}"
            self._scheduler.add_job(
                self._on_tick,
                trigger=trigger,
                args=[definition, on_fire],
                id=job_id,
                name=key,
                replace_existing=True,
                coalesce=True,
                max_instances=_MAX_TICK_INSTANCES,
                misfire_grace_time=self.misfire_grace_seconds,
            )
            self._timers[key] = job_id
            self._dispatchers[key] = on_fire

        log.info(
            "job_armed",
            key=key,
            schedule=definition.schedule,
            replaced=replaced,
        )

    def disarm(self, key: str) -> bool:
        """Cancels the timer for ``key``. Unknown keys are a no-op.

        Returns:
            True if a timer was cancelled.
        """
        with self._lock:
            removed = self._cancel(key)
        if removed:
            log.info("job_disarmed", key=key)
        return removed

    def clear(self) -> None:
        """Cancels all timers."""
        with self._lock:
            for key in list(self._timers):
                self._cancel(key)

    def _cancel(self, key: str) -> bool:
        self._dispatchers.pop(key, None)
        job_id = self._timers.pop(key, None)
        if job_id is None:
            return False
        try:
            self._scheduler.remove_job(job_id)
        except JobLookupError:
            log.debug("job_already_gone", key=key)
        return True

    # === Introspection ===

    def has(self, key: str) -> bool:
        """True if a timer is armed for ``key``."""
        with self._lock:
            return key in self._timers

    def keys(self) -> set[str]:
        """Keys of all armed timers."""
        with self._lock:
            return set(self._timers)

    def next_run_time(self, key: str) -> datetime | None:
        """Next tick of the timer for ``key`` (None if unknown or pending)."""
        with self._lock:
            job_id = self._timers.get(key)
            if job_id is None:
                return None
            job = self._scheduler.get_job(job_id)
        return getattr(job, "next_run_time", None)

    def dispatcher_for(self, key: str) -> OnFire | None:
        """Dispatcher the timer for ``key`` was armed with, if armed."""
        with self._lock:
            return self._dispatchers.get(key)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.has(key)

    def __len__(self) -> int:
        with self._lock:
            return len(self._timers)

    # === Firing ===

    async def _on_tick(self, definition: JobDefinition, on_fire: OnFire) -> None:
        """Timer callback: hands the job to the dispatcher without waiting."""
        task = asyncio.create_task(
            self.dispatch(definition, on_fire),
            name=f"flowcron-fire-{definition.key}",
        )
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def dispatch(self, definition: JobDefinition, on_fire: OnFire) -> None:
        """Runs ``on_fire`` for one tick. Never raises.

        Args:
            definition: The job that fired.
            on_fire: Dispatcher callback (coroutine function or plain callable).
        """
        key = definition.key
        bind_context(job_key=key)
        try:
            log.info("job_fired", workflow_id=definition.workflow_id, engine=definition.engine)
            if inspect.iscoroutinefunction(on_fire):
                await on_fire(definition)
            else:
                # Plain callables may block, keep them off the event loop
                result = await asyncio.to_thread(on_fire, definition)
                if inspect.isawaitable(result):
                    await result
        except Exception:
            log.exception("job_dispatch_failed", key=key)
        finally:
            unbind_context("job_key")

    @property
    def inflight(self) -> int:
        """Number of dispatches still running."""
        return len(self._inflight)

    async def drain(self, timeout: float | None = None) -> None:
        """Waits for in-flight dispatches to finish."""
        if not self._inflight:
            return
        await asyncio.wait(set(self._inflight), timeout=timeout)
