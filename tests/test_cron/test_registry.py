"""Tests for schedule parsing and the JobRegistry (live timers)."""

from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timezone
from typing import TYPE_CHECKING
from unittest.mock import AsyncMock, MagicMock

import pytest
from apscheduler.triggers.combining import OrTrigger
from apscheduler.triggers.cron import CronTrigger

from flowcron.core.errors import ScheduleParseError
from flowcron.cron.registry import (
    JobRegistry,
    _parse_cron_fields,
    _translate_day_of_week,
    parse_schedule,
)
from flowcron.models import JobDefinition

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

UTC = timezone.utc


def _job(workflow_id: str = "wf-1", schedule: str = "*/5 * * * *") -> JobDefinition:
    return JobDefinition(workflow_id=workflow_id, engine="n8n", schedule=schedule)


def _fire_times(trigger, start: datetime, count: int) -> list[datetime]:
    times: list[datetime] = []
    previous = None
    now = start
    for _ in range(count):
        fire = trigger.get_next_fire_time(previous, now)
        times.append(fire)
        previous = fire
        now = fire
    return times


# ============================================================================
# _parse_cron_fields
# ============================================================================


class TestParseCronFields:
    def test_standard_five_fields(self) -> None:
        assert _parse_cron_fields("0 7 * * 1-5") == {
            "minute": "0",
            "hour": "7",
            "day": "*",
            "month": "*",
            "day_of_week": "1-5",
        }

    def test_whitespace_handling(self) -> None:
        result = _parse_cron_fields("  30   12   *   *   0  ")
        assert result["minute"] == "30"
        assert result["day_of_week"] == "0"

    @pytest.mark.parametrize("expression", ["", "0 7 *", "0 7 * * 1-5 extra"])
    def test_wrong_field_count_raises(self, expression: str) -> None:
        with pytest.raises(ValueError, match="5 fields"):
            _parse_cron_fields(expression)


# ============================================================================
# Day of week
# ============================================================================


class TestTranslateDayOfWeek:
    @pytest.mark.parametrize(
        ("field", "expected"),
        [
            ("*", "*"),
            ("0", "sun"),
            ("7", "sun"),
            ("1-5", "mon,tue,wed,thu,fri"),
            ("0,6", "sun,sat"),
            ("5-7", "sun,fri,sat"),
            ("MON-FRI", "mon,tue,wed,thu,fri"),
            ("*/2", "sun,tue,thu,sat"),
            ("1/3", "sun,mon,thu"),
        ],
    )
    def test_translation(self, field: str, expected: str) -> None:
        assert _translate_day_of_week(field) == expected

    @pytest.mark.parametrize("field", ["8", "mon-xyz", "5-1", "*/0", "1/x"])
    def test_invalid_raises(self, field: str) -> None:
        with pytest.raises(ValueError):
            _translate_day_of_week(field)


# ============================================================================
# parse_schedule
# ============================================================================


class TestParseSchedule:
    def test_every_five_minutes(self) -> None:
        trigger = parse_schedule("*/5 * * * *", "UTC")

        assert isinstance(trigger, CronTrigger)
        start = datetime(2026, 1, 1, 12, 1, tzinfo=UTC)
        times = _fire_times(trigger, start, 3)
        assert [t.minute for t in times] == [5, 10, 15]

    def test_sunday_is_zero(self) -> None:
        trigger = parse_schedule("0 9 * * 0", "UTC")

        # 2026-01-01 is a Thursday
        fire = trigger.get_next_fire_time(None, datetime(2026, 1, 1, tzinfo=UTC))
        assert fire == datetime(2026, 1, 4, 9, 0, tzinfo=UTC)
        assert fire.strftime("%a") == "Sun"

    def test_weekdays(self) -> None:
        trigger = parse_schedule("30 8 * * 1-5", "UTC")

        times = _fire_times(trigger, datetime(2026, 1, 2, 9, tzinfo=UTC), 3)
        assert [t.strftime("%a") for t in times] == ["Mon", "Tue", "Wed"]

    def test_day_of_month_or_day_of_week(self) -> None:
        trigger = parse_schedule("0 0 13 * 5", "UTC")

        assert isinstance(trigger, OrTrigger)
        times = _fire_times(trigger, datetime(2026, 1, 1, tzinfo=UTC), 3)
        # Friday the 2nd, Friday the 9th, Tuesday the 13th
        assert [t.day for t in times] == [2, 9, 13]

    def test_star_day_of_month_uses_weekday_only(self) -> None:
        trigger = parse_schedule("0 0 */1 * 5", "UTC")
        assert isinstance(trigger, CronTrigger)

    def test_timezone_applied(self) -> None:
        trigger = parse_schedule("0 9 * * *", "Europe/Berlin")

        fire = trigger.get_next_fire_time(None, datetime(2026, 1, 1, tzinfo=UTC))
        assert fire.astimezone(UTC).hour == 8

    @pytest.mark.parametrize(
        "expression",
        ["not a cron", "* * * *", "61 * * * *", "* 25 * * *", "* * 32 * *", "* * * 13 *", "* * * * 9"],
    )
    def test_invalid_raises_schedule_parse_error(self, expression: str) -> None:
        with pytest.raises(ScheduleParseError) as exc_info:
            parse_schedule(expression)

        assert exc_info.value.expression == expression
        assert exc_info.value.error_code == "SCHEDULE_PARSE_ERROR"

    def test_schedule_parse_error_is_value_error(self) -> None:
        with pytest.raises(ValueError):
            parse_schedule("nope")


# ============================================================================
# Arm / disarm
# ============================================================================


class TestArmDisarm:
    def test_arm_creates_one_timer(self, registry: JobRegistry) -> None:
        registry.arm("n8n:wf-1", _job(), AsyncMock())

        assert registry.has("n8n:wf-1")
        assert "n8n:wf-1" in registry
        assert len(registry) == 1
        assert len(registry.scheduler.get_jobs()) == 1

    def test_rearm_replaces_timer(self, registry: JobRegistry) -> None:
        registry.arm("n8n:wf-1", _job(schedule="0 9 * * *"), AsyncMock())
        registry.arm("n8n:wf-1", _job(schedule="0 10 * * *"), AsyncMock())

        jobs = registry.scheduler.get_jobs()
        assert len(jobs) == 1
        assert jobs[0].args[0].schedule == "0 10 * * *"

    def test_invalid_rearm_leaves_key_unarmed(self, registry: JobRegistry) -> None:
        registry.arm("n8n:wf-1", _job(schedule="0 9 * * *"), AsyncMock())

        with pytest.raises(ScheduleParseError):
            registry.arm("n8n:wf-1", _job(schedule="bogus"), AsyncMock())

        assert not registry.has("n8n:wf-1")
        assert registry.dispatcher_for("n8n:wf-1") is None
        assert registry.scheduler.get_jobs() == []

    def test_invalid_arm_of_new_key(self, registry: JobRegistry) -> None:
        registry.arm("n8n:other", _job("other"), AsyncMock())

        with pytest.raises(ScheduleParseError):
            registry.arm("n8n:wf-1", _job(schedule="* * *"), AsyncMock())

        assert registry.keys() == {"n8n:other"}

    def test_dispatcher_for(self, registry: JobRegistry) -> None:
        first, second = AsyncMock(), AsyncMock()
        registry.arm("n8n:a", _job("a"), first)
        registry.arm("n8n:b", _job("b"), second)

        assert registry.dispatcher_for("n8n:a") is first
        assert registry.dispatcher_for("n8n:b") is second

        registry.disarm("n8n:a")
        assert registry.dispatcher_for("n8n:a") is None

    def test_concurrent_arm_same_key_keeps_one_timer(self, registry: JobRegistry) -> None:
        start = threading.Barrier(8)

        def worker(n: int) -> None:
            start.wait()
            for i in range(25):
                registry.arm("n8n:wf-1", _job(schedule=f"{(n + i) % 60} * * * *"), AsyncMock())

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(registry) == 1
        assert len(registry.scheduler.get_jobs()) == 1

    def test_disarm(self, registry: JobRegistry) -> None:
        registry.arm("n8n:wf-1", _job(), AsyncMock())

        assert registry.disarm("n8n:wf-1") is True
        assert not registry.has("n8n:wf-1")
        assert registry.scheduler.get_jobs() == []

    def test_disarm_unknown_is_noop(self, registry: JobRegistry) -> None:
        assert registry.disarm("n8n:nope") is False

    def test_keys_and_clear(self, registry: JobRegistry) -> None:
        registry.arm("n8n:a", _job("a"), AsyncMock())
        registry.arm("n8n:b", _job("b"), AsyncMock())

        assert registry.keys() == {"n8n:a", "n8n:b"}

        registry.clear()
        assert len(registry) == 0
        assert registry.scheduler.get_jobs() == []

    @pytest.mark.asyncio
    async def test_next_run_time_when_running(self, registry: JobRegistry) -> None:
        registry.start(paused=True)
        try:
            registry.arm("n8n:wf-1", _job(schedule="0 9 * * *"), AsyncMock())

            next_run = registry.next_run_time("n8n:wf-1")
            assert next_run is not None
            assert (next_run.hour, next_run.minute) == (9, 0)
            assert registry.next_run_time("n8n:nope") is None
        finally:
            registry.shutdown()
            await registry.wait_stopped()

        assert not registry.running
        assert len(registry) == 0


# ============================================================================
# Firing
# ============================================================================


class TestFiring:
    @pytest.mark.asyncio
    async def test_tick_dispatches_definition(
        self,
        registry: JobRegistry,
        fire_all: Callable[[], Awaitable[int]],
    ) -> None:
        on_fire = AsyncMock()
        job = _job()
        registry.arm(job.key, job, on_fire)

        assert await fire_all() == 1
        on_fire.assert_awaited_once_with(job)

    @pytest.mark.asyncio
    async def test_sync_dispatcher_supported(
        self,
        registry: JobRegistry,
        fire_all: Callable[[], Awaitable[int]],
    ) -> None:
        threads: list[int] = []
        on_fire = MagicMock(side_effect=lambda definition: threads.append(threading.get_ident()))
        job = _job()
        registry.arm(job.key, job, on_fire)

        await fire_all()
        on_fire.assert_called_once_with(job)
        # Plain callables run off the event loop thread
        assert threads != [threading.get_ident()]

    @pytest.mark.asyncio
    async def test_dispatcher_error_is_contained(
        self,
        registry: JobRegistry,
        fire_all: Callable[[], Awaitable[int]],
    ) -> None:
        failing = AsyncMock(side_effect=RuntimeError("engine down"))
        healthy = AsyncMock()
        registry.arm("n8n:a", _job("a"), failing)
        registry.arm("n8n:b", _job("b"), healthy)

        await fire_all()
        await fire_all()

        assert failing.await_count == 2
        assert healthy.await_count == 2
        assert registry.has("n8n:a")

    @pytest.mark.asyncio
    async def test_tick_does_not_wait_for_dispatcher(self, registry: JobRegistry) -> None:
        release = asyncio.Event()

        async def slow(_definition: JobDefinition) -> None:
            await release.wait()

        job = _job()
        registry.arm(job.key, job, slow)
        (timer,) = registry.scheduler.get_jobs()

        await timer.func(*timer.args)
        await asyncio.sleep(0)
        assert registry.inflight == 1

        release.set()
        await registry.drain(timeout=5)
        assert registry.inflight == 0

    @pytest.mark.asyncio
    async def test_dispatch_never_raises(self, registry: JobRegistry) -> None:
        def broken(_definition: JobDefinition) -> None:
            raise ValueError("boom")

        await registry.dispatch(_job(), broken)
