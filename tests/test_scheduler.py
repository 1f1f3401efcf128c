"""Tests for the cron schedule runner and manual runs."""

import asyncio
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

import catalog
from catalog import ConfigError
from composer import BatchComposer
from conftest import ENTRY_TEMPLATE
from scheduler import RunStatus, ScheduleRunner

pytestmark = pytest.mark.anyio

TEN = datetime(2024, 5, 1, 10, 0, 30, tzinfo=timezone.utc)
TEN_BOUNDARY = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
ELEVEN = datetime(2024, 5, 1, 11, 0, 5, tzinfo=timezone.utc)


@pytest.fixture
def hourly_tech(db, channel):
    template = catalog.save_template(db, {"id": "entries", "name": "Entries", "content": ENTRY_TEMPLATE})
    return catalog.save_task(db, {
        "id": "hourly-tech",
        "name": "Hourly tech",
        "cron_expr": "0 * * * *",
        "channel_id": channel.id,
        "template_id": template.id,
        "categories": ["tech"],
    })


async def _wait_done(run, timeout: float = 2.0):
    async def poll():
        while not run.done:
            await asyncio.sleep(0.01)
    await asyncio.wait_for(poll(), timeout)


class TestTick:

    async def test_hourly_task_only_selects_its_category(self, db, fake_dispatcher, add_items, hourly_tech):
        tech = add_items(3, "tech")
        others = add_items(2, "finance") + add_items(1, "ai")
        runner = ScheduleRunner(db, BatchComposer(db, fake_dispatcher))

        [run] = await runner.tick(TEN)

        assert run.status is RunStatus.SUCCEEDED
        assert run.sent_count == 3
        assert sorted(fake_dispatcher.per_entry) == tech
        assert [e.entry_id for e in db.list_unpushed()] == others
        assert db.get_task(hourly_tech.id).last_run_at == TEN_BOUNDARY

    async def test_non_matching_minute_does_nothing(self, db, fake_dispatcher, add_items, hourly_tech):
        add_items(1, "tech")
        runner = ScheduleRunner(db, BatchComposer(db, fake_dispatcher))

        assert await runner.tick(datetime(2024, 5, 1, 10, 5, tzinfo=timezone.utc)) == []
        assert fake_dispatcher.calls == 0
        assert db.get_task(hourly_tech.id).last_run_at is None

    async def test_runs_once_per_boundary(self, db, fake_dispatcher, add_items, hourly_tech):
        add_items(1, "tech")
        runner = ScheduleRunner(db, BatchComposer(db, fake_dispatcher))

        assert len(await runner.tick(TEN)) == 1
        add_items(1, "tech")
        assert await runner.tick(datetime(2024, 5, 1, 10, 0, 50, tzinfo=timezone.utc)) == []
        assert fake_dispatcher.calls == 1

    async def test_disabled_task_is_skipped(self, db, fake_dispatcher, add_items, hourly_tech):
        db.save_task(hourly_tech.model_copy(update={"enabled": False}))
        add_items(1, "tech")
        runner = ScheduleRunner(db, BatchComposer(db, fake_dispatcher))

        assert await runner.tick(TEN) == []

    async def test_failure_advances_last_run_and_retries_next_tick(
        self, db, dispatcher_factory, add_items, hourly_tech
    ):
        ids = add_items(2, "tech")
        composer = BatchComposer(db, dispatcher_factory(fail=True))
        runner = ScheduleRunner(db, composer)

        [failed] = await runner.tick(TEN)

        assert failed.status is RunStatus.FAILED
        assert "DeliveryError" in failed.error
        assert db.count_unpushed() == 2
        assert db.get_task(hourly_tech.id).last_run_at == TEN_BOUNDARY
        assert await runner.tick(TEN) == []

        working = dispatcher_factory()
        composer.dispatcher = working
        [retried] = await runner.tick(ELEVEN)

        assert retried.status is RunStatus.SUCCEEDED
        assert sorted(working.per_entry) == ids
        assert db.count_unpushed() == 0

    async def test_missing_channel_fails_run(self, db, fake_dispatcher, add_items, hourly_tech, channel):
        db.delete_channel(channel.id)
        add_items(1, "tech")
        runner = ScheduleRunner(db, BatchComposer(db, fake_dispatcher))

        [run] = await runner.tick(TEN)

        assert run.status is RunStatus.FAILED
        assert "ConfigError" in run.error
        assert db.get_task(hourly_tech.id).last_run_at == TEN_BOUNDARY

    async def test_cron_evaluated_in_configured_zone(self, db, fake_dispatcher, add_items, channel):
        catalog.save_task(db, {
            "id": "morning",
            "name": "Morning",
            "cron_expr": "0 8 * * *",
            "channel_id": channel.id,
        })
        add_items(1)
        runner = ScheduleRunner(db, BatchComposer(db, fake_dispatcher), tz=ZoneInfo("Asia/Shanghai"))

        # 00:00 UTC is 08:00 in Shanghai
        runs = await runner.tick(datetime(2024, 5, 1, 0, 0, 10, tzinfo=timezone.utc))
        assert len(runs) == 1


class TestCatchUp:

    async def test_boundary_passed_during_slow_tick_still_runs(self, db, fake_dispatcher, add_items, channel):
        catalog.save_task(db, {"id": "at-two", "name": "At :02", "cron_expr": "2 * * * *", "channel_id": channel.id})
        add_items(2)
        runner = ScheduleRunner(db, BatchComposer(db, fake_dispatcher))
        now = datetime(2024, 5, 1, 10, 3, 10, tzinfo=timezone.utc)

        assert await runner.tick(now) == []
        [run] = await runner.catch_up(TEN, now)

        assert run.status is RunStatus.SUCCEEDED
        assert run.sent_count == 2
        assert db.get_task("at-two").last_run_at == datetime(2024, 5, 1, 10, 2, tzinfo=timezone.utc)

    async def test_same_minute_is_not_reevaluated(self, db, fake_dispatcher, add_items, hourly_tech):
        add_items(1, "tech")
        runner = ScheduleRunner(db, BatchComposer(db, fake_dispatcher))

        assert await runner.catch_up(datetime(2024, 5, 1, 10, 0, 5, tzinfo=timezone.utc), TEN) == []
        assert fake_dispatcher.calls == 0

    async def test_first_evaluation_is_a_plain_tick(self, db, fake_dispatcher, add_items, hourly_tech):
        add_items(1, "tech")
        runner = ScheduleRunner(db, BatchComposer(db, fake_dispatcher))

        assert len(await runner.catch_up(None, TEN)) == 1

    async def test_replay_is_bounded_to_an_hour(self, db, fake_dispatcher, add_items, hourly_tech):
        add_items(1, "tech")
        runner = ScheduleRunner(db, BatchComposer(db, fake_dispatcher))

        runs = await runner.catch_up(
            datetime(2024, 5, 1, 5, 0, tzinfo=timezone.utc),
            datetime(2024, 5, 1, 10, 30, tzinfo=timezone.utc),
        )

        assert [r.trigger for r in runs] == ["task:hourly-tech"]
        assert db.get_task(hourly_tech.id).last_run_at == TEN_BOUNDARY


class TestRunNow:

    async def test_accepted_immediately_then_succeeds(self, db, dispatcher_factory, add_items, hourly_tech):
        add_items(2, "tech")
        runner = ScheduleRunner(db, BatchComposer(db, dispatcher_factory(delay=0.05)))

        run = runner.run_now(hourly_tech.id)
        assert run.status is RunStatus.ACCEPTED

        await _wait_done(run)

        polled = runner.get_run(run.run_id)
        assert polled.status is RunStatus.SUCCEEDED
        assert polled.sent_count == 2
        assert db.get_task(hourly_tech.id).last_run_at is not None

    async def test_bypasses_cron_match(self, db, fake_dispatcher, add_items, channel):
        task = catalog.save_task(db, {
            "name": "Yearly",
            "cron_expr": "0 0 1 1 *",
            "channel_id": channel.id,
        })
        add_items(1)
        runner = ScheduleRunner(db, BatchComposer(db, fake_dispatcher))

        run = runner.run_now(task.id)
        await _wait_done(run)

        assert run.status is RunStatus.SUCCEEDED
        assert fake_dispatcher.calls == 1

    async def test_unknown_task(self, db, fake_dispatcher):
        runner = ScheduleRunner(db, BatchComposer(db, fake_dispatcher))
        with pytest.raises(ConfigError):
            runner.run_now("missing")

    async def test_runs_listed_newest_first(self, db, fake_dispatcher, hourly_tech):
        runner = ScheduleRunner(db, BatchComposer(db, fake_dispatcher))
        first = runner.run_now(hourly_tech.id)
        second = runner.run_now(hourly_tech.id)
        await _wait_done(first)
        await _wait_done(second)

        assert [r.run_id for r in runner.list_runs(hourly_tech.id)] == [second.run_id, first.run_id]
        assert second.to_dict()["status"] == "succeeded"
