"""Schedule runner: cron-driven and manual pushes of the reading window.

Every minute boundary the runner evaluates each enabled task. A task runs
when its cron expression matches the boundary and its ``last_run_at`` is
older than it. After each attempt, successful or not, ``last_run_at`` is
advanced so a failing task cannot fire again within the same minute.

The loop remembers when it last evaluated. Boundaries that passed while a
slow tick was still composing are evaluated afterwards, oldest first, up to
an hour back.

Manual runs ("run now") skip the cron check but take the same composer
path. They are accepted immediately and executed on the event loop; the
returned TaskRun is updated in place and can be polled by run id.

Run Lifecycle:
    accepted -> running -> succeeded | failed
"""

import asyncio
import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from enum import Enum

from croniter import croniter

from catalog import ConfigError, resolve_channel, resolve_template
from composer import BatchComposer
from database import Database
from models.task import ScheduledTask

logger = logging.getLogger(__name__)

MAX_RUN_HISTORY = 200
MAX_CATCH_UP_MINUTES = 60


class RunStatus(str, Enum):
    ACCEPTED = "accepted"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class TaskRun:
    """One execution attempt of a scheduled task."""

    run_id: str
    task_id: str
    trigger: str
    status: RunStatus = RunStatus.ACCEPTED
    accepted_at: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    sent_count: int = 0
    error: str | None = None

    @property
    def done(self) -> bool:
        return self.status in (RunStatus.SUCCEEDED, RunStatus.FAILED)

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "task_id": self.task_id,
            "trigger": self.trigger,
            "status": self.status.value,
            "accepted_at": self.accepted_at.isoformat() if self.accepted_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "sent_count": self.sent_count,
            "error": self.error,
        }


def minute_floor(moment: datetime) -> datetime:
    return moment.replace(second=0, microsecond=0)


class ScheduleRunner:
    """Runs scheduled tasks through the batch composer.

    Example:
        >>> runner = ScheduleRunner(db, composer, tz=ZoneInfo("Asia/Shanghai"))
        >>> await runner.tick()                 # evaluate the current minute
        >>> run = runner.run_now(task_id)       # returns immediately
        >>> runner.get_run(run.run_id).status
        <RunStatus.RUNNING: 'running'>
    """

    def __init__(self, db: Database, composer: BatchComposer, tz: tzinfo = timezone.utc):
        self.db = db
        self.composer = composer
        self.tz = tz
        self._runs: OrderedDict[str, TaskRun] = OrderedDict()
        self._pending: set[asyncio.Task] = set()

    def _new_run(self, task_id: str, trigger: str) -> TaskRun:
        run = TaskRun(
            run_id=uuid.uuid4().hex[:12],
            task_id=task_id,
            trigger=trigger,
            accepted_at=datetime.now(timezone.utc),
        )
        self._runs[run.run_id] = run
        while len(self._runs) > MAX_RUN_HISTORY:
            self._runs.popitem(last=False)
        return run

    def get_run(self, run_id: str) -> TaskRun | None:
        return self._runs.get(run_id)

    def list_runs(self, task_id: str | None = None) -> list[TaskRun]:
        runs = [r for r in self._runs.values() if task_id is None or r.task_id == task_id]
        return list(reversed(runs))

    def _aware(self, moment: datetime) -> datetime:
        return moment if moment.tzinfo is not None else moment.replace(tzinfo=self.tz)

    def due_tasks(self, boundary: datetime) -> list[ScheduledTask]:
        """Enabled tasks whose cron matches ``boundary`` and have not run at it."""
        due = []
        for task in self.db.list_tasks(enabled_only=True):
            if not croniter.match(task.cron_expr, boundary):
                continue
            if task.last_run_at is not None and task.last_run_at >= boundary:
                continue
            due.append(task)
        return due

    async def tick(self, now: datetime | None = None) -> list[TaskRun]:
        """Run every task due at the minute boundary containing ``now``.

        Returns:
            The runs attempted during this tick
        """
        now = self._aware(now or datetime.now(self.tz))
        boundary = minute_floor(now.astimezone(self.tz))

        runs = []
        for task in self.due_tasks(boundary):
            run = self._new_run(task.id, trigger=f"task:{task.id}")
            await self._execute(task, run, ran_at=boundary)
            runs.append(run)
        return runs

    async def catch_up(self, previous: datetime | None, now: datetime) -> list[TaskRun]:
        """Tick every minute boundary after ``previous`` up to ``now``.

        A tick that outlasts its minute (a slow relay, several due tasks)
        would otherwise skip the boundaries it overlapped. At most
        MAX_CATCH_UP_MINUTES earlier boundaries are replayed.

        Args:
            previous: Time of the last evaluation, None on the first one
            now: Current time
        """
        current = minute_floor(self._aware(now).astimezone(timezone.utc))
        if previous is None:
            return await self.tick(current)

        boundary = minute_floor(self._aware(previous).astimezone(timezone.utc)) + timedelta(minutes=1)
        missed = int((current - boundary).total_seconds() // 60)
        if missed > MAX_CATCH_UP_MINUTES:
            logger.warning(
                "Scheduler fell behind | missed=%d replaying=%d", missed, MAX_CATCH_UP_MINUTES
            )
            boundary = current - timedelta(minutes=MAX_CATCH_UP_MINUTES)

        runs = []
        while boundary <= current:
            runs.extend(await self.tick(boundary))
            boundary += timedelta(minutes=1)
        return runs

    def run_now(self, task_id: str) -> TaskRun:
        """Accept a manual run and execute it in the background.

        Raises:
            ConfigError: If the task does not exist
        """
        task = self.db.get_task(task_id)
        if task is None:
            raise ConfigError(f"task not found: {task_id}")

        run = self._new_run(task.id, trigger=f"manual:{task.id}")
        job = asyncio.get_running_loop().create_task(self._execute(task, run))
        self._pending.add(job)
        job.add_done_callback(self._pending.discard)
        logger.info("Manual run accepted | task=%s run=%s", task.id, run.run_id)
        return run

    async def _execute(self, task: ScheduledTask, run: TaskRun, ran_at: datetime | None = None) -> None:
        run.status = RunStatus.RUNNING
        run.started_at = datetime.now(timezone.utc)
        categories = ",".join(task.categories) or "*"
        try:
            channel = resolve_channel(self.db, task.channel_id)
            template = resolve_template(self.db, task.template_id)
            result = await self.composer.compose_and_send(
                channel, template, task.categories, trigger=run.trigger
            )
            run.sent_count = result.sent_count
            run.status = RunStatus.SUCCEEDED
        except Exception as e:
            run.error = f"{type(e).__name__}: {e}"
            run.status = RunStatus.FAILED
            logger.error(
                "Task run failed | trigger=%s task=%s filter=%s channel=%s error=%s",
                run.trigger, task.id, categories, task.channel_id, run.error,
            )
        finally:
            run.finished_at = datetime.now(timezone.utc)
            self.db.touch_task(task.id, ran_at or run.finished_at)

        logger.info(
            "Task run finished | task=%s run=%s status=%s sent=%d",
            task.id, run.run_id, run.status.value, run.sent_count,
        )

    async def run(self) -> None:
        """Tick at every minute boundary until cancelled."""
        logger.info("Schedule runner started | tz=%s", self.tz)
        previous: datetime | None = None
        try:
            while True:
                now = datetime.now(self.tz)
                try:
                    await self.catch_up(previous, now)
                except Exception as e:
                    logger.error("Scheduler tick failed | error=%s", e, exc_info=True)
                previous = now
                next_boundary = minute_floor(now) + timedelta(minutes=1)
                delay = (next_boundary - datetime.now(self.tz)).total_seconds()
                await asyncio.sleep(max(delay, 0.5))
        except asyncio.CancelledError:
            logger.info("Schedule runner stopped | runs=%d", len(self._runs))
            raise
