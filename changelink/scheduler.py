"""
Scheduled workflow runs.

Stored tracking configurations are run by the WorkflowOrchestrator on an
interval, a daily, weekly or monthly time of day, or a cron expression.
Triggers and timing come from APScheduler's AsyncIOScheduler; this module
owns the task table, per-task counters and the stop conditions
(max executions, end date, one-shot tasks).

A task never overlaps itself: a trigger that fires while the previous run
of the same task is still going is skipped and counted.
"""

import logging
import random
import re
import string
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from .clock import Clock, get_clock
from .errors import ValidationError
from .models import WorkflowResult
from .orchestrator import WorkflowOptions, WorkflowOrchestrator
from .storage import ConfigurationStorage, KeyValueStore

logger = logging.getLogger(__name__)

TASK_NAMESPACE = "scheduled-tasks"

_TIME_OF_DAY = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")
# Sunday = 0, as in the stored schedules
_WEEKDAYS = ["sun", "mon", "tue", "wed", "thu", "fri", "sat"]
_BASE36 = string.digits + string.ascii_lowercase


class ScheduleType(str, Enum):
    ONCE = "once"
    INTERVAL = "interval"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CRON = "cron"


class TaskStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    STOPPED = "stopped"


def _dt(value) -> Optional[datetime]:
    if isinstance(value, datetime) or value is None:
        return value
    return datetime.fromisoformat(value)


@dataclass
class ScheduleConfig:
    """When a task fires."""
    type: ScheduleType
    time: str = "00:00"  # HH:MM, for once/daily/weekly/monthly
    timezone: str = "UTC"
    interval_minutes: Optional[int] = None
    day_of_week: Optional[int] = None  # 0-6, Sunday = 0
    day_of_month: Optional[int] = None  # 1-31
    cron_expression: Optional[str] = None
    max_executions: Optional[int] = None
    end_date: Optional[datetime] = None

    def validate(self) -> List[str]:
        errors = []
        if self.type == ScheduleType.INTERVAL:
            if not self.interval_minutes or self.interval_minutes < 1:
                errors.append("Interval schedules need interval_minutes >= 1")
        elif self.type == ScheduleType.CRON:
            if not self.cron_expression:
                errors.append("Cron schedules need a cron expression")
        elif not _TIME_OF_DAY.match(self.time or ""):
            errors.append(f"Invalid time of day {self.time!r}, expected HH:MM")

        if self.type == ScheduleType.WEEKLY and (self.day_of_week is None or not 0 <= self.day_of_week <= 6):
            errors.append("Weekly schedules need day_of_week between 0 (Sunday) and 6")
        if self.type == ScheduleType.MONTHLY and (self.day_of_month is None or not 1 <= self.day_of_month <= 31):
            errors.append("Monthly schedules need day_of_month between 1 and 31")
        if self.max_executions is not None and self.max_executions < 1:
            errors.append("max_executions must be >= 1")

        if not errors:
            try:
                self.build_trigger()
            except (ValueError, KeyError) as e:
                errors.append(f"Invalid schedule: {e}")
        return errors

    def build_trigger(self):
        if self.type == ScheduleType.INTERVAL:
            return IntervalTrigger(minutes=self.interval_minutes, end_date=self.end_date, timezone=self.timezone)
        if self.type == ScheduleType.CRON:
            return CronTrigger.from_crontab(self.cron_expression, timezone=self.timezone)

        hour, minute = (int(part) for part in self.time.split(":"))
        fields: Dict[str, Any] = {"hour": hour, "minute": minute}
        if self.type == ScheduleType.WEEKLY:
            fields["day_of_week"] = _WEEKDAYS[self.day_of_week]
        elif self.type == ScheduleType.MONTHLY:
            fields["day"] = self.day_of_month
        return CronTrigger(timezone=self.timezone, end_date=self.end_date, **fields)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "time": self.time,
            "timezone": self.timezone,
            "interval_minutes": self.interval_minutes,
            "day_of_week": self.day_of_week,
            "day_of_month": self.day_of_month,
            "cron_expression": self.cron_expression,
            "max_executions": self.max_executions,
            "end_date": self.end_date.isoformat() if self.end_date else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScheduleConfig":
        return cls(
            type=ScheduleType(data["type"]),
            time=data.get("time") or "00:00",
            timezone=data.get("timezone") or "UTC",
            interval_minutes=data.get("interval_minutes"),
            day_of_week=data.get("day_of_week"),
            day_of_month=data.get("day_of_month"),
            cron_expression=data.get("cron_expression"),
            max_executions=data.get("max_executions"),
            end_date=_dt(data.get("end_date")),
        )


@dataclass
class ScheduledTask:
    id: str
    configuration_id: str
    name: str
    schedule: ScheduleConfig
    status: TaskStatus = TaskStatus.ACTIVE
    execution_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    skipped_count: int = 0
    last_run: Optional[datetime] = None
    last_status: Optional[str] = None
    last_execution_id: Optional[str] = None
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "configuration_id": self.configuration_id,
            "name": self.name,
            "schedule": self.schedule.to_dict(),
            "status": self.status.value,
            "execution_count": self.execution_count,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "skipped_count": self.skipped_count,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_status": self.last_status,
            "last_execution_id": self.last_execution_id,
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScheduledTask":
        return cls(
            id=data["id"],
            configuration_id=data["configuration_id"],
            name=data.get("name", ""),
            schedule=ScheduleConfig.from_dict(data["schedule"]),
            status=TaskStatus(data.get("status", "active")),
            execution_count=int(data.get("execution_count", 0)),
            success_count=int(data.get("success_count", 0)),
            failure_count=int(data.get("failure_count", 0)),
            skipped_count=int(data.get("skipped_count", 0)),
            last_run=_dt(data.get("last_run")),
            last_status=data.get("last_status"),
            last_execution_id=data.get("last_execution_id"),
            last_error=data.get("last_error"),
            created_at=_dt(data.get("created_at")) or datetime.now(),
            updated_at=_dt(data.get("updated_at")) or datetime.now(),
        )


class WorkflowScheduler:
    """
    Runs stored configurations on their schedules.

    Jobs can be added before start(); APScheduler holds them until the
    event loop is running. With a store, tasks survive restarts and are
    reloaded by start().
    """

    def __init__(
        self,
        orchestrator: WorkflowOrchestrator,
        configuration_storage: ConfigurationStorage,
        store: Optional[KeyValueStore] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
        options: Optional[WorkflowOptions] = None,
        clock: Optional[Clock] = None
    ):
        self.orchestrator = orchestrator
        self.configuration_storage = configuration_storage
        self.store = store
        self.scheduler = scheduler or AsyncIOScheduler()
        self.options = options
        self.clock = clock or get_clock()

        self.tasks: Dict[str, ScheduledTask] = {}
        self._running: Set[str] = set()
        self.stats = {
            'runs': 0,
            'succeeded': 0,
            'failed': 0,
            'skipped': 0,
        }

    # ============== Lifecycle ==============

    async def start(self):
        if self.scheduler.running:
            logger.warning("[Scheduler] Already running")
            return
        if self.store is not None:
            await self.load_tasks()
        self.scheduler.start()
        active = sum(1 for t in self.tasks.values() if t.status == TaskStatus.ACTIVE)
        logger.info(f"[Scheduler] Started with {len(self.tasks)} tasks ({active} active)")

    def shutdown(self, wait: bool = False):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            logger.info("[Scheduler] Stopped")

    async def load_tasks(self) -> int:
        loaded = 0
        for key in await self.store.get_all_keys(TASK_NAMESPACE):
            data = await self.store.get_item(key, None, namespace=TASK_NAMESPACE)
            if not data:
                continue
            task = ScheduledTask.from_dict(data)
            self.tasks[task.id] = task
            if task.status != TaskStatus.STOPPED:
                self._register(task)
            loaded += 1
        logger.info(f"[Scheduler] Loaded {loaded} stored tasks")
        return loaded

    # ============== Tasks ==============

    def generate_task_id(self) -> str:
        suffix = ''.join(random.choice(_BASE36) for _ in range(9))
        return f"task_{int(self.clock.time() * 1000)}_{suffix}"

    async def create_task(
        self,
        configuration_id: str,
        schedule: ScheduleConfig,
        name: Optional[str] = None
    ) -> ScheduledTask:
        configuration = await self.configuration_storage.get(configuration_id)
        if configuration is None:
            raise ValidationError(f"Configuration {configuration_id} not found")
        errors = schedule.validate()
        if errors:
            raise ValidationError("Invalid schedule", errors)

        now = self.clock.now()
        task = ScheduledTask(
            id=self.generate_task_id(),
            configuration_id=configuration_id,
            name=name or f"{configuration.name} - scheduled",
            schedule=schedule,
            created_at=now,
            updated_at=now,
        )
        self.tasks[task.id] = task
        self._register(task)
        await self._save(task)
        logger.info(f"[Scheduler] Created {task.id} ({schedule.type.value}) for configuration {configuration_id}")
        return task

    async def update_schedule(self, task_id: str, schedule: ScheduleConfig) -> ScheduledTask:
        task = self._get(task_id)
        errors = schedule.validate()
        if errors:
            raise ValidationError("Invalid schedule", errors)
        task.schedule = schedule
        task.updated_at = self.clock.now()
        if task.status != TaskStatus.STOPPED:
            self._register(task)
        await self._save(task)
        logger.info(f"[Scheduler] Rescheduled {task_id} ({schedule.type.value})")
        return task

    async def pause_task(self, task_id: str) -> ScheduledTask:
        return await self._set_status(task_id, TaskStatus.PAUSED)

    async def resume_task(self, task_id: str) -> ScheduledTask:
        return await self._set_status(task_id, TaskStatus.ACTIVE)

    async def delete_task(self, task_id: str) -> bool:
        task = self.tasks.pop(task_id, None)
        if task is None:
            return False
        self._unregister(task_id)
        if self.store is not None:
            await self.store.delete_data(task_id, namespace=TASK_NAMESPACE)
        logger.info(f"[Scheduler] Deleted {task_id}")
        return True

    def get_task(self, task_id: str) -> Optional[ScheduledTask]:
        return self.tasks.get(task_id)

    def get_tasks(self, configuration_id: Optional[str] = None) -> List[ScheduledTask]:
        tasks = list(self.tasks.values())
        if configuration_id:
            tasks = [t for t in tasks if t.configuration_id == configuration_id]
        return tasks

    def next_run_time(self, task_id: str) -> Optional[datetime]:
        job = self.scheduler.get_job(task_id)
        # pending jobs get their first fire time when the scheduler starts
        return getattr(job, "next_run_time", None) if job else None

    # ============== Execution ==============

    async def execute_task(self, task_id: str) -> Optional[WorkflowResult]:
        """
        Run one task now. Also the job function APScheduler calls.

        Returns the workflow result, or None when the run was skipped or
        could not start (unknown configuration, orchestrator error).
        """
        task = self._get(task_id)
        if task_id in self._running:
            task.skipped_count += 1
            self.stats['skipped'] += 1
            logger.warning(f"[Scheduler] {task_id} is still running, skipping this trigger")
            return None

        self._running.add(task_id)
        self.stats['runs'] += 1
        task.execution_count += 1
        task.last_run = self.clock.now()
        result = None
        try:
            configuration = await self.configuration_storage.get(task.configuration_id)
            if configuration is None:
                raise ValidationError(f"Configuration {task.configuration_id} not found")
            logger.info(f"[Scheduler] Running {task_id} ({task.name})")
            result = await self.orchestrator.execute_workflow(configuration, self.options)
        except Exception as e:
            self._record_failure(task, str(e))
            logger.error(f"[Scheduler] {task_id} could not run: {e}", exc_info=True)
        else:
            task.last_execution_id = result.execution_id
            task.last_status = result.status.value
            if result.success:
                task.success_count += 1
                task.last_error = None
                self.stats['succeeded'] += 1
            else:
                self._record_failure(task, "; ".join(result.errors) or result.status.value)
                # CANCELLED stays distinguishable from FAILED
                task.last_status = result.status.value
            logger.info(f"[Scheduler] {task_id} finished {result.status.value} ({result.execution_id})")
        finally:
            self._running.discard(task_id)

        self._check_limits(task)
        task.updated_at = self.clock.now()
        await self._save(task)
        return result

    def _record_failure(self, task: ScheduledTask, error: str):
        task.failure_count += 1
        task.last_status = "FAILED"
        task.last_error = error
        self.stats['failed'] += 1

    def _check_limits(self, task: ScheduledTask):
        schedule = task.schedule
        reason = None
        if schedule.type == ScheduleType.ONCE:
            reason = "one-shot task ran"
        elif schedule.max_executions and task.execution_count >= schedule.max_executions:
            reason = f"reached {schedule.max_executions} executions"
        elif schedule.end_date and datetime.fromtimestamp(self.clock.time(), schedule.end_date.tzinfo) >= schedule.end_date:
            reason = "end date passed"
        if reason and task.status != TaskStatus.STOPPED:
            task.status = TaskStatus.STOPPED
            self._unregister(task.id)
            logger.info(f"[Scheduler] Stopped {task.id}: {reason}")

    # ============== Statistics ==============

    def get_statistics(self) -> Dict[str, Any]:
        tasks = list(self.tasks.values())
        executions = sum(t.execution_count for t in tasks)
        successes = sum(t.success_count for t in tasks)
        upcoming = [
            run for run in (self.next_run_time(t.id) for t in tasks if t.status == TaskStatus.ACTIVE)
            if run is not None
        ]
        return {
            **self.stats,
            'total': len(tasks),
            'active': sum(1 for t in tasks if t.status == TaskStatus.ACTIVE),
            'paused': sum(1 for t in tasks if t.status == TaskStatus.PAUSED),
            'stopped': sum(1 for t in tasks if t.status == TaskStatus.STOPPED),
            'running': len(self._running),
            'total_executions': executions,
            'success_rate': round(successes / executions * 100, 2) if executions else 0.0,
            'next_run': min(upcoming).isoformat() if upcoming else None,
            'scheduler_running': self.scheduler.running,
        }

    async def cleanup(self, max_age_days: int = 30) -> int:
        """Drop stopped tasks untouched for max_age_days."""
        cutoff = self.clock.now() - timedelta(days=max_age_days)
        expired = [
            t.id for t in self.tasks.values()
            if t.status == TaskStatus.STOPPED and t.updated_at < cutoff
        ]
        for task_id in expired:
            await self.delete_task(task_id)
        if expired:
            logger.info(f"[Scheduler] Cleaned up {len(expired)} stopped tasks")
        return len(expired)

    # ============== Internals ==============

    def _get(self, task_id: str) -> ScheduledTask:
        task = self.tasks.get(task_id)
        if task is None:
            raise ValidationError(f"Scheduled task {task_id} not found")
        return task

    async def _set_status(self, task_id: str, status: TaskStatus) -> ScheduledTask:
        task = self._get(task_id)
        if task.status == TaskStatus.STOPPED:
            raise ValidationError(f"Scheduled task {task_id} is stopped")
        task.status = status
        task.updated_at = self.clock.now()
        if status == TaskStatus.PAUSED:
            self.scheduler.pause_job(task_id)
        else:
            self.scheduler.resume_job(task_id)
        await self._save(task)
        logger.info(f"[Scheduler] {task_id} is now {status.value}")
        return task

    def _register(self, task: ScheduledTask):
        self._unregister(task.id)
        self.scheduler.add_job(
            self.execute_task,
            trigger=task.schedule.build_trigger(),
            args=[task.id],
            id=task.id,
            name=task.name,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        if task.status == TaskStatus.PAUSED:
            self.scheduler.pause_job(task.id)

    def _unregister(self, task_id: str):
        if self.scheduler.get_job(task_id) is not None:
            self.scheduler.remove_job(task_id)

    async def _save(self, task: ScheduledTask):
        if self.store is not None:
            await self.store.set_item(task.id, task.to_dict(), namespace=TASK_NAMESPACE)
