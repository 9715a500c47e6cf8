"""
Cron scheduler built on APScheduler.

One job per schedule ID fires ``start_execution`` on the schedule's workflow
and then persists the schedule's last and next run times.
"""

import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MISSED, JobExecutionEvent
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from ..config import AppConfig, get_config
from ..models.core import ScheduledWorkflow
from ..storage.repository import WorkflowStore
from .exceptions import InvalidCronExpressionError
from .logging import get_logger, logging_context

logger = get_logger(__name__)

CRON_FIELDS_SHORT = ("minute", "hour", "day", "month", "day_of_week")
CRON_FIELDS_LONG = ("second",) + CRON_FIELDS_SHORT

# Weekday names by cron number. Unix cron counts 0-7 from Sunday and Quartz
# counts 1-7 from Sunday. APScheduler itself counts from Monday.
_UNIX_WEEKDAYS = ("sun", "mon", "tue", "wed", "thu", "fri", "sat", "sun")
_QUARTZ_WEEKDAYS = (None, "sun", "mon", "tue", "wed", "thu", "fri", "sat")


def _translate_weekdays(field: str, quartz: bool = False) -> str:
    """Rewrite numeric weekdays as names APScheduler reads unambiguously.

    ``quartz`` selects Quartz numbering (1 = Sunday) instead of Unix cron
    numbering (0 or 7 = Sunday).
    """
    if field == "*":
        return field

    weekday_names = _QUARTZ_WEEKDAYS if quartz else _UNIX_WEEKDAYS
    first, last = (1, 7) if quartz else (0, 7)

    names: List[str] = []
    for part in field.split(","):
        base, _, step = part.partition("/")
        numeric_base = base == "*" or base.replace("-", "").isdigit()
        if not numeric_base or (base == "*" and not step):
            names.append(part)
            continue

        if base == "*":
            low, high = first, first + 6
        elif "-" in base:
            low_text, high_text = base.split("-", 1)
            low, high = int(low_text), int(high_text)
        else:
            low = int(base)
            high = first + 6 if step else low

        if not first <= low <= last or not first <= high <= last or low > high:
            raise ValueError(f"Invalid weekday range '{part}'")
        if step and (not step.isdigit() or int(step) == 0):
            raise ValueError(f"Invalid weekday step '{part}'")

        for value in range(low, high + 1, int(step) if step else 1):
            name = weekday_names[value]
            if name not in names:
                names.append(name)

    return ",".join(names)


def _split_cron_expression(cron_expression: str) -> Dict[str, str]:
    if not cron_expression or not cron_expression.strip():
        raise InvalidCronExpressionError("Cron expression cannot be empty", cron_expression=cron_expression)

    parts = cron_expression.split()
    if len(parts) == 5:
        fields = dict(zip(CRON_FIELDS_SHORT, parts))
        fields["second"] = "0"
    elif len(parts) == 6:
        fields = dict(zip(CRON_FIELDS_LONG, parts))
    else:
        raise InvalidCronExpressionError(
            f"Cron expression must have 5 or 6 fields, got {len(parts)}",
            cron_expression=cron_expression,
        )

    # Quartz writes "?" for "no specific value"
    return {name: "*" if value == "?" else value for name, value in fields.items()}


def build_cron_trigger(cron_expression: str, tz: str = "UTC") -> CronTrigger:
    """
    Build an APScheduler trigger from a 5-field or 6-field cron expression.

    5-field expressions follow Unix cron. 6-field expressions follow Quartz:
    seconds come first and numeric weekdays count from 1 = Sunday.

    Raises:
        InvalidCronExpressionError: If the expression cannot be parsed
    """
    fields = _split_cron_expression(cron_expression)
    is_quartz = len(cron_expression.split()) == 6
    try:
        fields["day_of_week"] = _translate_weekdays(fields["day_of_week"], quartz=is_quartz)
        return CronTrigger(timezone=tz, **fields)
    except ValueError as e:
        raise InvalidCronExpressionError(
            f"Invalid cron expression '{cron_expression}': {str(e)}",
            cron_expression=cron_expression,
        )


def validate_cron_expression(cron_expression: str) -> None:
    """
    Check that a cron expression can drive a trigger.

    Raises:
        InvalidCronExpressionError: If the expression is invalid
    """
    build_cron_trigger(cron_expression)


def _as_aware_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _as_naive_utc(moment: datetime) -> datetime:
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


def compute_next_run(cron_expression: str, after: Optional[datetime] = None,
                     tz: str = "UTC") -> Optional[datetime]:
    """
    Compute the first fire time strictly after ``after`` (default: now).

    Naive datetimes are read as UTC; the result is a naive UTC datetime, the
    form in which run times are stored. Returns None if the expression never
    fires again.
    """
    trigger = build_cron_trigger(cron_expression, tz)
    reference = _as_aware_utc(after or datetime.utcnow())
    # APScheduler returns the first fire time at or after "now"
    next_fire = trigger.get_next_fire_time(None, reference + timedelta(microseconds=1))
    return _as_naive_utc(next_fire) if next_fire else None


class WorkflowScheduler:
    """Keeps one live APScheduler job per registered schedule.

    The scheduler holds no state of its own beyond the jobs: schedules and
    their run times live in the store, and ``ScheduleService.reconcile``
    rebuilds the jobs after a restart.
    """

    def __init__(
        self,
        store: WorkflowStore,
        engine,
        config: Optional[AppConfig] = None,
        scheduler: Optional[BackgroundScheduler] = None
    ):
        """
        Args:
            store: Persistence for schedules
            engine: Execution engine whose ``start_execution`` is fired
            config: Application configuration (timezone, misfire grace time)
            scheduler: APScheduler instance to use instead of a new one
        """
        config = config or get_config()
        self.store = store
        self.engine = engine
        self.timezone = config.scheduler_timezone
        self._lock = threading.RLock()
        self._scheduler = scheduler or BackgroundScheduler(
            timezone=self.timezone,
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": config.scheduler_misfire_grace_time,
            },
        )
        self._scheduler.add_listener(self._on_job_error, EVENT_JOB_ERROR)
        self._scheduler.add_listener(self._on_job_missed, EVENT_JOB_MISSED)

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        """Start firing jobs if not already running."""
        with self._lock:
            if not self._scheduler.running:
                self._scheduler.start()
                logger.info("Scheduler started")

    def shutdown(self, wait: bool = False) -> None:
        with self._lock:
            if self._scheduler.running:
                self._scheduler.shutdown(wait=wait)
                logger.info("Scheduler shutdown")

    def register(self, schedule: ScheduledWorkflow) -> ScheduledWorkflow:
        """
        Add or replace the job for a schedule.

        The next run time is computed and persisted first when the schedule
        has none or when the stored one already lies in the past.

        Returns:
            The schedule with its persisted next run time

        Raises:
            InvalidCronExpressionError: If the cron expression is invalid
        """
        trigger = build_cron_trigger(schedule.cron_expression, self.timezone)

        now = datetime.utcnow()
        if schedule.next_run_at is None or schedule.next_run_at <= now:
            next_run_at = compute_next_run(schedule.cron_expression, now, self.timezone)
            if next_run_at is not None:
                schedule = self.store.update_schedule_run_times(schedule.id, next_run_at=next_run_at)

        with self._lock:
            self._scheduler.add_job(
                self.fire_schedule,
                trigger=trigger,
                id=schedule.id,
                name=f"workflow:{schedule.workflow_id}",
                args=[schedule.id],
                replace_existing=True,
            )

        logger.info(
            f"Registered schedule {schedule.id} for workflow {schedule.workflow_id} "
            f"('{schedule.cron_expression}', next run {schedule.next_run_at})"
        )
        return schedule

    def unregister(self, schedule_id: str) -> bool:
        """
        Remove the job for a schedule.

        Returns:
            True if a job was removed, False if there was none
        """
        with self._lock:
            try:
                self._scheduler.remove_job(schedule_id)
            except JobLookupError:
                logger.debug(f"No job registered for schedule {schedule_id}")
                return False
        logger.info(f"Unregistered schedule {schedule_id}")
        return True

    def is_registered(self, schedule_id: str) -> bool:
        return self._scheduler.get_job(schedule_id) is not None

    def fire_schedule(self, schedule_id: str) -> Optional[str]:
        """
        Run one fire of a schedule: start its workflow, then advance run times.

        Errors from ``start_execution`` propagate, so APScheduler reports them
        as job errors and the run times stay as they were.

        Returns:
            ID of the started execution, or None if the schedule was deactivated
        """
        schedule = self.store.get_schedule(schedule_id)
        if not schedule.is_active:
            logger.warning(f"Schedule {schedule_id} fired while inactive, removing its job")
            self.unregister(schedule_id)
            return None

        with logging_context(workflow_id=schedule.workflow_id, schedule_id=schedule_id):
            execution_id = self.engine.start_execution(schedule.workflow_id, schedule.input_data)

            fired_at = datetime.utcnow()
            next_run_at = compute_next_run(schedule.cron_expression, fired_at, self.timezone)
            self.store.update_schedule_run_times(schedule_id, last_run_at=fired_at, next_run_at=next_run_at)

            logger.info(f"Schedule {schedule_id} started execution {execution_id}, next run {next_run_at}")
        return execution_id

    def get_job_info(self, schedule_id: str) -> Optional[Dict[str, Any]]:
        """Describe the live job of a schedule, or None if there is none."""
        job = self._scheduler.get_job(schedule_id)
        return self._describe_job(job) if job else None

    def list_jobs(self) -> List[Dict[str, Any]]:
        return [self._describe_job(job) for job in self._scheduler.get_jobs()]

    @staticmethod
    def _describe_job(job) -> Dict[str, Any]:
        # Jobs added before the scheduler starts have no next_run_time yet
        next_run_time = getattr(job, "next_run_time", None)
        return {
            "id": job.id,
            "name": job.name,
            "next_run_time": next_run_time.isoformat() if next_run_time else None,
            "trigger": str(job.trigger),
            "pending": job.pending,
        }

    def _on_job_error(self, event: JobExecutionEvent) -> None:
        logger.error(
            f"Scheduled job {event.job_id} failed: {event.exception}\n{event.traceback or ''}".rstrip()
        )

    def _on_job_missed(self, event: JobExecutionEvent) -> None:
        logger.warning(f"Scheduled job {event.job_id} missed its run time {event.scheduled_run_time}")
